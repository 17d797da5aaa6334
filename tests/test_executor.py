"""
Tests for the per-session serial executor.
"""
from __future__ import annotations

import asyncio

import pytest

from sshsession.errors import SessionClosed
from sshsession.executor import SerialExecutor


class TestSerialExecutor:
    """FIFO, one-at-a-time execution with per-operation futures."""

    @pytest.mark.asyncio
    async def test_results_delivered(self) -> None:
        executor = SerialExecutor(name="test")

        async def value() -> int:
            return 42

        assert await executor.submit(value) == 42
        executor.close()
        await executor.wait_closed()

    @pytest.mark.asyncio
    async def test_runs_in_submission_order_without_overlap(self) -> None:
        executor = SerialExecutor(name="test")
        trace: list[str] = []

        def op(name: str, delay: float):
            async def run() -> str:
                trace.append(f"start {name}")
                await asyncio.sleep(delay)
                trace.append(f"end {name}")
                return name
            return run

        futures = [
            executor.submit(op("a", 0.03)),
            executor.submit(op("b", 0.0)),
            executor.submit(op("c", 0.01)),
        ]

        assert await asyncio.gather(*futures) == ["a", "b", "c"]
        assert trace == ["start a", "end a", "start b", "end b", "start c", "end c"]
        executor.close()

    @pytest.mark.asyncio
    async def test_exception_does_not_stop_worker(self) -> None:
        executor = SerialExecutor(name="test")

        async def boom() -> None:
            raise ValueError("boom")

        async def ok() -> str:
            return "ok"

        failed = executor.submit(boom)
        after = executor.submit(ok)

        with pytest.raises(ValueError, match="boom"):
            await failed
        assert await after == "ok"
        executor.close()

    @pytest.mark.asyncio
    async def test_cancelled_operation_does_not_stop_worker(self) -> None:
        executor = SerialExecutor(name="test")

        async def cancelled() -> None:
            raise asyncio.CancelledError()

        async def ok() -> str:
            return "ok"

        first = executor.submit(cancelled)
        second = executor.submit(ok)

        assert await second == "ok"
        assert first.cancelled()
        executor.close()

    @pytest.mark.asyncio
    async def test_cancelled_future_is_skipped(self) -> None:
        executor = SerialExecutor(name="test")
        gate = asyncio.Event()
        ran: list[str] = []

        async def blocker() -> None:
            await gate.wait()

        async def skipped() -> None:
            ran.append("skipped")

        first = executor.submit(blocker)
        second = executor.submit(skipped)
        second.cancel()
        gate.set()

        await first
        executor.close()
        await executor.wait_closed()
        assert ran == []

    @pytest.mark.asyncio
    async def test_close_refuses_new_work(self) -> None:
        executor = SerialExecutor(name="test")

        async def ok() -> str:
            return "ok"

        queued = executor.submit(ok)
        executor.close()

        assert executor.closed
        assert await queued == "ok"
        with pytest.raises(SessionClosed):
            await executor.submit(ok)
        await executor.wait_closed()

    @pytest.mark.asyncio
    async def test_busy(self) -> None:
        executor = SerialExecutor(name="test")
        gate = asyncio.Event()

        async def blocker() -> None:
            await gate.wait()

        assert not executor.busy
        future = executor.submit(blocker)
        await asyncio.sleep(0)
        assert executor.busy

        gate.set()
        await future
        assert not executor.busy
        executor.close()
