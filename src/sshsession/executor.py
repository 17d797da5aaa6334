"""
Per-session serial executor.

Every operation that touches a session's transport is queued here and
run one at a time, in submission order, on a single worker task. Callers
receive a future for each submission. Different sessions own different
executors and run in parallel on the same event loop.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sshsession.errors import SessionClosed

log = logging.getLogger("sshsession.executor")

Operation = Callable[[], Awaitable[Any]]


class SerialExecutor:
    """
    FIFO execution context for one session.

    The worker task starts lazily on the first submission so an executor
    can be created outside a running loop. An operation's exception is
    delivered to its future; the worker itself never dies from one.

    Usage:
        executor = SerialExecutor(name="example.com:22")
        future = executor.submit(lambda: transport.auth_password(password))
        accepted = await future
    """

    def __init__(self, name: str = "session") -> None:
        self._name = name
        self._queue: asyncio.Queue[tuple[Operation, asyncio.Future[Any]] | None] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._closed = False
        self._running: asyncio.Future[Any] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def busy(self) -> bool:
        """True while an operation is running or queued."""
        return self._running is not None or bool(self._queue and self._queue.qsize())

    def submit(self, operation: Operation) -> asyncio.Future[Any]:
        """
        Queue operation behind everything submitted before it.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            Future resolved with the operation's result or exception.
            After close() the future fails with SessionClosed.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        if self._closed:
            future.set_exception(SessionClosed(f"Executor for {self._name} is closed"))
            return future

        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None:
            self._worker = loop.create_task(self._run(), name=f"serial-executor-{self._name}")

        self._queue.put_nowait((operation, future))
        return future

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is None:
                break

            operation, future = item
            if future.cancelled():
                continue

            self._running = future
            try:
                result = await operation()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                # Only stop when the worker itself is being cancelled
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._running = None

    def close(self) -> None:
        """
        Refuse further submissions.

        Operations already queued still run, in order; the worker exits
        once it drains them.
        """
        if self._closed:
            return
        self._closed = True
        if self._queue is not None:
            self._queue.put_nowait(None)
        log.debug("Executor for %s closed", self._name)

    async def wait_closed(self) -> None:
        """Wait for the worker to finish the operations queued before close()."""
        if self._worker is not None:
            await asyncio.shield(self._worker)
