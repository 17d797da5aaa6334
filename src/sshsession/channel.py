"""
Command channel and SFTP handles bound to an authorized Session.

Handles do no I/O of their own: every call is queued on the owning
session's serial executor, so it never overlaps with authentication or
another handle's call. Once the session disconnects every call fails
with SessionClosed.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import asyncssh

from sshsession.errors import InvalidState, SessionClosed
from sshsession.events import EventType
from sshsession.transport import ExecResult, map_transport_error

if TYPE_CHECKING:
    from sshsession.session import Session

log = logging.getLogger("sshsession.channel")

T = TypeVar("T")


class _SessionHandle:
    """Shared plumbing: session checks and executor submission."""

    def __init__(self, session: "Session") -> None:
        self._session = session
        self._invalidated = False

    @property
    def session(self) -> "Session":
        return self._session

    @property
    def valid(self) -> bool:
        return not self._invalidated

    def invalidate(self) -> None:
        """Called by the session when it disconnects."""
        self._invalidated = True

    def _check(self) -> None:
        if self._invalidated:
            raise SessionClosed(
                f"{type(self).__name__} belongs to a disconnected session",
                context=self._session.error_context(),
            )
        if not self._session.is_authorized:
            raise InvalidState(
                f"{type(self).__name__} requires an authorized session",
                state=self._session.state.value,
                context=self._session.error_context(),
            )

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._check()

        async def guarded() -> T:
            self._check()
            try:
                return await operation()
            except asyncssh.SFTPError:
                # File-level failures (no such file, permission) pass through
                raise
            except (asyncssh.Error, OSError) as exc:
                raise map_transport_error(exc, self._session.error_context()) from exc

        return await self._session.executor.submit(guarded)


class Channel(_SessionHandle):
    """
    Command execution on an authorized session.

    Usage:
        result = await session.channel.execute("uname -a")
        print(result.stdout)
    """

    async def execute(self, command: str) -> ExecResult:
        """
        Run a command and collect its output.

        Args:
            command: The command line to run remotely

        Returns:
            ExecResult with stdout, stderr and exit_code (-1 when the
            server reported no exit status)
        """
        assert isinstance(command, str) and command, "command must be a non-empty string"
        emitter = self._session.emitter

        async def run() -> ExecResult:
            with emitter.timed_event(EventType.EXEC, command=command) as event_data:
                try:
                    result = await self._session.raw_transport.run(command)
                except Exception as exc:
                    event_data["error"] = str(exc)
                    raise
                event_data["exit_code"] = result.exit_code
                event_data["stdout_len"] = len(result.stdout)
                event_data["stderr_len"] = len(result.stderr)
                return result

        return await self._call(run)


class SFTP(_SessionHandle):
    """
    File transfer on an authorized session.

    The SFTP subsystem is started on first use and shared by later calls.
    """

    def __init__(self, session: "Session") -> None:
        super().__init__(session)
        self._client: asyncssh.SFTPClient | None = None

    async def _sftp(self) -> "asyncssh.SFTPClient":
        if self._client is None:
            log.debug("Starting SFTP subsystem on %s", self._session.host)
            self._client = await self._session.raw_transport.open_sftp()
        return self._client

    def invalidate(self) -> None:
        super().invalidate()
        if self._client is not None:
            self._client.exit()
            self._client = None

    async def listdir(self, path: str = ".") -> list[str]:
        """List the names in a remote directory, without . and .."""
        async def op() -> list[str]:
            names = await (await self._sftp()).listdir(path)
            return sorted(n for n in names if n not in (".", ".."))
        return await self._call(op)

    async def read_file(self, path: str) -> bytes:
        """Read a whole remote file."""
        async def op() -> bytes:
            async with (await self._sftp()).open(path, "rb") as f:
                return await f.read()
        return await self._call(op)

    async def write_file(self, path: str, data: bytes) -> None:
        """Create or truncate a remote file and write data to it."""
        async def op() -> None:
            async with (await self._sftp()).open(path, "wb") as f:
                await f.write(data)
        return await self._call(op)

    async def remove(self, path: str) -> None:
        async def op() -> None:
            await (await self._sftp()).remove(path)
        return await self._call(op)

    async def stat(self, path: str) -> Any:
        """Return the remote file's SFTP attributes."""
        async def op() -> Any:
            return await (await self._sftp()).stat(path)
        return await self._call(op)
