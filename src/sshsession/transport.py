"""
Transport boundary between a Session and the SSH protocol engine.

Provides:
- Transport: the operations a Session needs from an engine
- AsyncSSHTransport: asyncssh-backed implementation
- map_transport_error: asyncssh/OS exceptions mapped to the taxonomy

asyncssh runs connect and authentication as one coroutine. To let the
caller inspect the host key and pick a credential between the two, the
client object parks every credential callback on a future until the
session submits a credential for that method. Declining a request (None)
makes asyncssh move on to the next method it has on offer.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence, Union

import asyncssh

from sshsession.errors import (
    AuthenticationRejected,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostUnreachable,
    NotConnected,
    SessionClosed,
    SSHConnectionError,
    SSHError,
)
from sshsession.host_key import HostKey

log = logging.getLogger("sshsession.transport")

METHOD_NONE = "none"
METHOD_PASSWORD = "password"
METHOD_PUBLIC_KEY = "publickey"
METHOD_KEYBOARD_INTERACTIVE = "keyboard-interactive"

BANNER_PREFIX = "SSH-2.0-"

# Order asyncssh walks the server's offered methods in
PREFERRED_AUTH = (METHOD_PUBLIC_KEY, METHOD_KEYBOARD_INTERACTIVE, METHOD_PASSWORD)

Responder = Callable[[str], Union[str, Awaitable[str]]]
KeyPair = Union[asyncssh.SSHKey, asyncssh.SSHKeyPair]


@dataclass
class ExecResult:
    """Result of a command execution."""
    stdout: str
    stderr: str
    exit_code: int


def map_transport_error(exc: BaseException, ctx: ErrorContext) -> SSHError:
    """Map asyncssh and OS exceptions to the session error taxonomy."""
    if isinstance(exc, SSHError):
        return exc

    ctx.original_error = str(exc) or type(exc).__name__

    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthenticationRejected(f"Authentication failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.ConnectionLost):
        return SSHConnectionError(f"Connection lost: {exc}", context=ctx)

    if isinstance(exc, asyncssh.Error):
        return SSHConnectionError(f"SSH protocol error: {exc}", context=ctx)

    if isinstance(exc, asyncio.TimeoutError):
        return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)

    if isinstance(exc, ConnectionRefusedError):
        return ConnectionRefused(f"Connection refused: {exc}", context=ctx)

    if isinstance(exc, OSError):
        error_str = str(exc).lower()
        if "connection refused" in error_str:
            return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
        if "timed out" in error_str or "timeout" in error_str:
            return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
        if "unreachable" in error_str or "no route" in error_str \
                or "name or service not known" in error_str \
                or "nodename nor servname" in error_str:
            return HostUnreachable(f"Host unreachable: {exc}", context=ctx)
        return SSHConnectionError(f"Connection failed: {exc}", context=ctx)

    return SSHError(f"Unexpected error: {exc}", context=ctx)


class Transport(Protocol):
    """
    What a Session needs from an SSH engine.

    Every coroutine here is only awaited from the session's serial
    executor. abort() is the one call made from outside it.
    """

    @property
    def authenticated(self) -> bool: ...

    async def handshake(
        self,
        host: str,
        port: int,
        username: str,
        timeout: float | None,
        banner: str | None,
    ) -> str:
        """Connect and exchange keys; return the server identification."""
        ...

    def host_key(self) -> HostKey: ...

    def auth_methods(self) -> list[str]: ...

    async def auth_password(self, password: str, timeout: float | None) -> bool: ...

    async def auth_public_key(self, key: KeyPair, timeout: float | None) -> bool: ...

    async def auth_keyboard_interactive(
        self,
        responder: Responder,
        timeout: float | None,
    ) -> bool: ...

    async def run(self, command: str) -> ExecResult: ...

    async def open_sftp(self) -> asyncssh.SFTPClient: ...

    def abort(self) -> None: ...

    async def close(self) -> None: ...


@dataclass
class _CredentialRequest:
    """A parked asyncssh credential callback."""
    method: str
    future: asyncio.Future[Any]


class _SessionClient(asyncssh.SSHClient):
    """asyncssh client that forwards its callbacks to the transport."""

    def __init__(self, transport: "AsyncSSHTransport") -> None:
        self._transport = transport

    def connection_made(self, conn: asyncssh.SSHClientConnection) -> None:
        self._transport._conn = conn

    def connection_lost(self, exc: Exception | None) -> None:
        self._transport._on_connection_lost(exc)

    def auth_completed(self) -> None:
        self._transport._on_auth_completed()

    async def public_key_auth_requested(self) -> Any:
        key = await self._transport._await_credential(METHOD_PUBLIC_KEY)
        return [key] if key is not None else None

    async def password_auth_requested(self) -> str | None:
        return await self._transport._await_credential(METHOD_PASSWORD)

    async def kbdint_auth_requested(self) -> str | None:
        responder = await self._transport._await_credential(METHOD_KEYBOARD_INTERACTIVE)
        if responder is None:
            return None
        self._transport._responder = responder
        return ""

    async def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: Sequence[tuple[str, bool]],
    ) -> list[str] | None:
        return await self._transport._answer_challenge(prompts)


class AsyncSSHTransport:
    """
    asyncssh-backed Transport.

    Usage:
        transport = AsyncSSHTransport()
        banner = await transport.handshake("example.com", 22, "alice", 10.0, None)
        key = transport.host_key()
        if await transport.auth_password("secret", 10.0):
            result = await transport.run("uname -a")
    """

    def __init__(self) -> None:
        self._conn: asyncssh.SSHClientConnection | None = None
        self._connect_task: asyncio.Future[asyncssh.SSHClientConnection] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._request: _CredentialRequest | None = None
        self._request_ready = asyncio.Event()
        self._outcome: asyncio.Future[bool] | None = None
        self._responder: Responder | None = None
        self._responder_error: BaseException | None = None
        self._methods: list[str] | None = None
        self._authenticated = False
        self._aborted = False
        self._lost: BaseException | None = None
        self._ctx = ErrorContext()

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def connection(self) -> asyncssh.SSHClientConnection | None:
        """The underlying asyncssh connection, if the handshake got that far."""
        return self._conn

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def handshake(
        self,
        host: str,
        port: int,
        username: str,
        timeout: float | None,
        banner: str | None,
    ) -> str:
        assert self._connect_task is None, "handshake() may only be called once"

        self._ctx = ErrorContext(host=host, port=port, username=username)
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()

        options: dict[str, Any] = {
            "host": host,
            "port": port,
            "username": username,
            "client_factory": lambda: _SessionClient(self),
            # Trust decisions belong to the caller via known_host_status()
            "known_hosts": None,
            "config": None,
            "client_keys": [],
            "agent_path": None,
            "password": None,
            "gss_auth": False,
            "gss_kex": False,
            "login_timeout": 0,
            "preferred_auth": list(PREFERRED_AUTH),
        }
        if banner:
            # asyncssh adds the protocol prefix itself
            software = banner[len(BANNER_PREFIX):] if banner.startswith(BANNER_PREFIX) else banner
            if software:
                options["client_version"] = software

        log.debug("Starting handshake with %s:%d", host, port)
        # asyncssh.connect returns an awaitable context manager, not a coroutine
        self._connect_task = asyncio.ensure_future(asyncssh.connect(**options))
        self._connect_task.add_done_callback(self._on_connect_done)

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except asyncio.TimeoutError as exc:
            self.abort()
            raise ConnectionTimeout(
                f"Handshake with {host}:{port} timed out after {timeout}s",
                context=self._ctx,
            ) from exc
        except asyncio.CancelledError:
            self.abort()
            raise
        except Exception as exc:
            self.abort()
            raise map_transport_error(exc, self._ctx) from exc

        assert self._conn is not None
        return self._conn.get_extra_info("server_version") or ""

    def _on_connect_done(self, task: asyncio.Future[asyncssh.SSHClientConnection]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            self._conn = task.result()
            return
        log.debug("Connection to %s ended: %s", self._ctx.host, exc)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(exc)
        self._fail_outcome(exc)

    def _on_connection_lost(self, exc: Exception | None) -> None:
        self._lost = exc or asyncssh.ConnectionLost("Connection closed")
        self._fail_outcome(self._lost)
        self._request_ready.set()

    def _on_auth_completed(self) -> None:
        self._authenticated = True
        if self._ready is not None and not self._ready.done():
            # Server accepted "none": nothing to authenticate
            self._methods = []
            self._ready.set_result(None)
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(True)

    def _fail_outcome(self, exc: BaseException) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_exception(map_transport_error(exc, self._ctx))

    # ------------------------------------------------------------------
    # Credential exchange
    # ------------------------------------------------------------------

    async def _await_credential(self, method: str) -> Any:
        """Park an asyncssh credential callback until the session answers."""
        # A new request means the previous credential was refused
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(False)

        if self._methods is None:
            self._methods = self._pending_methods()
            log.debug("Server offers %s", ", ".join(self._methods))

        if self._aborted:
            return None

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._request = _CredentialRequest(method, future)
        self._request_ready.set()

        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

        return await future

    def _pending_methods(self) -> list[str]:
        """Offered methods asyncssh has not given up on, the current one first."""
        if self._conn is None:
            return []
        return list(self._conn.get_server_auth_methods())

    async def _answer_challenge(
        self,
        prompts: Sequence[tuple[str, bool]],
    ) -> list[str] | None:
        responder = self._responder
        if responder is None:
            return None
        responses = []
        for prompt, _echo in prompts:
            try:
                answer = responder(prompt)
                if inspect.isawaitable(answer):
                    answer = await answer
            except Exception as exc:
                self._responder_error = exc
                return None
            if answer is None:
                return None
            responses.append(str(answer))
        return responses

    def _check_usable(self) -> None:
        if self._aborted:
            raise SessionClosed("Transport was closed", context=self._ctx)
        if self._lost is not None:
            raise map_transport_error(self._lost, self._ctx)
        if self._ready is None:
            raise NotConnected("Transport is not connected", context=self._ctx)

    async def _next_request(self) -> _CredentialRequest:
        while self._request is None:
            self._check_usable()
            self._request_ready.clear()
            await self._request_ready.wait()
        self._check_usable()
        request, self._request = self._request, None
        return request

    async def _submit(self, method: str, value: Any, timeout: float | None) -> bool:
        self._check_usable()
        if self._authenticated:
            return True
        if method not in self.auth_methods():
            log.debug("%s is not offered by %s", method, self._ctx.host)
            return False

        async def exchange() -> bool:
            while True:
                request = await self._next_request()
                if request.method == method:
                    break
                if method not in self._pending_methods():
                    # Declining would run out of methods and drop the connection
                    self._request = request
                    raise AuthenticationRejected(
                        f"{method} is not available at this point of the exchange",
                        context=self._ctx,
                    )
                request.future.set_result(None)

            self._outcome = asyncio.get_running_loop().create_future()
            request.future.set_result(value)
            return await self._outcome

        try:
            return await asyncio.wait_for(exchange(), timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectionTimeout(
                f"No answer to {method} authentication within {timeout}s",
                context=self._ctx,
            ) from exc
        finally:
            self._outcome = None

    def auth_methods(self) -> list[str]:
        self._check_usable()
        return list(self._methods or [])

    async def auth_password(self, password: str, timeout: float | None) -> bool:
        return await self._submit(METHOD_PASSWORD, password, timeout)

    async def auth_public_key(self, key: KeyPair, timeout: float | None) -> bool:
        return await self._submit(METHOD_PUBLIC_KEY, key, timeout)

    async def auth_keyboard_interactive(
        self,
        responder: Responder,
        timeout: float | None,
    ) -> bool:
        self._responder_error = None
        try:
            accepted = await self._submit(METHOD_KEYBOARD_INTERACTIVE, responder, timeout)
        finally:
            self._responder = None
        if self._responder_error is not None:
            exc, self._responder_error = self._responder_error, None
            raise AuthenticationRejected(
                f"Keyboard-interactive responder failed: {exc}",
                context=self._ctx,
            ) from exc
        return accepted

    # ------------------------------------------------------------------
    # Host key and post-auth services
    # ------------------------------------------------------------------

    def host_key(self) -> HostKey:
        self._check_usable()
        assert self._conn is not None
        key = self._conn.get_server_host_key()
        if key is None:
            raise NotConnected("No host key was exchanged", context=self._ctx)
        return HostKey.from_ssh_key(key)

    def _require_authenticated(self) -> asyncssh.SSHClientConnection:
        self._check_usable()
        if not self._authenticated or self._conn is None:
            raise NotConnected("Transport is not authenticated", context=self._ctx)
        return self._conn

    async def run(self, command: str) -> ExecResult:
        conn = self._require_authenticated()
        result = await conn.run(command, check=False)
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        return ExecResult(
            stdout=stdout if isinstance(stdout, str) else stdout.decode("utf-8", "replace"),
            stderr=stderr if isinstance(stderr, str) else stderr.decode("utf-8", "replace"),
            exit_code=result.exit_status if result.exit_status is not None else -1,
        )

    async def open_sftp(self) -> asyncssh.SFTPClient:
        conn = self._require_authenticated()
        return await conn.start_sftp_client()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """
        Tear the connection down without waiting.

        Callable from outside the executor; anything waiting on the
        transport fails with SessionClosed.
        """
        if self._aborted:
            return
        self._aborted = True
        closed = SessionClosed("Transport was closed", context=self._ctx)
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_exception(closed)
        if self._request is not None and not self._request.future.done():
            self._request.future.set_result(None)
        if self._conn is not None:
            self._conn.abort()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._request_ready.set()

    async def close(self) -> None:
        """Close the connection and wait for it to finish."""
        conn = self._conn
        self.abort()
        if conn is not None:
            await conn.wait_closed()
        if self._connect_task is not None:
            # The task's outcome was already consumed by _on_connect_done
            await asyncio.gather(self._connect_task, return_exceptions=True)
