"""
SSH client session: connect, verify, authenticate, hand off.

Provides:
- SessionState: lifecycle states
- SessionDelegate: optional callbacks a caller can register
- Session: owns one transport and drives it through its lifecycle

Every operation that touches the transport is queued on the session's
SerialExecutor, so connect, authentication, host key queries and
channel/SFTP calls never overlap. Each operation returns an asyncio
future and also accepts an on_complete(error_or_None) callback. Errors
never escape the executor: they are delivered through the future and
kept as last_error.

Usage:
    session = Session("example.com:2222", username="alice")
    await session.connect()
    status = await session.known_host_status()
    if status is KnownHostStatus.MATCH:
        await session.authenticate_by_password("secret")
        result = await session.channel.execute("uname -a")
    await session.disconnect()
"""
from __future__ import annotations

import asyncio
import getpass
import logging
import weakref
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol

import asyncssh

from sshsession.auth import (
    AgentAuth,
    AuthenticationStrategy,
    DelegateKeyboardInteractiveAuth,
    KeyboardInteractiveAuth,
    PasswordAuth,
    PublicKeyAuth,
)
from sshsession.channel import SFTP, Channel
from sshsession.config import SessionConfig
from sshsession.errors import (
    AuthenticationRejected,
    ErrorContext,
    InvalidState,
    NotConnected,
    OperationInProgress,
    SessionClosed,
    SSHConnectionError,
    SSHError,
)
from sshsession.events import EventCollector, EventEmitter, EventType
from sshsession.executor import SerialExecutor
from sshsession.host_key import DEFAULT_PORT, FingerprintHash, KnownHostStatus, KnownHostStore
from sshsession.transport import AsyncSSHTransport, Transport, map_transport_error
from sshsession.validation import (
    parse_host_address,
    validate_hostname,
    validate_port,
    validate_username,
)

log = logging.getLogger("sshsession.session")

CompletionCallback = Callable[[BaseException | None], None]


class SessionState(str, Enum):
    """
    Session lifecycle states.

    State transitions:
        IDLE -> CONNECTING (connect)
        CONNECTING -> CONNECTED (handshake done)
        CONNECTING -> FAILED (timeout, refusal, protocol error)
        CONNECTED -> AUTHENTICATING (a strategy starts)
        CONNECTED -> AUTHORIZED (server needed no authentication)
        AUTHENTICATING -> AUTHORIZED (credential accepted)
        AUTHENTICATING -> CONNECTED (credential refused)
        AUTHENTICATING -> FAILED (transport lost or timed out)
        any -> DISCONNECTED (disconnect)
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHORIZED = "authorized"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


_LIVE_STATES = frozenset({
    SessionState.CONNECTED,
    SessionState.AUTHENTICATING,
    SessionState.AUTHORIZED,
})


class SessionDelegate(Protocol):
    """
    Callbacks a session makes to its delegate.

    Both are optional: a delegate only needs the ones it uses.
    """

    def keyboard_interactive_request(self, session: "Session", prompt: str) -> str:
        """Answer one keyboard-interactive prompt."""
        ...

    def session_did_disconnect(self, session: "Session", error: SSHError | None) -> None:
        """Called once the session has been torn down."""
        ...


class Session:
    """
    One SSH client session.

    host may embed a port ("host:2222" or "[::1]:2222"); an explicit
    port argument wins over it. host, port and username are fixed at
    construction. A session is single-use: once disconnected it cannot
    connect again.

    All operations must be called from a running event loop.
    """

    _VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
        SessionState.IDLE: {SessionState.CONNECTING, SessionState.DISCONNECTED},
        SessionState.CONNECTING: {
            SessionState.CONNECTED,
            SessionState.FAILED,
            SessionState.DISCONNECTED,
        },
        SessionState.CONNECTED: {
            SessionState.AUTHENTICATING,
            SessionState.AUTHORIZED,
            SessionState.FAILED,
            SessionState.DISCONNECTED,
        },
        SessionState.AUTHENTICATING: {
            SessionState.AUTHORIZED,
            SessionState.CONNECTED,
            SessionState.FAILED,
            SessionState.DISCONNECTED,
        },
        SessionState.AUTHORIZED: {SessionState.FAILED, SessionState.DISCONNECTED},
        SessionState.FAILED: {SessionState.DISCONNECTED},
        SessionState.DISCONNECTED: set(),
    }

    def __init__(
        self,
        host: str,
        port: int | None = None,
        username: str | None = None,
        *,
        config: SessionConfig | None = None,
        delegate: SessionDelegate | None = None,
        known_hosts: KnownHostStore | None = None,
        transport_factory: Callable[[], Transport] = AsyncSSHTransport,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
    ) -> None:
        """
        Args:
            host: Host name or address, optionally with an embedded port
            port: Port; overrides an embedded port, 22 when neither is given
            username: Remote user; the local login name when None
            config: Timeout, fingerprint digest, banner, trust files, agent
            delegate: Receives keyboard-interactive prompts and the
                disconnect notification; held weakly
            known_hosts: Trust store; built from config when None
            transport_factory: Builds the transport on connect
            event_collector: Optional in-memory event sink
            event_log_path: Optional JSONL event log
        """
        host_part, embedded_port = parse_host_address(host)
        if port is None:
            port = embedded_port if embedded_port is not None else DEFAULT_PORT

        self._host = validate_hostname(host_part)
        self._port = validate_port(port)
        self._username = validate_username(username or getpass.getuser())

        self._config = config or SessionConfig()
        self._timeout = self._config.timeout
        self._fingerprint_hash = self._config.fingerprint_hash
        self._banner = self._config.banner
        trust_files = self._config.known_hosts_files
        self._known_hosts = known_hosts or KnownHostStore(
            read_paths=trust_files,
            write_path=trust_files[0] if trust_files else None,
        )
        self._delegate_ref: weakref.ReferenceType[Any] | None = None
        if delegate is not None:
            self.delegate = delegate

        self._transport_factory = transport_factory
        self._transport: Transport | None = None
        self._remote_banner: str | None = None

        self._state = SessionState.IDLE
        self._last_error: SSHError | None = None
        self._auth_future: asyncio.Future[bool] | None = None
        self._closing = False
        self._disconnect_future: asyncio.Future[None] | None = None

        self._executor = SerialExecutor(name=f"{self._host}:{self._port}")
        self._emitter = EventEmitter(
            collector=event_collector,
            jsonl_path=event_log_path,
            context={"host": self._host, "port": self._port, "username": self._username},
        )
        self._channel: Channel | None = None
        self._sftp: SFTP | None = None

    @classmethod
    async def connect_to_host(
        cls,
        host: str,
        username: str | None = None,
        port: int | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> "Session":
        """
        Create a session and connect it.

        Raises:
            SSHError: The connect error; the session is disconnected first
        """
        session = cls(host, port, username, **kwargs)
        try:
            await session.connect(timeout)
        except SSHError:
            await session.disconnect()
            raise
        return session

    async def __aenter__(self) -> "Session":
        if self._state is SessionState.IDLE:
            try:
                await self.connect()
            except SSHError:
                await self.disconnect()
                raise
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    def __repr__(self) -> str:
        return (
            f"<Session {self._username}@{self._host}:{self._port} "
            f"state={self._state.value}>"
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def username(self) -> str:
        return self._username

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """True from handshake completion until disconnect or failure."""
        return self._state in _LIVE_STATES

    @property
    def is_authorized(self) -> bool:
        return self._state is SessionState.AUTHORIZED

    @property
    def last_error(self) -> SSHError | None:
        """The most recent error any operation on this session reported."""
        return self._last_error

    @property
    def timeout(self) -> float | None:
        """Seconds allowed for connect and each authentication; None waits forever."""
        return self._timeout

    @timeout.setter
    def timeout(self, value: float | None) -> None:
        assert value is None or value > 0, f"timeout must be positive or None, got {value}"
        self._timeout = value

    @property
    def fingerprint_hash(self) -> FingerprintHash:
        return self._fingerprint_hash

    @fingerprint_hash.setter
    def fingerprint_hash(self, value: FingerprintHash | str) -> None:
        self._fingerprint_hash = FingerprintHash(value)

    @property
    def banner(self) -> str | None:
        """Client identification sent on the next connect."""
        return self._banner

    @banner.setter
    def banner(self, value: str | None) -> None:
        if value is not None:
            assert value.isascii() and value.isprintable(), \
                f"banner must be printable ASCII on one line, got {value!r}"
        self._banner = value

    @property
    def remote_banner(self) -> str | None:
        """The server's identification string, once connected."""
        return self._remote_banner

    @property
    def delegate(self) -> SessionDelegate | None:
        """The registered delegate, or None if it was never set or has been collected."""
        if self._delegate_ref is None:
            return None
        return self._delegate_ref()

    @delegate.setter
    def delegate(self, value: SessionDelegate | None) -> None:
        self._delegate_ref = weakref.ref(value) if value is not None else None

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def known_hosts(self) -> KnownHostStore:
        return self._known_hosts

    @property
    def executor(self) -> SerialExecutor:
        return self._executor

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    @property
    def raw_transport(self) -> Transport:
        """
        The session's transport.

        Using it outside the session's executor bypasses the ordering
        guarantees; for AsyncSSHTransport, .connection is the asyncssh
        connection itself.
        """
        if self._transport is None:
            raise NotConnected("Session has no transport yet", context=self.error_context())
        return self._transport

    @property
    def channel(self) -> Channel:
        """Command execution handle bound to this session."""
        if self._channel is None:
            self._channel = Channel(self)
            if self._closing:
                self._channel.invalidate()
        return self._channel

    @property
    def sftp(self) -> SFTP:
        """SFTP handle bound to this session."""
        if self._sftp is None:
            self._sftp = SFTP(self)
            if self._closing:
                self._sftp.invalidate()
        return self._sftp

    def error_context(self, **extra: Any) -> ErrorContext:
        """ErrorContext for this endpoint; keyword fields are passed through."""
        return ErrorContext(
            host=self._host,
            port=self._port,
            username=self._username,
            **extra,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _transition_to(self, new_state: SessionState, **event_data: Any) -> None:
        """
        Move to new_state and emit STATE_CHANGE.

        Only called from operations running on the executor.
        """
        old_state = self._state
        if old_state is new_state:
            return

        assert new_state in self._VALID_TRANSITIONS[old_state], \
            f"Invalid state transition: {old_state.value} -> {new_state.value}"

        self._state = new_state
        log.debug("%s: %s -> %s", self, old_state.value, new_state.value)
        self._emitter.state_change(old_state.value, new_state.value, **event_data)

    def _record_error(self, name: str, exc: SSHError) -> None:
        self._last_error = exc
        self._emitter.error(name, exc)

    def _closed_error(self) -> SessionClosed:
        return SessionClosed(
            f"Session to {self._host}:{self._port} has been disconnected",
            context=self.error_context(),
        )

    @staticmethod
    def _attach(future: asyncio.Future[Any], on_complete: CompletionCallback | None) -> None:
        if on_complete is None:
            return

        def done(f: asyncio.Future[Any]) -> None:
            # Retrieving the exception here marks it handled
            error = None if f.cancelled() else f.exception()
            on_complete(error)

        future.add_done_callback(done)

    def _fail_fast(
        self,
        name: str,
        exc: SSHError,
        on_complete: CompletionCallback | None,
    ) -> asyncio.Future[Any]:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._record_error(name, exc)
        future.set_exception(exc)
        self._attach(future, on_complete)
        return future

    def _schedule(
        self,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        on_complete: CompletionCallback | None,
    ) -> asyncio.Future[Any]:
        """Queue operation on the executor behind everything before it."""
        if self._closing:
            return self._fail_fast(name, self._closed_error(), on_complete)

        async def run() -> Any:
            try:
                if self._closing:
                    raise self._closed_error()
                return await operation()
            except SSHError as exc:
                self._record_error(name, exc)
                raise
            except Exception as exc:
                mapped = map_transport_error(exc, self.error_context())
                self._record_error(name, mapped)
                raise mapped from exc

        future = self._executor.submit(run)
        self._attach(future, on_complete)
        return future

    def _require_live(self) -> Transport:
        """The transport, if the session has a live connection."""
        if self._closing or self._state is SessionState.DISCONNECTED:
            raise self._closed_error()
        if self._state not in _LIVE_STATES or self._transport is None:
            raise NotConnected(
                f"Session is {self._state.value}, not connected",
                context=self.error_context(),
            )
        return self._transport

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def connect(
        self,
        timeout: float | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        """
        Open the transport and complete the key exchange.

        Args:
            timeout: Seconds to allow; the session timeout when None
            on_complete: Called with None or the error once done

        Returns:
            Future resolving to True once CONNECTED (or AUTHORIZED when
            the server requires no authentication)
        """
        effective = timeout if timeout is not None else self._timeout
        return self._schedule("connect", lambda: self._connect(effective), on_complete)

    async def _connect(self, timeout: float | None) -> bool:
        if self._state is not SessionState.IDLE:
            raise InvalidState(
                f"connect() needs an idle session, session is {self._state.value}",
                state=self._state.value,
                context=self.error_context(),
            )

        self._transition_to(SessionState.CONNECTING)
        self._emitter.emit(EventType.CONNECT, status="initiating")

        self._transport = self._transport_factory()
        try:
            self._remote_banner = await self._transport.handshake(
                self._host, self._port, self._username, timeout, self._banner,
            )
        except Exception as exc:
            if self._closing:
                raise self._closed_error() from exc
            error = map_transport_error(exc, self.error_context())
            self._transition_to(SessionState.FAILED, error=error.error_type)
            self._emitter.emit(EventType.CONNECT, status="failed", error_type=error.error_type)
            if error is exc:
                raise
            raise error from exc

        if self._closing:
            raise self._closed_error()

        self._transition_to(SessionState.CONNECTED)
        self._emitter.emit(EventType.CONNECT, status="connected", remote_banner=self._remote_banner)
        if self._transport.authenticated:
            log.info("%s accepted %s without authentication", self._host, self._username)
            self._transition_to(SessionState.AUTHORIZED, auth_method="none")
        return True

    def disconnect(self, on_complete: CompletionCallback | None = None) -> asyncio.Future[None]:
        """
        Close the session.

        Idempotent and allowed in any state. The transport is aborted at
        once, so operations still queued or running fail with
        SessionClosed; the teardown itself runs after them.

        Returns:
            Future resolving once the session is DISCONNECTED
        """
        if self._disconnect_future is not None:
            self._attach(self._disconnect_future, on_complete)
            return self._disconnect_future

        self._closing = True
        if self._transport is not None:
            self._transport.abort()
        for handle in (self._channel, self._sftp):
            if handle is not None:
                handle.invalidate()

        future = self._executor.submit(self._teardown)
        self._executor.close()
        self._disconnect_future = future
        self._attach(future, on_complete)
        return future

    async def _teardown(self) -> None:
        error = self._last_error if self._state is SessionState.FAILED else None

        if self._transport is not None:
            try:
                await self._transport.close()
            except (asyncssh.Error, OSError) as exc:
                log.debug("Error while closing transport to %s: %s", self._host, exc)

        self._emitter.emit(EventType.DISCONNECT, from_state=self._state.value)
        self._transition_to(SessionState.DISCONNECTED)
        self._emitter.close()

        callback = getattr(self.delegate, "session_did_disconnect", None)
        if callback is not None:
            callback(self, error)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(
        self,
        strategy: AuthenticationStrategy,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        """
        Run one authentication strategy.

        Only one authentication may be queued or running at a time; a
        second one fails at once with OperationInProgress.

        Returns:
            Future resolving to True once AUTHORIZED. A refused
            credential fails with AuthenticationRejected and leaves the
            session CONNECTED for another attempt.
        """
        pending = self._auth_future is not None and not self._auth_future.done()
        if pending and not self._closing:
            return self._fail_fast(
                "authenticate",
                OperationInProgress(
                    "An authentication attempt is already in progress",
                    context=self.error_context(auth_method=strategy.method),
                ),
                on_complete,
            )

        future = self._schedule("authenticate", lambda: self._authenticate(strategy), on_complete)
        self._auth_future = future
        return future

    async def _authenticate(self, strategy: AuthenticationStrategy) -> bool:
        ctx = self.error_context(auth_method=strategy.method)
        if self._closing or self._state is SessionState.DISCONNECTED:
            raise self._closed_error()
        if self._state is not SessionState.CONNECTED or self._transport is None:
            raise InvalidState(
                f"Authentication needs a connected session, session is {self._state.value}",
                state=self._state.value,
                context=ctx,
            )

        transport = self._transport
        self._transition_to(SessionState.AUTHENTICATING, auth_method=strategy.method)

        with self._emitter.timed_event(EventType.AUTH, method=strategy.method) as event_data:
            try:
                accepted = await strategy.attempt(transport, self)
            except SSHError as exc:
                event_data["status"] = "error"
                event_data["error_type"] = exc.error_type
                if exc.context.host is None:
                    exc.context.host = ctx.host
                    exc.context.port = ctx.port
                    exc.context.username = ctx.username
                if exc.context.auth_method is None:
                    exc.context.auth_method = strategy.method
                if self._closing:
                    raise self._closed_error() from exc
                if isinstance(exc, SSHConnectionError):
                    self._transition_to(SessionState.FAILED, error=exc.error_type)
                else:
                    self._transition_to(SessionState.CONNECTED)
                raise
            except Exception as exc:
                # The exchange stopped somewhere unknown; the transport is unusable
                event_data["status"] = "error"
                event_data["error_type"] = type(exc).__name__
                if self._closing:
                    raise self._closed_error() from exc
                self._transition_to(SessionState.FAILED, error=type(exc).__name__)
                raise
            event_data["status"] = "success" if accepted else "rejected"

        if self._closing:
            raise self._closed_error()

        if accepted:
            self._transition_to(SessionState.AUTHORIZED, auth_method=strategy.method)
            log.info("Authenticated %s@%s with %s", self._username, self._host, strategy.method)
            return True

        self._transition_to(SessionState.CONNECTED)
        raise AuthenticationRejected(
            f"Server rejected {strategy.method} authentication for "
            f"{self._username}@{self._host}",
            context=ctx,
        )

    def authenticate_by_password(
        self,
        password: str,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        return self.authenticate(PasswordAuth(password), on_complete)

    def authenticate_by_public_key(
        self,
        public_key: Path | str | None,
        private_key: Path | str,
        passphrase: str | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        """
        Authenticate with a key pair.

        Args:
            public_key: Public key file, checked against the private key;
                None to derive it from the private key
            private_key: Private key file
            passphrase: Passphrase for an encrypted key; None or "" when
                the key is not encrypted
        """
        return self.authenticate(
            PublicKeyAuth(private_key=private_key, public_key=public_key, passphrase=passphrase),
            on_complete,
        )

    def authenticate_by_keyboard_interactive(
        self,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        """Keyboard-interactive authentication answered by the delegate."""
        return self.authenticate(DelegateKeyboardInteractiveAuth(), on_complete)

    def authenticate_by_keyboard_interactive_using(
        self,
        responder: Callable[[str], str],
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        """Keyboard-interactive authentication answered by responder(prompt)."""
        return self.authenticate(KeyboardInteractiveAuth(responder), on_complete)

    def connect_to_agent(
        self,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        """Authenticate with the identities held by the SSH agent."""
        return self.authenticate(AgentAuth(self._config.agent_path), on_complete)

    def supported_authentication_methods(
        self,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[list[str]]:
        """
        The authentication methods the server offers, in the order they
        will be tried. Only valid while CONNECTED.
        """
        async def op() -> list[str]:
            transport = self._require_live()
            if self._state is not SessionState.CONNECTED:
                raise InvalidState(
                    "Authentication methods are only available before authorization",
                    state=self._state.value,
                    context=self.error_context(),
                )
            return transport.auth_methods()

        return self._schedule("supported_authentication_methods", op, on_complete)

    # ------------------------------------------------------------------
    # Host identity
    # ------------------------------------------------------------------

    def fingerprint(
        self,
        hash_type: FingerprintHash | str | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[str]:
        """
        Fingerprint of the server's host key, e.g. "AB:CD:...".

        Args:
            hash_type: MD5 or SHA1; the session's fingerprint_hash when None
        """
        async def op() -> str:
            key = self._require_live().host_key()
            algo = FingerprintHash(hash_type) if hash_type is not None else self._fingerprint_hash
            fingerprint = key.fingerprint(algo)
            self._emitter.host_key(
                "fingerprint", key.key_type, hash=algo.value, fingerprint=fingerprint,
            )
            return fingerprint

        return self._schedule("fingerprint", op, on_complete)

    def known_host_status(
        self,
        files: Iterable[Path | str] | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[KnownHostStatus]:
        """
        Look the server's host key up in known_hosts files.

        Args:
            files: Files to check in order; the configured or platform
                default files when None

        Returns:
            Future resolving to MATCH, MISMATCH, NOT_FOUND or FAILURE.
            A MISMATCH is only reported; the session stays usable.
        """
        file_list = list(files) if files is not None else None

        async def op() -> KnownHostStatus:
            key = self._require_live().host_key()
            status = self._known_hosts.status(self._host, self._port, key, file_list)
            self._emitter.host_key("check", key.key_type, status=status.value)
            if status is KnownHostStatus.MISMATCH:
                log.warning(
                    "Host key for %s:%d does not match known_hosts (%s)",
                    self._host, self._port, key.fingerprint(self._fingerprint_hash),
                )
            return status

        return self._schedule("known_host_status", op, on_complete)

    def add_known_host_name(
        self,
        host_name: str,
        port: int | None = None,
        file: Path | str | None = None,
        salt: str | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Future[bool]:
        """
        Trust the server's host key under host_name.

        Args:
            host_name: Name or address to record; with salt, its base64
                HMAC-SHA1 hash
            port: Port to record, the session port when None; non-22
                ports give [host]:port
            file: known_hosts file; when None the first configured file,
                or the user's own
            salt: Base64 salt used to hash host_name

        Returns:
            Future resolving to True if written, False if the file could
            not be written
        """
        async def op() -> bool:
            key = self._require_live().host_key()
            record_port = port if port is not None else self._port
            added = self._known_hosts.add(host_name, record_port, key, file, salt)
            self._emitter.host_key("add", key.key_type, hashed=bool(salt), added=added)
            return added

        return self._schedule("add_known_host_name", op, on_complete)
