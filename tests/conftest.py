"""
Pytest fixtures for sshsession tests.

Provides:
- FakeTransport: a scripted Transport for state machine tests
- Host key and client key fixtures
- MockSSHServer fixtures for integration tests against asyncssh
- Event capture fixture for asserting event sequences
"""
from __future__ import annotations

import asyncio
import inspect
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncGenerator, Callable, Generator

import asyncssh
import pytest

from sshsession.errors import AuthenticationRejected, ConnectionTimeout, SessionClosed
from sshsession.host_key import HostKey
from sshsession.transport import ExecResult

if TYPE_CHECKING:
    from sshsession.events import EventCollector
    from sshsession.testing.mock_server import MockSSHServer


class FakeTransport:
    """
    Scripted Transport.

    Attributes a test can set before connecting:
        banner: Server identification returned by handshake()
        key: Host key the "server" presents
        methods: Methods offered after the handshake
        password: Accepted password
        public_keys: Public blobs accepted for publickey auth
        challenges: (prompt, answer) rounds for keyboard-interactive
        accept_none: The server needs no authentication
        handshake_error: Raised by handshake()
        handshake_gate / auth_gate: Events the handshake / the next
            credential wait on; an aborted transport releases them
    """

    def __init__(self) -> None:
        self.banner = "SSH-2.0-FakeSSH_1.0"
        self.key = HostKey(key_type="ssh-ed25519", blob=b"\x00\x00\x00\x0bssh-ed25519fake-host-key")
        self.methods = ["publickey", "keyboard-interactive", "password"]
        self.password = "secret"
        self.public_keys: list[bytes] = []
        self.challenges: list[tuple[str, str]] = [("Password: ", "secret")]
        self.accept_none = False
        self.handshake_error: Exception | None = None
        self.handshake_gate: asyncio.Event | None = None
        self.auth_gate: asyncio.Event | None = None

        self.calls: list[tuple[Any, ...]] = []
        self.aborted = False
        self.closed = False
        self._authenticated = False
        self._abort_event = asyncio.Event()

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    async def _block(self, gate: asyncio.Event | None, timeout: float | None) -> None:
        if gate is None:
            return
        waiters = {
            asyncio.ensure_future(gate.wait()),
            asyncio.ensure_future(self._abort_event.wait()),
        }
        done, pending = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        if self.aborted:
            raise SessionClosed("Transport was closed")
        if not done:
            raise ConnectionTimeout(f"Timed out after {timeout}s")

    def _check(self) -> None:
        if self.aborted:
            raise SessionClosed("Transport was closed")

    async def handshake(
        self,
        host: str,
        port: int,
        username: str,
        timeout: float | None,
        banner: str | None,
    ) -> str:
        self.calls.append(("handshake", host, port, username, timeout, banner))
        await self._block(self.handshake_gate, timeout)
        if self.handshake_error is not None:
            raise self.handshake_error
        self._authenticated = self.accept_none
        return self.banner

    def host_key(self) -> HostKey:
        self._check()
        self.calls.append(("host_key",))
        return self.key

    def auth_methods(self) -> list[str]:
        self._check()
        self.calls.append(("auth_methods",))
        return list(self.methods)

    async def _credential(self, method: str, timeout: float | None, check: Callable[[], Any]) -> bool:
        self._check()
        await self._block(self.auth_gate, timeout)
        if method not in self.methods:
            return False
        accepted = check()
        if inspect.isawaitable(accepted):
            accepted = await accepted
        self._authenticated = bool(accepted)
        return self._authenticated

    async def auth_password(self, password: str, timeout: float | None) -> bool:
        self.calls.append(("auth_password", timeout))
        return await self._credential("password", timeout, lambda: password == self.password)

    async def auth_public_key(self, key: Any, timeout: float | None) -> bool:
        self.calls.append(("auth_public_key", timeout))
        return await self._credential(
            "publickey", timeout, lambda: key.public_data in self.public_keys,
        )

    async def auth_keyboard_interactive(self, responder: Any, timeout: float | None) -> bool:
        self.calls.append(("auth_keyboard_interactive", timeout))

        async def converse() -> bool:
            for prompt, answer in self.challenges:
                try:
                    response = responder(prompt)
                    if inspect.isawaitable(response):
                        response = await response
                except Exception as exc:
                    raise AuthenticationRejected(f"Keyboard-interactive responder failed: {exc}") from exc
                if response != answer:
                    return False
            return True

        return await self._credential("keyboard-interactive", timeout, converse)

    async def run(self, command: str) -> ExecResult:
        self._check()
        self.calls.append(("run", command))
        return ExecResult(stdout=f"ran {command}\n", stderr="", exit_code=0)

    async def open_sftp(self) -> Any:
        raise NotImplementedError("FakeTransport has no SFTP")

    def abort(self) -> None:
        self.aborted = True
        self._abort_event.set()

    async def close(self) -> None:
        self.abort()
        self.closed = True


@pytest.fixture
def fake_transport() -> FakeTransport:
    """A fresh FakeTransport; pass transport_factory=lambda: fake_transport."""
    return FakeTransport()


@pytest.fixture
def client_key() -> asyncssh.SSHKey:
    """A throwaway ed25519 client key."""
    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture
def client_key_files(tmp_path: Path, client_key: asyncssh.SSHKey) -> tuple[Path, Path]:
    """client_key written as an unencrypted (private, public) file pair."""
    private_path = tmp_path / "id_ed25519"
    public_path = tmp_path / "id_ed25519.pub"
    client_key.write_private_key(str(private_path))
    client_key.write_public_key(str(public_path))
    return private_path, public_path


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator["MockSSHServer", None]:
    """
    MockSSHServer accepting user "test" with password "test".

    Usage:
        async def test_example(mock_ssh_server):
            session = Session("127.0.0.1", mock_ssh_server.port, "test")
            await session.connect()
    """
    from sshsession.testing.mock_server import MockServerConfig, MockSSHServer

    async with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(event_collector):
            session = Session("example.com", event_collector=event_collector)
            ...
            assert event_collector.get_by_type("STATE_CHANGE")
    """
    from sshsession.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"
