"""
Mock SSH server for integration testing.

Provides:
- MockServerConfig: which methods and credentials the server accepts
- MockSSHServer: async context manager running an asyncssh server on a
  dynamically allocated port

The mock server supports:
- password authentication with an optional delay
- public key authentication against a list of authorized keys
- multi-round keyboard-interactive authentication that stops at the
  first wrong answer
- servers that require no authentication at all
- command execution with canned outputs and exit codes
- SFTP rooted in a local directory
- server-side event logging

Example:
    async with MockSSHServer(MockServerConfig(password="secret")) as server:
        session = Session("127.0.0.1", server.port, "test")
        await session.connect()
        await session.authenticate_by_password("secret")
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import asyncssh

# One challenge per round: (prompt, expected answer)
Challenge = tuple[str, str]


@dataclass
class MockServerConfig:
    """
    Configuration for mock SSH server behaviours.

    Attributes:
        username: Username to accept
        password: Password to accept; None disables password auth
        authorized_keys: Public keys to accept; empty disables publickey
        kbdint_challenges: Keyboard-interactive rounds, one prompt each;
            empty disables keyboard-interactive
        require_auth: False lets every user in without authentication
        delay_auth: Seconds to wait before answering a credential
        server_version: Software version sent in the server banner
        command_outputs: Map commands to (stdout, stderr)
        command_exit_codes: Map commands to exit codes
        sftp_root: Directory served over SFTP; None disables SFTP
    """
    username: str = "test"
    password: str | None = "test"
    authorized_keys: list[asyncssh.SSHKey] = field(default_factory=list)
    kbdint_challenges: list[Challenge] = field(default_factory=list)
    require_auth: bool = True
    delay_auth: float = 0.0
    server_version: str = "MockSSH_1.0"
    command_outputs: dict[str, tuple[str, str]] = field(default_factory=dict)
    command_exit_codes: dict[str, int] = field(default_factory=dict)
    sftp_root: Path | None = None

    def __post_init__(self) -> None:
        assert self.delay_auth >= 0, f"delay_auth must be >= 0, got {self.delay_auth}"
        assert self.server_version and " " not in self.server_version, \
            f"server_version must be a single token, got {self.server_version!r}"


class MockSSHServerProtocol(asyncssh.SSHServer):
    """asyncssh server handler applying a MockServerConfig."""

    def __init__(self, config: MockServerConfig, server: "MockSSHServer") -> None:
        self._config = config
        self._server = server
        self._kbdint_round = 0
        self._conn: asyncssh.SSHServerConnection | None = None

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        self._conn = conn
        self._server.record(
            "SERVER_CONNECT",
            peer=str(conn.get_extra_info("peername")),
        )

    def connection_lost(self, exc: Exception | None) -> None:
        self._server.record("SERVER_DISCONNECT", error=str(exc) if exc else None)

    def begin_auth(self, username: str) -> bool:
        self._server.record(
            "SERVER_AUTH_BEGIN",
            username=username,
            client_version=self._conn.get_extra_info("client_version") if self._conn else None,
        )
        return self._config.require_auth

    async def _delay(self) -> None:
        if self._config.delay_auth > 0:
            await asyncio.sleep(self._config.delay_auth)

    # Password

    def password_auth_supported(self) -> bool:
        return self._config.password is not None

    async def validate_password(self, username: str, password: str) -> bool:
        await self._delay()
        valid = username == self._config.username and password == self._config.password
        self._server.record("SERVER_AUTH", method="password", username=username, success=valid)
        return valid

    # Public key

    def public_key_auth_supported(self) -> bool:
        return bool(self._config.authorized_keys)

    async def validate_public_key(self, username: str, key: asyncssh.SSHKey) -> bool:
        await self._delay()
        valid = username == self._config.username and any(
            key.public_data == authorized.public_data
            for authorized in self._config.authorized_keys
        )
        self._server.record("SERVER_AUTH", method="publickey", username=username, success=valid)
        return valid

    # Keyboard-interactive

    def kbdint_auth_supported(self) -> bool:
        return bool(self._config.kbdint_challenges)

    def _challenge(self) -> tuple[str, str, str, list[tuple[str, bool]]]:
        prompt, _answer = self._config.kbdint_challenges[self._kbdint_round]
        return ("", "", "", [(prompt, False)])

    def get_kbdint_challenge(
        self,
        username: str,
        lang: str,
        submethods: str,
    ) -> tuple[str, str, str, list[tuple[str, bool]]] | bool:
        if username != self._config.username:
            return False
        self._kbdint_round = 0
        return self._challenge()

    async def validate_kbdint_response(
        self,
        username: str,
        responses: list[str],
    ) -> tuple[str, str, str, list[tuple[str, bool]]] | bool:
        await self._delay()
        _prompt, expected = self._config.kbdint_challenges[self._kbdint_round]
        if responses != [expected]:
            self._server.record(
                "SERVER_AUTH",
                method="keyboard-interactive",
                username=username,
                success=False,
                round=self._kbdint_round,
            )
            return False

        self._kbdint_round += 1
        if self._kbdint_round < len(self._config.kbdint_challenges):
            return self._challenge()

        self._server.record(
            "SERVER_AUTH",
            method="keyboard-interactive",
            username=username,
            success=True,
            round=self._kbdint_round,
        )
        return True


async def handle_mock_process(process: asyncssh.SSHServerProcess, config: MockServerConfig) -> None:
    """Answer an exec request from the configured outputs."""
    command = process.command or ""

    if command in config.command_outputs:
        stdout, stderr = config.command_outputs[command]
    elif command.startswith("echo "):
        stdout, stderr = command[5:] + "\n", ""
    elif command == "whoami":
        stdout, stderr = config.username + "\n", ""
    else:
        stdout, stderr = "", ""

    if stdout:
        process.stdout.write(stdout)
    if stderr:
        process.stderr.write(stderr)
    process.exit(config.command_exit_codes.get(command, 0))


class MockSSHServer:
    """
    Async context manager for running a mock SSH server.

    Binds to port 0 so tests can run in parallel without port conflicts.
    A fresh ed25519 host key is generated per server.

    Usage:
        async with MockSSHServer(config) as server:
            line = server.known_hosts_line(f"[127.0.0.1]:{server.port}")
            ...
            for event in server.events:
                print(event)
    """

    def __init__(
        self,
        config: MockServerConfig | None = None,
        host_key: asyncssh.SSHKey | None = None,
    ) -> None:
        """
        Args:
            config: Server behaviour configuration (default: password "test")
            host_key: Host key to present; generated when None
        """
        self._config = config or MockServerConfig()
        self._host_key = host_key or asyncssh.generate_private_key("ssh-ed25519")
        self._server: asyncssh.SSHAcceptor | None = None
        self._port = 0
        self._events: list[dict[str, Any]] = []

    @property
    def port(self) -> int:
        """The assigned port (only valid after entering the context)."""
        assert self._port > 0, "Port not assigned - server not started"
        return self._port

    @property
    def config(self) -> MockServerConfig:
        return self._config

    @property
    def host_key(self) -> asyncssh.SSHKey:
        """The server's private host key."""
        return self._host_key

    @property
    def events(self) -> list[dict[str, Any]]:
        return list(self._events)

    def record(self, event_type: str, **data: Any) -> None:
        self._events.append({
            "event_type": event_type,
            "timestamp": time.time() * 1000,
            "data": data,
        })

    def known_hosts_line(self, host_pattern: str) -> str:
        """A known_hosts line trusting this server's key under host_pattern."""
        public = self._host_key.export_public_key("openssh").decode("ascii").split()
        return f"{host_pattern} {public[0]} {public[1]}\n"

    async def __aenter__(self) -> "MockSSHServer":
        await self._start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self._stop()

    async def _start(self) -> None:
        options: dict[str, Any] = {
            "server_host_keys": [self._host_key],
            "server_version": self._config.server_version,
            "process_factory": self._process_factory,
        }
        if self._config.sftp_root is not None:
            root = str(self._config.sftp_root)
            options["sftp_factory"] = lambda chan: asyncssh.SFTPServer(chan, chroot=root)

        self._server = await asyncssh.create_server(
            lambda: MockSSHServerProtocol(self._config, self),
            "127.0.0.1",
            0,
            **options,
        )
        self._port = self._server.sockets[0].getsockname()[1]
        self.record("SERVER_START", port=self._port)

    async def _stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.record("SERVER_STOP", port=self._port)

    async def _process_factory(self, process: asyncssh.SSHServerProcess) -> None:
        await handle_mock_process(process, self._config)
