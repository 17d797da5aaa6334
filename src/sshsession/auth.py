"""
Authentication strategies.

Provides:
- AuthenticationStrategy: the protocol every strategy satisfies
- PasswordAuth, PublicKeyAuth, KeyboardInteractiveAuth,
  DelegateKeyboardInteractiveAuth, AgentAuth
- load_private_key / load_public_key: key file helpers with mapped errors

A strategy carries only its credential material. Session builds one per
call and hands it the transport; the strategy returns True when the
server accepted the credential and False when it was refused. Problems
on the client side (unreadable key, missing delegate, no agent) raise.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol, Union

import asyncssh

from sshsession.errors import (
    AgentUnavailable,
    KeyDecryptionFailed,
    KeyFileUnreadable,
    NoInteractiveHandler,
)
from sshsession.platform import expand_path, get_agent_available, get_agent_path
from sshsession.transport import (
    METHOD_KEYBOARD_INTERACTIVE,
    METHOD_PASSWORD,
    METHOD_PUBLIC_KEY,
    Responder,
    Transport,
)

if TYPE_CHECKING:
    from sshsession.session import Session

log = logging.getLogger("sshsession.auth")

METHOD_AGENT = "agent"


class AuthenticationStrategy(Protocol):
    """
    One way of proving the user's identity.

    Attributes:
        method: Name used in AUTH events and error context
    """
    method: str

    async def attempt(self, transport: Transport, session: "Session") -> bool:
        """Try the credential; True if the server accepted it."""
        ...


def _check_readable(path: Path, kind: str) -> None:
    if not path.exists():
        raise KeyFileUnreadable(
            f"{kind} file not found: {path}",
            key_path=str(path),
            reason="file_not_found",
        )
    if not os.access(path, os.R_OK):
        raise KeyFileUnreadable(
            f"{kind} file not readable: {path}",
            key_path=str(path),
            reason="permission_denied",
        )


def load_private_key(
    key_path: Path | str,
    passphrase: str | None = None,
) -> asyncssh.SSHKey:
    """
    Load a private key from file.

    Args:
        key_path: Path to the private key file
        passphrase: Passphrase for encrypted keys; None or "" for
            unencrypted keys

    Returns:
        Loaded SSH key

    Raises:
        KeyFileUnreadable: If the file is missing or not readable
        KeyDecryptionFailed: If the passphrase is wrong or missing, or
            the file is not a private key
    """
    key_path = expand_path(key_path)
    _check_readable(key_path, "Private key")

    try:
        return asyncssh.read_private_key(str(key_path), passphrase=passphrase or None)
    except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
        error_msg = str(e).lower()
        if "passphrase" in error_msg or "decrypt" in error_msg:
            reason = "wrong_passphrase"
        else:
            reason = "invalid_format"
        raise KeyDecryptionFailed(
            f"Failed to load private key {key_path}: {e}",
            key_path=str(key_path),
            reason=reason,
        ) from e
    except OSError as e:
        raise KeyFileUnreadable(
            f"Cannot read private key {key_path}: {e}",
            key_path=str(key_path),
            reason="io_error",
        ) from e


def load_public_key(key_path: Path | str) -> asyncssh.SSHKey:
    """
    Load a public key from file.

    Raises:
        KeyFileUnreadable: If the file is missing, unreadable or not a
            public key
    """
    key_path = expand_path(key_path)
    _check_readable(key_path, "Public key")

    try:
        return asyncssh.read_public_key(str(key_path))
    except (asyncssh.KeyImportError, OSError) as e:
        raise KeyFileUnreadable(
            f"Cannot load public key {key_path}: {e}",
            key_path=str(key_path),
            reason="invalid_format",
        ) from e


@dataclass
class PasswordAuth:
    """Password authentication."""
    password: str = field(repr=False)
    method: str = field(default=METHOD_PASSWORD, init=False)

    async def attempt(self, transport: Transport, session: "Session") -> bool:
        return await transport.auth_password(self.password, session.timeout)


@dataclass
class PublicKeyAuth:
    """
    Key pair authentication.

    The private key is read (and decrypted) before anything is sent. When
    a public key file is given it must belong to the private key.
    """
    private_key: Path | str
    public_key: Path | str | None = None
    passphrase: str | None = field(default=None, repr=False)
    method: str = field(default=METHOD_PUBLIC_KEY, init=False)

    async def attempt(self, transport: Transport, session: "Session") -> bool:
        key = load_private_key(self.private_key, self.passphrase)

        if self.public_key:
            public = load_public_key(self.public_key)
            if public.public_data != key.public_data:
                raise KeyFileUnreadable(
                    f"Public key {self.public_key} does not match private key "
                    f"{self.private_key}",
                    key_path=str(expand_path(self.public_key)),
                    reason="public_key_mismatch",
                )

        log.debug("Offering %s key from %s", key.get_algorithm(), self.private_key)
        return await transport.auth_public_key(key, session.timeout)


@dataclass
class KeyboardInteractiveAuth:
    """
    Keyboard-interactive authentication answered by a callback.

    The callback receives each prompt's text and returns the response.
    It is called once per prompt, in order, and never concurrently.
    """
    responder: Callable[[str], str] = field(repr=False)
    method: str = field(default=METHOD_KEYBOARD_INTERACTIVE, init=False)

    async def attempt(self, transport: Transport, session: "Session") -> bool:
        return await transport.auth_keyboard_interactive(self.responder, session.timeout)


@dataclass
class DelegateKeyboardInteractiveAuth:
    """
    Keyboard-interactive authentication answered by the session delegate.

    Each prompt goes to delegate.keyboard_interactive_request(session,
    prompt). Without a live delegate the attempt fails before the
    transport is touched.
    """
    method: str = field(default=METHOD_KEYBOARD_INTERACTIVE, init=False)

    @staticmethod
    def _handler(session: "Session") -> Callable[["Session", str], str]:
        delegate = session.delegate
        handler = getattr(delegate, "keyboard_interactive_request", None)
        if handler is None:
            raise NoInteractiveHandler(
                "Keyboard-interactive authentication needs a delegate that "
                "implements keyboard_interactive_request",
                context=session.error_context(auth_method=METHOD_KEYBOARD_INTERACTIVE),
            )
        return handler

    async def attempt(self, transport: Transport, session: "Session") -> bool:
        self._handler(session)

        def respond(prompt: str) -> str:
            # Looked up per prompt: the delegate is only weakly held
            return self._handler(session)(session, prompt)

        return await transport.auth_keyboard_interactive(respond, session.timeout)


@dataclass
class AgentAuth:
    """
    Authentication with the identities held by an SSH agent.

    Each identity is offered in the order the agent lists them; the
    attempt is refused only once all of them have been.
    """
    agent_path: str | None = None
    method: str = field(default=METHOD_AGENT, init=False)

    async def _connect(self) -> asyncssh.SSHAgentClient:
        path = self.agent_path or get_agent_path()
        if not path or not get_agent_available(path):
            raise AgentUnavailable(
                "SSH agent not available: no agent socket"
                if not path else f"SSH agent socket not found: {path}",
                reason="no_auth_sock" if not path else "socket_not_found",
            )
        try:
            agent = await asyncssh.connect_agent(path)
        except (OSError, asyncssh.Error) as e:
            raise AgentUnavailable(
                f"Failed to connect to SSH agent: {e}",
                reason="connection_failed",
            ) from e
        if agent is None:
            raise AgentUnavailable(
                f"Failed to connect to SSH agent at {path}",
                reason="connection_failed",
            )
        return agent

    async def attempt(self, transport: Transport, session: "Session") -> bool:
        agent = await self._connect()
        try:
            try:
                keys = await agent.get_keys()
            except (OSError, ValueError, asyncssh.Error) as e:
                raise AgentUnavailable(
                    f"SSH agent communication failed: {e}",
                    reason="communication_error",
                ) from e

            if not keys:
                log.info("SSH agent holds no identities")
                return False

            for index, key in enumerate(keys, start=1):
                log.debug("Offering agent identity %d of %d", index, len(keys))
                if await transport.auth_public_key(key, session.timeout):
                    return True
            return False
        finally:
            agent.close()
            await agent.wait_closed()


Strategy = Union[
    PasswordAuth,
    PublicKeyAuth,
    KeyboardInteractiveAuth,
    DelegateKeyboardInteractiveAuth,
    AgentAuth,
]
