"""
Session error taxonomy with structured data for JSONL logging.

Every failure a Session reports is one of these types. Errors are
delivered through the operation's future and recorded as the session's
``last_error``; none of them escape the serial executor.

Error hierarchy:
- SSHError (base)
  - InvalidState (operation not allowed in the current state)
  - OperationInProgress (an authentication is already pending)
  - NotConnected (no live transport to query)
  - SessionClosed (session was disconnected)
  - SSHConnectionError
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
  - AuthenticationRejected (server refused the credentials)
    - AgentUnavailable (no agent to ask for identities)
  - KeyFileUnreadable (private/public key file missing or unreadable)
  - KeyDecryptionFailed (bad passphrase or undecodable key)
  - NoInteractiveHandler (keyboard-interactive without a responder)
  - TrustFileUnreadable (known_hosts file could not be read or parsed)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass
class ErrorContext:
    """
    Structured context for session errors.

    Carries the endpoint and credential kind involved, never the
    credential itself.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    key_path: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate invariants after initialisation."""
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra" and isinstance(value, dict):
                # Precondition: extra keys must not shadow field names
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """
    Base exception for all session errors.

    All errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        # Precondition: message must be non-empty
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Lifecycle Errors
# ---------------------------------------------------------------------------

class InvalidState(SSHError):
    """
    The operation is not permitted in the session's current state.

    Raised for authentication before the session is connected, a second
    connect, or an authentication after the session is authorized.
    """

    def __init__(
        self,
        message: str,
        state: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if state is not None:
            context.extra["state"] = state
        super().__init__(message, context)
        self.state = state


class OperationInProgress(SSHError):
    """Another authentication attempt is already queued or running."""
    pass


class NotConnected(SSHError):
    """The operation needs a live transport and the session has none."""
    pass


class SessionClosed(SSHError):
    """The session has been disconnected and cannot be used again."""
    pass


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Base class for connection-related errors."""
    pass


class ConnectionRefused(SSHConnectionError):
    """Server actively refused the connection."""
    pass


class ConnectionTimeout(SSHConnectionError):
    """Connection attempt timed out."""
    pass


class HostUnreachable(SSHConnectionError):
    """Host could not be reached (network error)."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationRejected(SSHError):
    """
    The server rejected the offered credentials.

    The session returns to the connected state and may try another
    strategy.
    """
    pass


class AgentUnavailable(AuthenticationRejected):
    """
    No SSH agent could be reached.

    This is raised when:
    - No agent socket is configured
    - The agent socket is not accessible
    - The agent returned an error while listing identities
    """

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)
        self.reason = reason


class _KeyFileError(SSHError):
    """Shared constructor for key file failures."""

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        # Precondition: key_path must be None or a non-empty string
        assert key_path is None or (isinstance(key_path, str) and key_path.strip()), (
            f"key_path must be None or a non-empty string, got {key_path!r}"
        )
        if context is None:
            context = ErrorContext()
        context.key_path = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)
        self.key_path = key_path
        self.reason = reason


class KeyFileUnreadable(_KeyFileError):
    """
    A key file could not be read.

    This is raised when:
    - Key file does not exist
    - Key file is not readable
    - Public key does not belong to the private key
    """
    pass


class KeyDecryptionFailed(_KeyFileError):
    """
    A private key could not be decoded.

    This is raised when:
    - Passphrase is incorrect or missing for an encrypted key
    - Key file format is invalid
    """
    pass


class NoInteractiveHandler(SSHError):
    """Keyboard-interactive was requested with no live delegate to answer."""
    pass


# ---------------------------------------------------------------------------
# Trust Store Errors
# ---------------------------------------------------------------------------

class TrustFileUnreadable(SSHError):
    """
    A known_hosts file exists but could not be read or parsed.

    Carries the offending path, and the line number for parse errors.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        line: int | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if path is not None:
            context.extra["path"] = path
        if line is not None:
            context.extra["line"] = line
        super().__init__(message, context)
        self.path = path
        self.line = line
