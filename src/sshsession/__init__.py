"""sshsession: SSH client session layer with serialized, inspectable operations."""

__version__ = "0.1.0"

from sshsession.auth import (
    AgentAuth,
    AuthenticationStrategy,
    DelegateKeyboardInteractiveAuth,
    KeyboardInteractiveAuth,
    PasswordAuth,
    PublicKeyAuth,
    load_private_key,
    load_public_key,
)
from sshsession.channel import SFTP, Channel
from sshsession.config import SessionConfig, SSHConfig, SSHHostConfig, get_ssh_config
from sshsession.errors import (
    AgentUnavailable,
    AuthenticationRejected,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostUnreachable,
    InvalidState,
    KeyDecryptionFailed,
    KeyFileUnreadable,
    NoInteractiveHandler,
    NotConnected,
    OperationInProgress,
    SessionClosed,
    SSHConnectionError,
    SSHError,
    TrustFileUnreadable,
)
from sshsession.events import Event, EventCollector, EventEmitter, EventType
from sshsession.executor import SerialExecutor
from sshsession.host_key import (
    FingerprintHash,
    HostKey,
    KnownHostsFile,
    KnownHostStatus,
    KnownHostStore,
    compute_fingerprint,
    hash_host_name,
)
from sshsession.platform import (
    expand_path,
    get_agent_available,
    get_known_hosts_path,
    get_known_hosts_read_paths,
    get_ssh_dir,
    is_windows,
)
from sshsession.session import Session, SessionDelegate, SessionState
from sshsession.transport import AsyncSSHTransport, ExecResult, Transport
from sshsession.validation import (
    parse_host_address,
    validate_hostname,
    validate_port,
    validate_username,
)

__all__ = [
    # Session
    "Session",
    "SessionDelegate",
    "SessionState",
    "SessionConfig",
    "SerialExecutor",
    # Transport
    "AsyncSSHTransport",
    "ExecResult",
    "Transport",
    # Handles
    "Channel",
    "SFTP",
    # Auth
    "AuthenticationStrategy",
    "AgentAuth",
    "DelegateKeyboardInteractiveAuth",
    "KeyboardInteractiveAuth",
    "PasswordAuth",
    "PublicKeyAuth",
    "load_private_key",
    "load_public_key",
    # Host identity
    "FingerprintHash",
    "HostKey",
    "KnownHostsFile",
    "KnownHostStatus",
    "KnownHostStore",
    "compute_fingerprint",
    "hash_host_name",
    # Config
    "SSHConfig",
    "SSHHostConfig",
    "get_ssh_config",
    # Errors
    "AgentUnavailable",
    "AuthenticationRejected",
    "ConnectionRefused",
    "ConnectionTimeout",
    "ErrorContext",
    "HostUnreachable",
    "InvalidState",
    "KeyDecryptionFailed",
    "KeyFileUnreadable",
    "NoInteractiveHandler",
    "NotConnected",
    "OperationInProgress",
    "SessionClosed",
    "SSHConnectionError",
    "SSHError",
    "TrustFileUnreadable",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Platform
    "is_windows",
    "get_ssh_dir",
    "get_known_hosts_path",
    "get_known_hosts_read_paths",
    "expand_path",
    "get_agent_available",
    # Validation
    "parse_host_address",
    "validate_hostname",
    "validate_port",
    "validate_username",
]
