"""
Platform paths for the trust store, ssh_config and the SSH agent.

Provides:
- The per-user SSH directory and its known_hosts/config files
- The system-wide known_hosts and ssh_config files
- Agent socket discovery
- Path expansion
"""
from __future__ import annotations

import os
import sys
from pathlib import Path


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """
    Get the platform-appropriate SSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
    return Path.home() / ".ssh"


def _system_ssh_dir() -> Path:
    if is_windows():
        program_data = os.environ.get("ProgramData", "C:\\ProgramData")
        return Path(program_data) / "ssh"
    return Path("/etc/ssh")


def get_known_hosts_path() -> Path:
    """
    Get the user's known_hosts file, the default target for new entries.
    """
    return get_ssh_dir() / "known_hosts"


def get_system_known_hosts_path() -> Path:
    """Get the system-wide ssh_known_hosts file."""
    return _system_ssh_dir() / "ssh_known_hosts"


def get_known_hosts_read_paths() -> list[Path]:
    """
    Get the known_hosts files consulted when none are given explicitly.

    The user's file comes first, so its verdict wins over the system
    file's.
    """
    return [get_known_hosts_path(), get_system_known_hosts_path()]


def get_config_path() -> Path:
    """Get the user's SSH config file path."""
    return get_ssh_dir() / "config"


def get_system_config_path() -> Path:
    """Get the system-wide SSH config file path."""
    return _system_ssh_dir() / "ssh_config"


def expand_path(path: str | Path) -> Path:
    """
    Expand a path, handling ~ and environment variables.

    On Windows %VAR% references are expanded as well.
    """
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()


def get_agent_path() -> str | None:
    """
    Get the agent socket from SSH_AUTH_SOCK, if set.

    Returns:
        The socket path, or None when no agent is advertised
    """
    return os.environ.get("SSH_AUTH_SOCK") or None


def get_agent_available(agent_path: str | None = None) -> bool:
    """
    Check whether an SSH agent socket is present.

    Args:
        agent_path: Explicit socket path; SSH_AUTH_SOCK when omitted

    Returns:
        True if the socket path exists
    """
    path = agent_path or get_agent_path()
    if not path:
        return False
    if is_windows():
        # Windows agents use named pipes, which Path cannot stat reliably
        return True
    return Path(path).exists()
