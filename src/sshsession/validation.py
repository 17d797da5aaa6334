"""
Input validation for session endpoints.

Validates hostnames, usernames and ports before they reach the
transport, rejecting shell metacharacters, newlines, null bytes and
out-of-range values. Also splits ``host:port`` / ``[v6host]:port``
addresses into their parts.
"""

import ipaddress
import re
from typing import Final

# Maximum lengths per RFC and POSIX standards
MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 32

# Characters that must never appear in SSH parameters
DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"  # null byte
    "\n\r"  # newlines
    "`$(){}[]|;&<>\\'\""  # shell metacharacters
    "\t"
)

_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z0-9_]([a-zA-Z0-9_-]*[a-zA-Z0-9_])?$"
)

# POSIX-style, plus dots which are common in directory-backed accounts
_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_.-]*$"
)

_CHAR_NAMES: Final[dict[str, str]] = {
    "\x00": "null byte",
    "\n": "newline",
    "\r": "carriage return",
    "\t": "tab",
}


def _check_dangerous_chars(value: str, field_name: str) -> None:
    """
    Raise ValueError if value contains a forbidden character.
    """
    assert isinstance(value, str), \
        f"Precondition: value must be str, got {type(value).__name__}"

    for char in value:
        if char in DANGEROUS_CHARS:
            char_desc = _CHAR_NAMES.get(char, repr(char))
            raise ValueError(
                f"{field_name} contains forbidden character: {char_desc}"
            )


def _is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def validate_hostname(hostname: str) -> str:
    """
    Validate and normalise a hostname or IP address literal.

    Validates:
    - IPv4 and IPv6 literals are accepted as-is
    - Maximum 253 characters total
    - Labels (dot-separated segments) max 63 characters each
    - Labels contain only alphanumerics, hyphens and underscores
    - Labels do not start or end with hyphens
    - No shell metacharacters, newlines, or null bytes

    Args:
        hostname: The hostname to validate

    Returns:
        The normalised hostname (lowercase)

    Raises:
        ValueError: If the hostname is invalid, with a clear message
    """
    if not isinstance(hostname, str):
        raise ValueError(f"hostname must be a string, got {type(hostname).__name__}")

    if not hostname:
        raise ValueError("hostname must not be empty")

    # IPv6 literals contain ':' which the label rules below would reject
    if _is_ip_literal(hostname):
        return hostname.lower()

    _check_dangerous_chars(hostname, "hostname")

    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})"
        )

    labels = hostname.split(".")
    for i, label in enumerate(labels):
        if not label:
            if i == 0:
                raise ValueError("hostname must not start with a dot")
            elif i == len(labels) - 1:
                raise ValueError("hostname must not end with a dot")
            else:
                raise ValueError("hostname must not contain consecutive dots")

        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(
                f"hostname label '{label}' exceeds maximum length of "
                f"{MAX_LABEL_LENGTH} characters (got {len(label)})"
            )

        if not _LABEL_PATTERN.match(label):
            if label.startswith("-"):
                raise ValueError(
                    f"hostname label '{label}' must not start with a hyphen"
                )
            elif label.endswith("-"):
                raise ValueError(
                    f"hostname label '{label}' must not end with a hyphen"
                )
            raise ValueError(
                f"hostname label '{label}' contains invalid characters "
                "(only alphanumeric, hyphens and underscores allowed)"
            )

    result = hostname.lower()
    assert 0 < len(result) <= MAX_HOSTNAME_LENGTH, \
        f"Postcondition: normalised hostname length {len(result)} out of range"
    return result


def validate_username(username: str) -> str:
    """
    Validate a username.

    Validates:
    - Maximum 32 characters
    - Starts with a letter or underscore
    - Contains only alphanumerics, underscores, dots and hyphens
    - No shell metacharacters, newlines, or null bytes

    Returns:
        The username unchanged

    Raises:
        ValueError: If the username is invalid, with a clear message
    """
    if not isinstance(username, str):
        raise ValueError(f"username must be a string, got {type(username).__name__}")

    if not username:
        raise ValueError("username must not be empty")

    _check_dangerous_chars(username, "username")

    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters "
            f"(got {len(username)})"
        )

    if not _USERNAME_PATTERN.match(username):
        first_char = username[0]
        if not (first_char.isalpha() or first_char == "_"):
            raise ValueError(
                f"username must start with a letter or underscore, "
                f"got '{first_char}'"
            )
        for char in username:
            if not (char.isalnum() or char in "_.-"):
                raise ValueError(
                    f"username contains invalid character: {repr(char)}"
                )

    return username


def validate_port(port: int) -> int:
    """
    Validate a TCP port number (1-65535).

    Raises:
        ValueError: If the port is invalid, with a clear message
    """
    # bool is a subclass of int
    if isinstance(port, bool):
        raise ValueError("port must be an integer, got bool")

    if not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")

    if port < 1:
        raise ValueError(f"port must be at least 1, got {port}")

    if port > 65535:
        raise ValueError(f"port must be at most 65535, got {port}")

    return port


def _parse_port(text: str, address: str) -> int:
    if not text.isdigit():
        raise ValueError(f"invalid port in address {address!r}: {text!r}")
    return validate_port(int(text))


def parse_host_address(address: str) -> tuple[str, int | None]:
    """
    Split an address into host and optional port.

    Accepted forms:
    - ``host`` and ``host:port``
    - ``[v6host]`` and ``[v6host]:port``
    - a bare IPv6 literal such as ``::1`` (never carries a port)

    Args:
        address: The address as given by the caller

    Returns:
        Tuple of (host, port), port None when the address has none

    Raises:
        ValueError: If the brackets or port are malformed
    """
    if not isinstance(address, str) or not address:
        raise ValueError("host must be a non-empty string")

    if address.startswith("["):
        close = address.find("]")
        if close == -1:
            raise ValueError(f"unterminated '[' in address {address!r}")
        host = address[1:close]
        rest = address[close + 1:]
        if not host:
            raise ValueError(f"empty host in address {address!r}")
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise ValueError(f"unexpected text after ']' in address {address!r}")
        return host, _parse_port(rest[1:], address)

    if address.count(":") == 1:
        host, _, port_text = address.partition(":")
        if not host:
            raise ValueError(f"empty host in address {address!r}")
        return host, _parse_port(port_text, address)

    return address, None
