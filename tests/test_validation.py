"""
Tests for input validation.

Tests validate_hostname, validate_username, validate_port and
parse_host_address.
"""

import pytest

from sshsession.validation import (
    DANGEROUS_CHARS,
    MAX_HOSTNAME_LENGTH,
    MAX_LABEL_LENGTH,
    MAX_USERNAME_LENGTH,
    parse_host_address,
    validate_hostname,
    validate_port,
    validate_username,
)


class TestValidateHostname:
    """Tests for validate_hostname."""

    @pytest.mark.parametrize("hostname", [
        "localhost",
        "example.com",
        "my-server.example.com",
        "build_01.internal",
        "192.168.1.1",
    ])
    def test_valid(self, hostname: str) -> None:
        assert validate_hostname(hostname) == hostname

    def test_normalises_to_lowercase(self) -> None:
        assert validate_hostname("Example.COM") == "example.com"

    def test_ipv6_literals(self) -> None:
        assert validate_hostname("::1") == "::1"
        assert validate_hostname("FE80::1") == "fe80::1"

    def test_length_limits(self) -> None:
        label = "a" * MAX_LABEL_LENGTH
        assert validate_hostname(label) == label

        with pytest.raises(ValueError, match="label"):
            validate_hostname("a" * (MAX_LABEL_LENGTH + 1))

        too_long = ".".join(["a" * 50] * 6)
        assert len(too_long) > MAX_HOSTNAME_LENGTH
        with pytest.raises(ValueError, match="maximum length"):
            validate_hostname(too_long)

    @pytest.mark.parametrize("hostname,message", [
        ("", "empty"),
        (".example.com", "start with a dot"),
        ("example.com.", "end with a dot"),
        ("example..com", "consecutive dots"),
        ("-example.com", "start with a hyphen"),
        ("example-.com", "end with a hyphen"),
        ("exa mple.com", "invalid characters"),
        ("héllo.com", "invalid characters"),
    ])
    def test_invalid(self, hostname: str, message: str) -> None:
        with pytest.raises(ValueError, match=message):
            validate_hostname(hostname)

    @pytest.mark.parametrize("hostname", [
        "host;rm -rf /",
        "host`id`",
        "$(whoami).com",
        "host\x00.com",
        "host\n.com",
    ])
    def test_injection_rejected(self, hostname: str) -> None:
        with pytest.raises(ValueError, match="forbidden character"):
            validate_hostname(hostname)

    def test_non_string_rejected(self) -> None:
        with pytest.raises(ValueError, match="must be a string"):
            validate_hostname(None)  # type: ignore[arg-type]


class TestValidateUsername:
    """Tests for validate_username."""

    @pytest.mark.parametrize("username", [
        "alice",
        "_svc",
        "deploy-bot",
        "first.last",
        "user01",
        "a" * MAX_USERNAME_LENGTH,
    ])
    def test_valid(self, username: str) -> None:
        assert validate_username(username) == username

    @pytest.mark.parametrize("username,message", [
        ("", "empty"),
        ("1user", "start with a letter"),
        ("-user", "start with a letter"),
        ("us er", "invalid character"),
        ("a" * (MAX_USERNAME_LENGTH + 1), "maximum length"),
    ])
    def test_invalid(self, username: str, message: str) -> None:
        with pytest.raises(ValueError, match=message):
            validate_username(username)

    @pytest.mark.parametrize("char", sorted(DANGEROUS_CHARS))
    def test_dangerous_characters(self, char: str) -> None:
        with pytest.raises(ValueError, match="forbidden character"):
            validate_username(f"user{char}name")


class TestValidatePort:
    """Tests for validate_port."""

    @pytest.mark.parametrize("port", [1, 22, 2222, 65535])
    def test_valid(self, port: int) -> None:
        assert validate_port(port) == port

    @pytest.mark.parametrize("port", [0, -22, 65536])
    def test_out_of_range(self, port: int) -> None:
        with pytest.raises(ValueError):
            validate_port(port)

    @pytest.mark.parametrize("port", ["22", 22.0, None, True])
    def test_wrong_type(self, port: object) -> None:
        with pytest.raises(ValueError, match="must be an integer"):
            validate_port(port)  # type: ignore[arg-type]


class TestParseHostAddress:
    """Tests for parse_host_address."""

    @pytest.mark.parametrize("address,expected", [
        ("example.com", ("example.com", None)),
        ("example.com:2222", ("example.com", 2222)),
        ("[::1]", ("::1", None)),
        ("[::1]:2222", ("::1", 2222)),
        ("[example.com]:22", ("example.com", 22)),
        ("::1", ("::1", None)),
        ("fe80::1:2", ("fe80::1:2", None)),
    ])
    def test_valid(self, address: str, expected: tuple[str, int | None]) -> None:
        assert parse_host_address(address) == expected

    @pytest.mark.parametrize("address", [
        "",
        "[::1",
        "[]:22",
        "[::1]x",
        ":22",
        "example.com:ssh",
        "example.com:0",
        "example.com:70000",
    ])
    def test_invalid(self, address: str) -> None:
        with pytest.raises(ValueError):
            parse_host_address(address)
