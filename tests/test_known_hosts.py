"""
Tests for known_hosts parsing, lookup and writing.

Tests cover:
- Plain, bracketed, wildcard, negated and hashed host patterns
- @revoked and @cert-authority markers
- Malformed files and the FAILURE status
- Multi-file lookup order
- Appending entries, hashed and plain
"""
from __future__ import annotations

import base64
from pathlib import Path

import pytest

from sshsession.errors import TrustFileUnreadable
from sshsession.host_key import (
    HostKey,
    KnownHostsFile,
    KnownHostStatus,
    KnownHostStore,
    hash_host_name,
)

KEY = HostKey("ssh-ed25519", b"\x00\x00\x00\x0bssh-ed25519live-key")
OTHER = HostKey("ssh-ed25519", b"\x00\x00\x00\x0bssh-ed25519other-key")
RSA = HostKey("ssh-rsa", b"\x00\x00\x00\x07ssh-rsarsa-key")


def line(hosts: str, key: HostKey = KEY, marker: str | None = None) -> str:
    prefix = f"{marker} " if marker else ""
    return f"{prefix}{hosts} {key.key_type} {key.key_data}\n"


def status_of(text: str, host: str = "example.com", port: int = 22,
              key: HostKey = KEY) -> KnownHostStatus:
    return KnownHostsFile.parse(text).status(host, port, key)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParse:
    """KnownHostsFile.parse."""

    def test_skips_comments_and_blank_lines(self) -> None:
        known = KnownHostsFile.parse("# comment\n\n" + line("example.com"))
        assert len(known.entries) == 1
        assert known.entries[0].line == 3

    def test_comment_after_key(self) -> None:
        known = KnownHostsFile.parse(line("example.com").rstrip("\n") + " user@laptop\n")
        assert known.entries[0].key_data == KEY.key_data

    def test_skips_ssh1_records(self) -> None:
        known = KnownHostsFile.parse("example.com 1024 35 123456789\n")
        assert known.entries == []

    def test_markers(self) -> None:
        known = KnownHostsFile.parse(
            line("a.example.com", marker="@revoked")
            + line("*.example.com", marker="@cert-authority")
        )
        assert known.entries[0].is_revoked
        assert known.entries[1].marker == "@cert-authority"

    def test_unknown_marker(self) -> None:
        with pytest.raises(TrustFileUnreadable) as exc_info:
            KnownHostsFile.parse(line("example.com", marker="@bogus"))
        assert exc_info.value.line == 1

    def test_truncated_line(self) -> None:
        with pytest.raises(TrustFileUnreadable) as exc_info:
            KnownHostsFile.parse(line("ok.example.com") + "example.com ssh-ed25519\n")
        assert exc_info.value.line == 2

    def test_invalid_base64(self) -> None:
        with pytest.raises(TrustFileUnreadable):
            KnownHostsFile.parse("example.com ssh-ed25519 not*base64\n")

    def test_entry_round_trips_to_line(self) -> None:
        text = line("example.com,[example.com]:2222")
        assert KnownHostsFile.parse(text).entries[0].to_line() + "\n" == text


# ---------------------------------------------------------------------------
# Lookup within one file
# ---------------------------------------------------------------------------

class TestFileStatus:
    """KnownHostsFile.status."""

    def test_match(self) -> None:
        assert status_of(line("example.com")) is KnownHostStatus.MATCH

    def test_match_is_case_insensitive(self) -> None:
        assert status_of(line("EXAMPLE.com")) is KnownHostStatus.MATCH

    def test_mismatch(self) -> None:
        assert status_of(line("example.com", OTHER)) is KnownHostStatus.MISMATCH

    def test_not_found(self) -> None:
        assert status_of(line("other.example.com")) is KnownHostStatus.NOT_FOUND

    def test_match_wins_over_mismatch(self) -> None:
        text = line("example.com", OTHER) + line("example.com")
        assert status_of(text) is KnownHostStatus.MATCH

    def test_other_key_type_is_not_found(self) -> None:
        assert status_of(line("example.com", RSA)) is KnownHostStatus.NOT_FOUND

    def test_comma_list(self) -> None:
        assert status_of(line("a.example.com,example.com")) is KnownHostStatus.MATCH

    def test_wildcards(self) -> None:
        assert status_of(line("*.com")) is KnownHostStatus.MATCH
        assert status_of(line("exampl?.com")) is KnownHostStatus.MATCH
        assert status_of(line("*.org")) is KnownHostStatus.NOT_FOUND

    def test_negation(self) -> None:
        text = line("*.com,!example.com")
        assert status_of(text) is KnownHostStatus.NOT_FOUND
        assert status_of(text, host="other.com") is KnownHostStatus.MATCH

    def test_plain_pattern_only_covers_port_22(self) -> None:
        assert status_of(line("example.com"), port=2222) is KnownHostStatus.NOT_FOUND

    def test_bracketed_port(self) -> None:
        text = line("[example.com]:2222")
        assert status_of(text, port=2222) is KnownHostStatus.MATCH
        assert status_of(text, port=22) is KnownHostStatus.NOT_FOUND
        assert status_of(text, port=2200) is KnownHostStatus.NOT_FOUND

    def test_bracketed_wildcard(self) -> None:
        assert status_of(line("[*.com]:2222"), port=2222) is KnownHostStatus.MATCH

    def test_hashed(self) -> None:
        salt, digest = hash_host_name("example.com")
        text = line(f"|1|{salt}|{digest}")

        assert status_of(text) is KnownHostStatus.MATCH
        assert status_of(text, host="other.com") is KnownHostStatus.NOT_FOUND

    def test_hashed_custom_port(self) -> None:
        salt, digest = hash_host_name("[example.com]:2222")
        assert status_of(line(f"|1|{salt}|{digest}"), port=2222) is KnownHostStatus.MATCH

    def test_revoked_live_key(self) -> None:
        text = line("example.com") + line("example.com", marker="@revoked")
        assert status_of(text) is KnownHostStatus.MISMATCH

    def test_revoked_other_key_is_ignored(self) -> None:
        text = line("example.com") + line("example.com", OTHER, marker="@revoked")
        assert status_of(text) is KnownHostStatus.MATCH

    def test_cert_authority_is_ignored(self) -> None:
        text = line("*.com", marker="@cert-authority")
        assert status_of(text) is KnownHostStatus.NOT_FOUND


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TestStoreStatus:
    """KnownHostStore.status across files."""

    def test_first_decisive_file_wins(self, tmp_path: Path) -> None:
        first = tmp_path / "first"
        second = tmp_path / "second"
        first.write_text(line("example.com", OTHER))
        second.write_text(line("example.com"))
        store = KnownHostStore(read_paths=[first, second], write_path=first)

        assert store.status("example.com", 22, KEY) is KnownHostStatus.MISMATCH
        assert store.status("example.com", 22, KEY, files=[second, first]) is KnownHostStatus.MATCH

    def test_not_found_falls_through(self, tmp_path: Path) -> None:
        first = tmp_path / "first"
        second = tmp_path / "second"
        first.write_text(line("other.com"))
        second.write_text(line("example.com"))
        store = KnownHostStore(read_paths=[first, second])

        assert store.status("example.com", 22, KEY) is KnownHostStatus.MATCH

    def test_missing_files_are_not_found(self, tmp_path: Path) -> None:
        store = KnownHostStore(read_paths=[tmp_path / "absent"])
        assert store.status("example.com", 22, KEY) is KnownHostStatus.NOT_FOUND

    def test_no_files(self) -> None:
        store = KnownHostStore(read_paths=[])
        assert store.status("example.com", 22, KEY) is KnownHostStatus.NOT_FOUND

    def test_only_broken_file_is_failure(self, tmp_path: Path) -> None:
        broken = tmp_path / "broken"
        broken.write_text("example.com ssh-ed25519\n")
        store = KnownHostStore(read_paths=[broken, tmp_path / "absent"])

        assert store.status("example.com", 22, KEY) is KnownHostStatus.FAILURE

    def test_broken_file_is_skipped(self, tmp_path: Path) -> None:
        broken = tmp_path / "broken"
        good = tmp_path / "good"
        broken.write_text("example.com ssh-ed25519\n")
        good.write_text(line("other.com"))
        store = KnownHostStore(read_paths=[broken, good])

        assert store.status("example.com", 22, KEY) is KnownHostStatus.NOT_FOUND

    def test_directory_is_failure(self, tmp_path: Path) -> None:
        store = KnownHostStore(read_paths=[tmp_path])
        assert store.status("example.com", 22, KEY) is KnownHostStatus.FAILURE


class TestStoreAdd:
    """KnownHostStore.add."""

    def test_add_then_match(self, tmp_path: Path) -> None:
        path = tmp_path / "ssh" / "known_hosts"
        store = KnownHostStore(read_paths=[path], write_path=path)

        assert store.add("example.com", 22, KEY) is True

        assert path.read_text() == line("example.com")
        assert store.status("example.com", 22, KEY) is KnownHostStatus.MATCH

    def test_add_custom_port(self, tmp_path: Path) -> None:
        path = tmp_path / "known_hosts"
        store = KnownHostStore(read_paths=[path], write_path=path)

        store.add("example.com", 2222, KEY)

        assert path.read_text() == line("[example.com]:2222")
        assert store.status("example.com", 2222, KEY) is KnownHostStatus.MATCH

    def test_add_hashed(self, tmp_path: Path) -> None:
        path = tmp_path / "known_hosts"
        store = KnownHostStore(read_paths=[path], write_path=path)
        salt, digest = hash_host_name("example.com")

        assert store.add(digest, 22, KEY, salt=salt) is True

        assert path.read_text().startswith(f"|1|{salt}|{digest} ssh-ed25519 ")
        assert "example.com" not in path.read_text()
        assert store.status("example.com", 22, KEY) is KnownHostStatus.MATCH

    def test_add_to_explicit_file(self, tmp_path: Path) -> None:
        default = tmp_path / "default"
        explicit = tmp_path / "explicit"
        store = KnownHostStore(read_paths=[default], write_path=default)

        store.add("example.com", 22, KEY, file=explicit)

        assert not default.exists()
        assert explicit.read_text() == line("example.com")

    def test_appends_after_missing_newline(self, tmp_path: Path) -> None:
        path = tmp_path / "known_hosts"
        path.write_text(line("other.com").rstrip("\n"))
        store = KnownHostStore(read_paths=[path], write_path=path)

        store.add("example.com", 22, KEY)

        assert path.read_text() == line("other.com") + line("example.com")

    def test_unwritable_returns_false(self, tmp_path: Path) -> None:
        blocker = tmp_path / "afile"
        blocker.write_text("")
        target = blocker / "known_hosts"
        store = KnownHostStore(read_paths=[target], write_path=target)

        assert store.add("example.com", 22, KEY) is False
        assert blocker.read_text() == ""

    def test_key_data_is_base64_blob(self) -> None:
        assert base64.b64decode(KEY.key_data) == KEY.blob
