"""
Host identity: fingerprints and the known_hosts trust store.

Provides:
- FingerprintHash / compute_fingerprint: MD5 or SHA-1 digest of a host
  key blob as colon-delimited uppercase hex
- HostKey: the key the server presented during the handshake
- KnownHostStatus: Match / Mismatch / NotFound / Failure
- KnownHostsFile: a parsed OpenSSH known_hosts file
- KnownHostStore: ordered lookup across files, and appending new entries

OpenSSH-compatible known_hosts format:
- hostname key (for port 22)
- [hostname]:port key (for non-standard ports)
- |1|salt|hash key (hashed hostnames, read and write)
- comma lists, * and ? wildcards, ! negation
- @revoked and @cert-authority markers
"""
from __future__ import annotations

import base64
import binascii
import fnmatch
import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable

import asyncssh

from sshsession.errors import TrustFileUnreadable
from sshsession.platform import get_known_hosts_path, get_known_hosts_read_paths

log = logging.getLogger("sshsession.host_key")

DEFAULT_PORT = 22

MARKER_REVOKED = "@revoked"
MARKER_CERT_AUTHORITY = "@cert-authority"
_MARKERS = frozenset({MARKER_REVOKED, MARKER_CERT_AUTHORITY})


class FingerprintHash(str, Enum):
    """Digest used to render a host key fingerprint."""
    MD5 = "md5"
    SHA1 = "sha1"


class KnownHostStatus(str, Enum):
    """
    Result of looking the live host key up in the trust store.
    """
    MATCH = "match"           # A stored key equals the live key
    MISMATCH = "mismatch"     # The host is known with a different key
    NOT_FOUND = "not_found"   # No entry for this host
    FAILURE = "failure"       # Trust files exist but none could be read


def compute_fingerprint(blob: bytes, hash_type: FingerprintHash = FingerprintHash.MD5) -> str:
    """
    Fingerprint a public key blob.

    Args:
        blob: Raw SSH wire-format public key
        hash_type: MD5 (16 bytes) or SHA1 (20 bytes)

    Returns:
        Uppercase hex bytes joined with colons, e.g. "AB:CD:..."
    """
    hash_type = FingerprintHash(hash_type)
    if hash_type is FingerprintHash.MD5:
        digest = hashlib.md5(blob).digest()
    else:
        digest = hashlib.sha1(blob).digest()
    return ":".join(f"{b:02X}" for b in digest)


@dataclass(frozen=True)
class HostKey:
    """
    A server host key as exchanged during the handshake.

    Attributes:
        key_type: SSH algorithm name (ssh-ed25519, ssh-rsa, ...)
        blob: Raw SSH wire-format public key
    """
    key_type: str
    blob: bytes

    @classmethod
    def from_ssh_key(cls, key: asyncssh.SSHKey) -> "HostKey":
        """Build from an asyncssh key, decoding its algorithm name."""
        algorithm = key.algorithm
        if isinstance(algorithm, bytes):
            algorithm = algorithm.decode("ascii")
        return cls(key_type=algorithm, blob=key.public_data)

    @property
    def key_data(self) -> str:
        """Base64 form as stored in known_hosts."""
        return base64.b64encode(self.blob).decode("ascii")

    def fingerprint(self, hash_type: FingerprintHash = FingerprintHash.MD5) -> str:
        return compute_fingerprint(self.blob, hash_type)


def hash_host_name(host_name: str, salt: bytes | None = None) -> tuple[str, str]:
    """
    Hash a host name using OpenSSH's known_hosts scheme (HMAC-SHA1).

    Args:
        host_name: Name as it would appear in known_hosts, including the
            [host]:port form for non-standard ports
        salt: 20-byte salt; random when omitted

    Returns:
        Tuple of (base64 salt, base64 hash)
    """
    if salt is None:
        salt = secrets.token_bytes(20)
    digest = hmac.new(salt, host_name.encode("utf-8"), hashlib.sha1).digest()
    return (
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(digest).decode("ascii"),
    )


def _check_hashed_hostname(pattern: str, host_name: str) -> bool:
    """Check a host name against a |1|salt|hash pattern."""
    parts = pattern.split("|")
    if len(parts) != 4 or parts[1] != "1":
        return False

    try:
        salt = base64.b64decode(parts[2], validate=True)
        stored_hash = base64.b64decode(parts[3], validate=True)
    except (ValueError, binascii.Error):
        return False

    computed = hmac.new(salt, host_name.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(stored_hash, computed)


def format_host_for_known_hosts(host: str, port: int) -> str:
    """
    Format host/port the way OpenSSH writes it.

    Plain host for port 22, [host]:port otherwise. A host that is
    already bracketed is returned unchanged.
    """
    if port == DEFAULT_PORT or host.startswith("["):
        return host
    return f"[{host}]:{port}"


def _pattern_matches(pattern: str, host: str, port: int) -> bool:
    """Match one (non-negated) pattern against host and port."""
    lookup = format_host_for_known_hosts(host, port)

    if pattern.startswith("|"):
        return _check_hashed_hostname(pattern, lookup)

    if pattern.startswith("["):
        close = pattern.find("]")
        if close == -1 or not pattern[close + 1:].startswith(":"):
            return False
        pattern_port = pattern[close + 2:]
        if not pattern_port.isdigit() or int(pattern_port) != port:
            return False
        return fnmatch.fnmatchcase(host.lower(), pattern[1:close].lower())

    if port != DEFAULT_PORT:
        return False
    return fnmatch.fnmatchcase(host.lower(), pattern.lower())


@dataclass
class KnownHostEntry:
    """
    One record of a known_hosts file.

    Attributes:
        patterns: Host patterns or salted hashes this record applies to
        key_type: SSH key algorithm name
        key_data: Base64 public key blob
        marker: "@revoked", "@cert-authority" or None
        source: File the record was read from
        line: Line number within source (1-based)
    """
    patterns: list[str]
    key_type: str
    key_data: str
    marker: str | None = None
    source: Path | None = None
    line: int = 0

    @property
    def is_revoked(self) -> bool:
        return self.marker == MARKER_REVOKED

    def matches_host(self, host: str, port: int) -> bool:
        """
        True when host:port is selected by this record's patterns.

        A matching negated pattern excludes the host regardless of the
        other patterns.
        """
        matched = False
        for pattern in self.patterns:
            if pattern.startswith("!"):
                if _pattern_matches(pattern[1:], host, port):
                    return False
            elif not matched and _pattern_matches(pattern, host, port):
                matched = True
        return matched

    def key_equals(self, key: HostKey) -> bool:
        return self.key_type == key.key_type and self.key_data == key.key_data

    def to_line(self) -> str:
        prefix = f"{self.marker} " if self.marker else ""
        return f"{prefix}{','.join(self.patterns)} {self.key_type} {self.key_data}"


def _parse_line(text: str, source: Path | None, lineno: int) -> KnownHostEntry | None:
    """
    Parse one known_hosts line.

    Returns None for blank lines, comments and legacy SSH-1 records.

    Raises:
        TrustFileUnreadable: If the line is malformed
    """
    fields_ = text.split()
    if not fields_ or fields_[0].startswith("#"):
        return None

    marker = None
    if fields_[0].startswith("@"):
        marker = fields_.pop(0)
        if marker not in _MARKERS:
            raise TrustFileUnreadable(
                f"Unknown marker {marker!r} in {source}:{lineno}",
                path=str(source) if source else None,
                line=lineno,
            )

    if len(fields_) < 3:
        raise TrustFileUnreadable(
            f"Truncated known_hosts entry in {source}:{lineno}",
            path=str(source) if source else None,
            line=lineno,
        )

    patterns = [p for p in fields_[0].split(",") if p]

    # SSH-1 RSA records carry "bits exponent modulus" and no key type
    if fields_[1].isdigit():
        return None

    key_type, key_data = fields_[1], fields_[2]
    try:
        base64.b64decode(key_data, validate=True)
    except (ValueError, binascii.Error):
        raise TrustFileUnreadable(
            f"Invalid base64 key in {source}:{lineno}",
            path=str(source) if source else None,
            line=lineno,
        )

    return KnownHostEntry(
        patterns=patterns,
        key_type=key_type,
        key_data=key_data,
        marker=marker,
        source=source,
        line=lineno,
    )


@dataclass
class KnownHostsFile:
    """A fully parsed known_hosts file."""
    path: Path | None
    entries: list[KnownHostEntry] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str, path: Path | None = None) -> "KnownHostsFile":
        """
        Parse known_hosts text.

        Raises:
            TrustFileUnreadable: On the first malformed line
        """
        entries = []
        for lineno, raw in enumerate(text.splitlines(), start=1):
            entry = _parse_line(raw, path, lineno)
            if entry is not None:
                entries.append(entry)
        return cls(path=path, entries=entries)

    @classmethod
    def load(cls, path: Path) -> "KnownHostsFile":
        """
        Read and parse a known_hosts file.

        Raises:
            FileNotFoundError: If the file does not exist
            TrustFileUnreadable: If it exists but cannot be read or parsed
        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError) as exc:
            raise TrustFileUnreadable(
                f"Cannot read known_hosts file {path}: {exc}",
                path=str(path),
            ) from exc
        return cls.parse(text, path)

    def status(self, host: str, port: int, key: HostKey) -> KnownHostStatus:
        """
        Look up host:port in this file only.

        Records with a different key type are not consulted, so a host
        known only by its RSA key is NOT_FOUND for an Ed25519 key.
        """
        matched = False
        mismatched = False
        for entry in self.entries:
            if entry.marker == MARKER_CERT_AUTHORITY:
                continue
            if entry.key_type != key.key_type:
                continue
            if not entry.matches_host(host, port):
                continue
            if entry.key_equals(key):
                if entry.is_revoked:
                    return KnownHostStatus.MISMATCH
                matched = True
            elif not entry.is_revoked:
                mismatched = True

        if matched:
            return KnownHostStatus.MATCH
        if mismatched:
            return KnownHostStatus.MISMATCH
        return KnownHostStatus.NOT_FOUND


class KnownHostStore:
    """
    Ordered view over known_hosts files.

    Usage:
        store = KnownHostStore()
        status = store.status("example.com", 22, host_key)
        if status == KnownHostStatus.NOT_FOUND and user_approves:
            store.add("example.com", 22, host_key)
    """

    def __init__(
        self,
        read_paths: Iterable[Path | str] | None = None,
        write_path: Path | str | None = None,
    ) -> None:
        """
        Args:
            read_paths: Files consulted when a lookup names none;
                the user and system known_hosts files by default
            write_path: File new entries go to; the user's known_hosts
                file by default
        """
        if read_paths is None:
            self._read_paths = get_known_hosts_read_paths()
        else:
            self._read_paths = [Path(p) for p in read_paths]
        self._write_path = Path(write_path) if write_path else get_known_hosts_path()

    @property
    def read_paths(self) -> list[Path]:
        return list(self._read_paths)

    @property
    def write_path(self) -> Path:
        return self._write_path

    def status(
        self,
        host: str,
        port: int,
        key: HostKey,
        files: Iterable[Path | str] | None = None,
    ) -> KnownHostStatus:
        """
        Check the live key against each file in order.

        The first file giving MATCH or MISMATCH decides. Absent files are
        skipped; files that cannot be read or parsed are logged and
        skipped too, but if every file that exists failed, the answer is
        FAILURE rather than NOT_FOUND.

        Args:
            host: Host name as connected to
            port: Port as connected to
            key: The live host key
            files: Files to consult; the store's read paths when None

        Returns:
            KnownHostStatus for this host
        """
        paths = self._read_paths if files is None else [Path(p) for p in files]
        read_any = False
        failed_any = False

        for path in paths:
            try:
                known = KnownHostsFile.load(path)
            except FileNotFoundError:
                log.debug("known_hosts file %s does not exist", path)
                continue
            except TrustFileUnreadable as exc:
                log.warning("%s", exc)
                failed_any = True
                continue

            read_any = True
            result = known.status(host, port, key)
            log.debug("known_hosts %s: %s for %s:%d", path, result.value, host, port)
            if result is not KnownHostStatus.NOT_FOUND:
                return result

        if failed_any and not read_any:
            return KnownHostStatus.FAILURE
        return KnownHostStatus.NOT_FOUND

    def add(
        self,
        host_name: str,
        port: int,
        key: HostKey,
        file: Path | str | None = None,
        salt: str | None = None,
    ) -> bool:
        """
        Append an entry for key to a known_hosts file.

        Args:
            host_name: Host name or address. With salt, the base64
                HMAC-SHA1 hash of the name (see hash_host_name)
            port: Port; a non-22 port gives the [host]:port form when not
                hashed
            key: Key to trust
            file: Target file; the store's write path when None
            salt: Base64 salt used to produce a hashed host_name

        Returns:
            True if the entry was written, False if the file could not
            be written (the file is left as it was)
        """
        path = Path(file) if file else self._write_path

        if salt:
            host_field = f"|1|{salt}|{host_name}"
        else:
            host_field = format_host_for_known_hosts(host_name, port)
        line = f"{host_field} {key.key_type} {key.key_data}\n"

        try:
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            needs_newline = _lacks_trailing_newline(path)
            with open(path, "a", encoding="utf-8") as f:
                if needs_newline:
                    f.write("\n")
                f.write(line)
        except OSError as exc:
            log.warning("Cannot add %s to %s: %s", host_field, path, exc)
            return False

        log.info("Added %s (%s) to %s", host_field, key.key_type, path)
        return True


def _lacks_trailing_newline(path: Path) -> bool:
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return False
    if size == 0:
        return False
    with open(path, "rb") as f:
        f.seek(-1, os.SEEK_END)
        return f.read(1) != b"\n"
