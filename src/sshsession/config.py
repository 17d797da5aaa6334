"""
Session configuration.

Provides:
- SessionConfig: tunables for one Session (timeout, fingerprint digest,
  client banner, trust files, agent socket)
- SSHConfig: reader for ~/.ssh/config and /etc/ssh/ssh_config, limited
  to the options a session honours
- SSHHostConfig: resolved options for one host

SSHConfig matches OpenSSH behaviour:
- User config is read before system config
- First match wins for single-value options
- Host patterns support *, ? and ! negation
- Tokens %h, %p, %r, %u, %n and %% are expanded in path options
"""
from __future__ import annotations

import fnmatch
import getpass
from dataclasses import dataclass, field
from pathlib import Path

from sshsession.host_key import FingerprintHash
from sshsession.platform import expand_path, get_config_path, get_system_config_path

DEFAULT_TIMEOUT = 10.0


@dataclass
class SSHHostConfig:
    """
    Resolved ssh_config options for a specific host.
    """
    hostname: str | None = None
    port: int | None = None
    user: str | None = None
    connect_timeout: int | None = None
    fingerprint_hash: str | None = None
    user_known_hosts_files: list[Path] = field(default_factory=list)
    global_known_hosts_files: list[Path] = field(default_factory=list)
    identity_agent: str | None = None
    identity_file: list[Path] = field(default_factory=list)

    def get_hostname(self, original_host: str) -> str:
        """Get the real hostname to connect to."""
        return self.hostname if self.hostname else original_host

    def get_port(self, default: int = 22) -> int:
        return self.port if self.port is not None else default

    def get_user(self, default: str | None = None) -> str:
        """Get the username, falling back to the local login name."""
        if self.user:
            return self.user
        if default:
            return default
        return getpass.getuser()

    @property
    def known_hosts_files(self) -> list[Path] | None:
        """User files then global files, or None when neither is set."""
        files = self.user_known_hosts_files + self.global_known_hosts_files
        return files or None


@dataclass
class SessionConfig:
    """
    Tunables for a Session.

    Attributes:
        timeout: Seconds to wait for connect and authentication;
            None waits indefinitely
        fingerprint_hash: Digest used by Session.fingerprint() by default
        banner: Client identification sent to the server
        known_hosts_files: Files consulted by known_host_status() when
            the caller names none; platform defaults when None. New
            entries are written to the first one
        agent_path: Agent socket; SSH_AUTH_SOCK when None
    """
    timeout: float | None = DEFAULT_TIMEOUT
    fingerprint_hash: FingerprintHash = FingerprintHash.MD5
    banner: str | None = None
    known_hosts_files: list[Path] | None = None
    agent_path: str | None = None

    def __post_init__(self) -> None:
        assert self.timeout is None or self.timeout > 0, (
            f"timeout must be positive or None, got {self.timeout}"
        )
        self.fingerprint_hash = FingerprintHash(self.fingerprint_hash)
        if self.banner is not None:
            assert self.banner.isascii() and self.banner.isprintable(), (
                f"banner must be printable ASCII on one line, got {self.banner!r}"
            )
        if self.known_hosts_files is not None:
            self.known_hosts_files = [expand_path(p) for p in self.known_hosts_files]

    @classmethod
    def from_host_config(
        cls,
        host_config: SSHHostConfig,
        **overrides: object,
    ) -> "SessionConfig":
        """
        Build a SessionConfig from resolved ssh_config options.

        Keyword overrides that are not None replace the config values.
        """
        values: dict[str, object] = {}
        if host_config.connect_timeout:
            values["timeout"] = float(host_config.connect_timeout)
        if host_config.fingerprint_hash:
            values["fingerprint_hash"] = FingerprintHash(host_config.fingerprint_hash)
        if host_config.known_hosts_files:
            values["known_hosts_files"] = host_config.known_hosts_files
        if host_config.identity_agent:
            values["agent_path"] = host_config.identity_agent
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]


@dataclass
class _HostBlock:
    """A Host block of a config file."""
    patterns: list[str]
    options: dict[str, str | list[str]]
    is_match: bool = False


class SSHConfig:
    """
    Parser for SSH config files.

    Usage:
        config = SSHConfig()  # Auto-loads user and system configs
        host_config = config.lookup("myserver.example.com")

        # Or load from specific files
        config = SSHConfig(config_files=["/path/to/config"])
    """

    # Options that accumulate (multiple values allowed)
    MULTI_VALUE_OPTIONS = frozenset({
        "identityfile",
    })

    OPTION_ALIASES: dict[str, str] = {
        "hostname": "hostname",
        "port": "port",
        "user": "user",
        "connecttimeout": "connecttimeout",
        "fingerprinthash": "fingerprinthash",
        "userknownhostsfile": "userknownhostsfile",
        "globalknownhostsfile": "globalknownhostsfile",
        "identityagent": "identityagent",
        "identityfile": "identityfile",
    }

    def __init__(
        self,
        config_files: list[Path | str] | None = None,
        load_system_config: bool = True,
    ) -> None:
        """
        Args:
            config_files: Specific config files to load (overrides default)
            load_system_config: Whether to also load /etc/ssh/ssh_config
        """
        self._host_blocks: list[_HostBlock] = []
        self._global_options: dict[str, str | list[str]] = {}

        if config_files is not None:
            for config_file in config_files:
                self._load_file(Path(config_file))
        else:
            self._load_file(get_config_path())
            if load_system_config:
                self._load_file(get_system_config_path())

    def _load_file(self, config_path: Path) -> None:
        if not config_path.exists():
            return

        try:
            with open(config_path, "r", encoding="utf-8", errors="replace") as f:
                self._parse(f.read())
        except OSError:
            pass  # Unreadable configs are ignored, as ssh does

    def _parse(self, content: str) -> None:
        """Parse SSH config content."""
        current_block: _HostBlock | None = None

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            comment_idx = line.find(" #")
            if comment_idx >= 0:
                line = line[:comment_idx].rstrip()

            # Both "Option Value" and "Option=Value" are accepted
            if "=" in line and " " not in line.split("=", 1)[0]:
                option, value = line.split("=", 1)
            else:
                parts = line.split(None, 1)
                if len(parts) < 2:
                    continue
                option, value = parts

            option = option.strip().lower()
            value = value.strip()

            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]

            if option == "host":
                if current_block:
                    self._host_blocks.append(current_block)
                current_block = _HostBlock(patterns=value.split(), options={})
            elif option == "match":
                # Match blocks are not evaluated
                if current_block:
                    self._host_blocks.append(current_block)
                current_block = _HostBlock(patterns=[], options={}, is_match=True)
            else:
                canonical = self.OPTION_ALIASES.get(option)
                if canonical is None:
                    continue
                target = current_block.options if current_block else self._global_options
                self._set_option(target, canonical, value)

        if current_block:
            self._host_blocks.append(current_block)

    def _set_option(
        self,
        options: dict[str, str | list[str]],
        name: str,
        value: str,
    ) -> None:
        if name in self.MULTI_VALUE_OPTIONS:
            option_list = options.setdefault(name, [])
            assert isinstance(option_list, list)
            option_list.append(value)
        elif name not in options:
            options[name] = value

    @staticmethod
    def _matches_host_block(host: str, patterns: list[str]) -> bool:
        """
        A host must match at least one positive pattern and no negated
        pattern.
        """
        matched_positive = False
        for pattern in patterns:
            if pattern.startswith("!"):
                if fnmatch.fnmatch(host.lower(), pattern[1:].lower()):
                    return False
            elif fnmatch.fnmatch(host.lower(), pattern.lower()):
                matched_positive = True
        return matched_positive

    @staticmethod
    def _expand_tokens(
        value: str,
        host: str,
        user: str | None = None,
        port: int = 22,
    ) -> str:
        local_user = getpass.getuser()
        if user is None:
            user = local_user

        result = value.replace("%%", "\x00")
        result = result.replace("%h", host)
        result = result.replace("%p", str(port))
        result = result.replace("%n", host)
        result = result.replace("%r", user)
        result = result.replace("%u", local_user)
        return result.replace("\x00", "%")

    def lookup(self, host: str) -> SSHHostConfig:
        """
        Look up configuration for a specific host.

        Args:
            host: The hostname to look up (as specified by user)

        Returns:
            SSHHostConfig with all applicable options
        """
        merged: dict[str, str | list[str]] = {}

        for key, value in self._global_options.items():
            values = value if isinstance(value, list) else [value]
            for v in values:
                self._set_option(merged, key, v)

        for block in self._host_blocks:
            if block.is_match or not self._matches_host_block(host, block.patterns):
                continue
            for key, value in block.options.items():
                values = value if isinstance(value, list) else [value]
                for v in values:
                    self._set_option(merged, key, v)

        return self._build_host_config(merged, host)

    def _build_host_config(
        self,
        options: dict[str, str | list[str]],
        host: str,
    ) -> SSHHostConfig:
        config = SSHHostConfig()

        if "user" in options:
            config.user = str(options["user"])

        if "port" in options:
            try:
                config.port = int(options["port"])
            except ValueError:
                pass

        port_for_tokens = config.port if config.port is not None else 22

        def expand(value: str) -> str:
            return self._expand_tokens(value, host, config.user, port=port_for_tokens)

        if "hostname" in options:
            config.hostname = expand(str(options["hostname"]))

        if "connecttimeout" in options:
            try:
                config.connect_timeout = int(options["connecttimeout"])
            except ValueError:
                pass

        if "fingerprinthash" in options:
            value = str(options["fingerprinthash"]).lower()
            if value in {h.value for h in FingerprintHash}:
                config.fingerprint_hash = value

        # Known hosts options take a space separated list; "none" disables
        for name, target in (
            ("userknownhostsfile", config.user_known_hosts_files),
            ("globalknownhostsfile", config.global_known_hosts_files),
        ):
            if name in options:
                for path_str in str(options[name]).split():
                    if path_str.lower() != "none":
                        target.append(expand_path(expand(path_str)))

        if "identityagent" in options:
            agent = str(options["identityagent"])
            if agent.lower() != "none" and agent != "SSH_AUTH_SOCK":
                config.identity_agent = str(expand_path(expand(agent)))

        for path_str in options.get("identityfile", []):
            config.identity_file.append(expand_path(expand(path_str)))

        return config


def get_ssh_config() -> SSHConfig:
    """Get the default SSH config (user + system configs)."""
    return SSHConfig()
