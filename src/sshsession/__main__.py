"""
CLI interface for sshsession.

Usage:
    python -m sshsession user@host                     # Connect, verify, authenticate
    python -m sshsession user@host command             # ... and run a command
    python -m sshsession user@host:2222 command
    python -m sshsession -i keyfile user@host command
    python -m sshsession --password user@host command
    python -m sshsession --keyboard-interactive user@host command
    python -m sshsession --agent user@host command
    python -m sshsession --add-host --known-hosts ./known_hosts user@host
    python -m sshsession --events user@host command
    python -m sshsession --help
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from sshsession.auth import (
    AgentAuth,
    AuthenticationStrategy,
    KeyboardInteractiveAuth,
    PasswordAuth,
    PublicKeyAuth,
)
from sshsession.config import SessionConfig, SSHConfig
from sshsession.errors import AuthenticationRejected, SSHError
from sshsession.events import EventCollector
from sshsession.host_key import FingerprintHash, KnownHostStatus
from sshsession.platform import get_agent_available
from sshsession.session import Session
from sshsession.validation import parse_host_address

log = logging.getLogger("sshsession.cli")


def parse_target(target: str) -> tuple[str, str | None]:
    """
    Parse a [user@]host target string.

    Returns:
        Tuple of (host, username) where username may be None.
    """
    if "@" in target:
        username, host = target.rsplit("@", 1)
        return host, username or None
    return target, None


def cli_kbdint_responder(prompt: str) -> str:
    """Answer a keyboard-interactive prompt from the terminal without echo."""
    return getpass.getpass(prompt)


def confirm_unknown_host(host: str, port: int, key_type: str, fingerprint: str) -> bool:
    """
    Ask the user whether to trust an unknown host key.

    Returns False without asking when stdin is not a terminal.
    """
    print(
        f"The authenticity of host '{host}' ({port}) can't be established.",
        file=sys.stderr,
    )
    print(f"{key_type} key fingerprint is {fingerprint}.", file=sys.stderr)

    if not sys.stdin.isatty():
        return False

    while True:
        try:
            response = input("Are you sure you want to continue connecting (yes/no)? ")
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            return False
        response = response.strip().lower()
        if response in ("yes", "y"):
            return True
        if response in ("no", "n"):
            return False
        print("Please type 'yes' or 'no'.", file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the sshsession CLI."""
    parser = argparse.ArgumentParser(
        prog="sshsession",
        description="SSH client session: connect, verify the host, authenticate",
        epilog="Example: python -m sshsession user@host 'echo hello'",
    )

    parser.add_argument(
        "target",
        metavar="[user@]host[:port]",
        help="Target host, optionally with username and port",
    )

    parser.add_argument(
        "command",
        nargs="?",
        help="Command to execute on remote host",
    )

    parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="SSH port (default: from target, ssh_config, or 22)",
    )

    parser.add_argument(
        "-l", "--login",
        metavar="USER",
        help="Login username (alternative to user@host)",
    )

    parser.add_argument(
        "-i", "--identity",
        metavar="FILE",
        help="Private key file for authentication",
    )

    parser.add_argument(
        "--password",
        action="store_true",
        help="Prompt for password authentication",
    )

    parser.add_argument(
        "--keyboard-interactive",
        action="store_true",
        help="Use keyboard-interactive authentication (for 2FA/MFA)",
    )

    parser.add_argument(
        "--agent",
        action="store_true",
        help="Use the identities held by the SSH agent",
    )

    parser.add_argument(
        "--fingerprint-hash",
        choices=[h.value for h in FingerprintHash],
        default=None,
        help="Digest used to display the host key fingerprint (default: md5)",
    )

    parser.add_argument(
        "--known-hosts",
        metavar="FILE",
        action="append",
        default=None,
        help=(
            "known_hosts file to check (repeatable; default: user and system files). "
            "New host keys are recorded in the first one"
        ),
    )

    parser.add_argument(
        "--add-host",
        action="store_true",
        help="Trust an unknown host key without asking and record it",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Connect and authentication timeout in seconds (default: 10)",
    )

    parser.add_argument(
        "--banner",
        metavar="VERSION",
        help="Client identification string sent to the server",
    )

    parser.add_argument(
        "-F", "--config",
        metavar="FILE",
        dest="config_file",
        help="Use this ssh_config file instead of the defaults",
    )

    parser.add_argument(
        "--events",
        action="store_true",
        help="Print JSONL events to stderr",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (-v info, -vv debug, -vvv asyncssh debug)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors",
    )

    return parser


def configure_logging(verbose: int, quiet: bool) -> None:
    """Set up stderr logging from the -v/-q flags."""
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    if quiet:
        logging.basicConfig(level=logging.ERROR, format=log_format, stream=sys.stderr)
        logging.getLogger("asyncssh").setLevel(logging.ERROR)
    elif verbose > 0:
        level = logging.DEBUG if verbose >= 2 else logging.INFO
        logging.basicConfig(level=level, format=log_format, stream=sys.stderr)
        if verbose >= 3:
            logging.getLogger("asyncssh").setLevel(logging.DEBUG)
        else:
            logging.getLogger("asyncssh").setLevel(logging.WARNING)


def build_strategies(
    args: argparse.Namespace,
    identity_files: list[Path],
    username: str,
    host: str,
) -> list[AuthenticationStrategy]:
    """
    Authentication strategies to try, in order.

    Explicit flags are honoured in the order key, agent,
    keyboard-interactive, password. Without any flag: agent if one is
    running, then configured identity files, then a password prompt.
    """
    strategies: list[AuthenticationStrategy] = []
    explicit = args.identity or args.agent or args.keyboard_interactive or args.password

    if args.identity:
        strategies.append(PublicKeyAuth(private_key=args.identity))
    if args.agent:
        strategies.append(AgentAuth())
    if args.keyboard_interactive:
        strategies.append(KeyboardInteractiveAuth(cli_kbdint_responder))
    if args.password:
        strategies.append(PasswordAuth(getpass.getpass(f"Password for {username}@{host}: ")))

    if explicit:
        return strategies

    if get_agent_available():
        strategies.append(AgentAuth())
    for key_path in identity_files:
        if key_path.exists():
            strategies.append(PublicKeyAuth(private_key=key_path))
    strategies.append(PasswordAuth(getpass.getpass(f"Password for {username}@{host}: ")))
    return strategies


async def verify_host(session: Session, add_host: bool) -> bool:
    """Check the host key against known_hosts; trust it on request."""
    fingerprint = await session.fingerprint()
    status = await session.known_host_status()
    log.info("Host key %s: %s", fingerprint, status.value)

    if status is KnownHostStatus.MATCH:
        return True

    if status is KnownHostStatus.MISMATCH:
        print(
            "WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!\n"
            f"The {session.fingerprint_hash.value.upper()} fingerprint for "
            f"{session.host} is {fingerprint}.\n"
            "Host key verification failed.",
            file=sys.stderr,
        )
        return False

    if status is KnownHostStatus.FAILURE:
        print("Cannot read known_hosts files; host key verification failed.", file=sys.stderr)
        return False

    key_type = session.raw_transport.host_key().key_type
    if not add_host and not confirm_unknown_host(session.host, session.port, key_type, fingerprint):
        print("Host key verification failed.", file=sys.stderr)
        return False

    if await session.add_known_host_name(session.host, session.port):
        print(
            f"Warning: Permanently added '{session.host}' ({key_type}) to the list of known hosts.",
            file=sys.stderr,
        )
    else:
        print("Warning: could not record the host key.", file=sys.stderr)
    return True


async def authenticate(session: Session, strategies: list[AuthenticationStrategy]) -> bool:
    """Try each strategy until one is accepted."""
    if session.is_authorized:
        return True
    for strategy in strategies:
        try:
            if await session.authenticate(strategy):
                return True
        except AuthenticationRejected as e:
            log.info("%s: %s", strategy.method, e)
        except SSHError as e:
            if not session.is_connected:
                raise
            print(f"Warning: {e}", file=sys.stderr)
    return False


async def run_command(args: argparse.Namespace) -> int:
    """
    Connect, verify, authenticate and optionally run a command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code from remote command (or 1 on error)
    """
    configure_logging(args.verbose, args.quiet)

    host_part, target_user = parse_target(args.target)
    try:
        host_alias, target_port = parse_host_address(host_part)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.config_file:
        ssh_config = SSHConfig(config_files=[args.config_file], load_system_config=False)
    else:
        ssh_config = SSHConfig()
    host_config = ssh_config.lookup(host_alias)

    host = host_config.get_hostname(host_alias)
    port = args.port or target_port or host_config.get_port()
    username = args.login or target_user or host_config.get_user()

    config = SessionConfig.from_host_config(
        host_config,
        timeout=args.timeout,
        fingerprint_hash=args.fingerprint_hash,
        banner=args.banner,
        known_hosts_files=args.known_hosts,
    )
    event_collector = EventCollector() if args.events else None

    try:
        session = Session(
            host,
            port,
            username,
            config=config,
            event_collector=event_collector,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    exit_code = 1
    try:
        await session.connect()
        if session.remote_banner:
            log.info("Server identifies as %s", session.remote_banner)

        if await verify_host(session, args.add_host):
            strategies = build_strategies(
                args, host_config.identity_file, session.username, session.host,
            )
            if not await authenticate(session, strategies):
                print(
                    f"Permission denied for {session.username}@{session.host}.",
                    file=sys.stderr,
                )
            elif args.command:
                result = await session.channel.execute(args.command)
                if result.stdout:
                    sys.stdout.write(result.stdout)
                if result.stderr:
                    sys.stderr.write(result.stderr)
                exit_code = result.exit_code
            else:
                print(
                    f"Authenticated to {session.username}@{session.host}:{session.port}",
                    file=sys.stderr,
                )
                exit_code = 0

    except SSHError as e:
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 1

    finally:
        await session.disconnect()

        if event_collector is not None:
            for event in event_collector.events:
                print(event.to_json(), file=sys.stderr)

    return exit_code


def main() -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args()

    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
