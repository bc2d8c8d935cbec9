"""
CLI interface for sshtab.

Usage:
    python -m sshtab user@host                    # Connect and report
    python -m sshtab user@host command            # Execute command
    python -m sshtab -p 2222 user@host command
    python -m sshtab --key-file ~/.ssh/id_ed25519 user@host command
    python -m sshtab --keyboard-interactive user@host command
    python -m sshtab -J admin@bastion:2222 user@host command
    python -m sshtab --events user@host command   # JSONL events on stderr
    python -m sshtab --list-trusted
    python -m sshtab --forget host[:port]
    python -m sshtab --import-known-hosts [FILE]

Hosts defined in ~/.ssh/config (or the file given with -F) are resolved
through their Host block; command line options override the block.
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import getpass
import logging
import sys
from pathlib import Path
from typing import Callable, TextIO

from sshtab.auth import Authenticator
from sshtab.config import EngineSettings, SSHConfigImporter, parse_jump_spec
from sshtab.controller import ConnectionController, ReconnectPolicy
from sshtab.events import EventEmitter, StreamEventWriter
from sshtab.host_key import CallbackResolver, HostKeyChangedInfo, HostKeyDecision, NewHostKeyInfo
from sshtab.platform import expand_path, get_known_hosts_path
from sshtab.profile import AuthType, ConnectionProfile, JumpHost
from sshtab.stores import MemoryCredentialStore
from sshtab.trust import JsonFileTrustPersistence, TrustStore, import_known_hosts

logger = logging.getLogger("sshtab")

_ANSWERS: dict[str, HostKeyDecision] = {
    "yes": HostKeyDecision.ACCEPT_AND_STORE,
    "y": HostKeyDecision.ACCEPT_AND_STORE,
    "once": HostKeyDecision.ACCEPT_ONCE,
    "no": HostKeyDecision.REJECT,
    "n": HostKeyDecision.REJECT,
}


# ---------------------------------------------------------------------------
# Host key prompts
# ---------------------------------------------------------------------------

def ask_decision(
    question: str,
    prompt: Callable[[str], str] = input,
    stream: TextIO | None = None,
) -> HostKeyDecision:
    """
    Ask until the user answers yes, once or no.

    EOF or Ctrl-C count as no.
    """
    stream = stream or sys.stderr
    while True:
        try:
            response = prompt(question).strip().lower()
        except (EOFError, KeyboardInterrupt):
            print("\nHost key verification failed.", file=stream)
            return HostKeyDecision.REJECT
        decision = _ANSWERS.get(response)
        if decision is not None:
            if decision == HostKeyDecision.REJECT:
                print("Host key verification failed.", file=stream)
            return decision
        print("Please type 'yes', 'once' or 'no'.", file=stream)


def cli_new_host_callback(
    info: NewHostKeyInfo,
    prompt: Callable[[str], str] = input,
    stream: TextIO | None = None,
) -> HostKeyDecision:
    """Prompt for a host seen for the first time."""
    stream = stream or sys.stderr
    print(
        f"The authenticity of host '{info.hostname}' ({info.port}) can't be established.",
        file=stream,
    )
    print(f"{info.key_type} key fingerprint is {info.fingerprint}.", file=stream)
    decision = ask_decision(
        "Are you sure you want to continue connecting (yes/once/no)? ", prompt, stream,
    )
    if decision == HostKeyDecision.ACCEPT_AND_STORE:
        print(
            f"Warning: Permanently added '{info.hostname}' ({info.key_type}) to the list of "
            "trusted hosts.",
            file=stream,
        )
    return decision


def cli_changed_key_callback(
    info: HostKeyChangedInfo,
    prompt: Callable[[str], str] = input,
    stream: TextIO | None = None,
) -> HostKeyDecision:
    """Warn about a changed key and ask whether to replace the stored one."""
    stream = stream or sys.stderr
    print(info.warning_message(), file=stream)
    return ask_decision(
        "Replace the stored key and continue (yes/once/no)? ", prompt, stream,
    )


# ---------------------------------------------------------------------------
# Argument handling
# ---------------------------------------------------------------------------

def parse_target(target: str) -> tuple[str, str | None]:
    """
    Parse user@host target string.

    Returns:
        Tuple of (host, username) where username may be None.
    """
    if "@" in target:
        username, host = target.rsplit("@", 1)
        return host, username
    return target, None


def parse_host_port(spec: str) -> tuple[str, int]:
    """Parse host, host:port or [host]:port; the port defaults to 22."""
    if spec.startswith("["):
        host, _, rest = spec[1:].partition("]")
        return host, int(rest[1:]) if rest.startswith(":") else 22
    if spec.count(":") == 1:
        host, port = spec.split(":", 1)
        return host, int(port)
    return spec, 22


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the sshtab CLI."""
    parser = argparse.ArgumentParser(
        prog="sshtab",
        description="SSH client with trust-on-first-use host keys",
        epilog="Example: python -m sshtab user@host 'echo hello'",
    )

    parser.add_argument(
        "target",
        nargs="?",
        metavar="[user@]host",
        help="Target host (optionally with username)",
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
        help="SSH port (default: 22, or the Port from the SSH config)",
    )
    parser.add_argument(
        "-l", "--login",
        metavar="USER",
        help="Login username (alternative to user@host)",
    )
    parser.add_argument(
        "--key-file",
        metavar="FILE",
        help="Private key file for authentication",
    )
    parser.add_argument(
        "--passphrase",
        action="store_true",
        help="Prompt for the private key passphrase",
    )
    parser.add_argument(
        "--keyboard-interactive",
        action="store_true",
        help="Use keyboard-interactive authentication",
    )
    parser.add_argument(
        "-J", "--proxy-jump",
        metavar="[USER@]HOST[:PORT]",
        help="Jump host to tunnel through",
    )
    parser.add_argument(
        "-F", "--config-file",
        metavar="FILE",
        help="OpenSSH client config to resolve host aliases (default: ~/.ssh/config)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Connection timeout in seconds (default: 15)",
    )
    parser.add_argument(
        "--exec-timeout",
        type=float,
        default=30.0,
        help="Command timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--trust-store",
        metavar="FILE",
        help="Trust store file (default: $SSHTAB_TRUST_STORE or the user data directory)",
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
        help="Verbose mode (repeat for more detail)",
    )

    trust = parser.add_argument_group("trust store management")
    trust.add_argument(
        "--list-trusted",
        action="store_true",
        help="List trusted host keys and exit",
    )
    trust.add_argument(
        "--forget",
        metavar="HOST[:PORT]",
        help="Remove the trusted key for a host and exit",
    )
    trust.add_argument(
        "--import-known-hosts",
        metavar="FILE",
        nargs="?",
        const=str(get_known_hosts_path()),
        help="Import keys from an OpenSSH known_hosts file and exit",
    )

    return parser


def configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("asyncssh").setLevel(logging.DEBUG if verbose >= 3 else logging.WARNING)


def build_profile(args: argparse.Namespace) -> ConnectionProfile:
    """
    Resolve the target into a profile.

    Raises:
        ValueError: If the host, port, username or jump spec is invalid
    """
    alias, target_user = parse_target(args.target)

    importer = SSHConfigImporter.from_file(args.config_file)
    if alias in importer.aliases():
        profile = importer.profile_for(alias)
    else:
        profile = ConnectionProfile(
            id=f"cli:{alias}",
            host=alias,
            username=getpass.getuser(),
            name=alias,
        )

    changes: dict[str, object] = {}
    username = args.login or target_user
    if username:
        changes["username"] = username
    if args.port is not None:
        changes["port"] = args.port
    if args.timeout is not None:
        changes["connect_timeout"] = args.timeout
    if args.key_file:
        changes["auth_type"] = AuthType.PUBLIC_KEY
        changes["key_id"] = str(expand_path(args.key_file))
    elif args.keyboard_interactive:
        changes["auth_type"] = AuthType.KEYBOARD_INTERACTIVE
        changes["key_id"] = None
    if args.proxy_jump:
        changes["proxy"] = parse_jump_spec(args.proxy_jump)

    return dataclasses.replace(profile, **changes) if changes else profile


def load_credentials(args: argparse.Namespace, profile: ConnectionProfile) -> MemoryCredentialStore:
    """Collect the secrets the profile will ask for."""
    credentials = MemoryCredentialStore()

    if profile.auth_type == AuthType.PUBLIC_KEY and profile.key_id:
        key_path = Path(profile.key_id)
        data = key_path.read_text(encoding="utf-8")
        passphrase = None
        if args.passphrase:
            passphrase = getpass.getpass(f"Enter passphrase for key '{key_path}': ")
        credentials.set_private_key(profile.key_id, data, passphrase)

    jump_needs_password = isinstance(profile.proxy, JumpHost) and profile.proxy.key_id is None
    if profile.auth_type in (AuthType.PASSWORD, AuthType.KEYBOARD_INTERACTIVE) \
            or jump_needs_password:
        password = getpass.getpass(f"Password for {profile.username}@{profile.host}: ")
        credentials.set_password(profile.id, password)

    return credentials


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def manage_trust(args: argparse.Namespace, store: TrustStore, out: TextIO) -> int:
    """Run --list-trusted, --forget or --import-known-hosts."""
    if args.import_known_hosts is not None:
        records = import_known_hosts(expand_path(args.import_known_hosts))
        added = 0
        for record in records:
            if store.get(record.hostname, record.port) is None:
                store.remember(record)
                added += 1
        print(f"Imported {added} of {len(records)} host keys", file=out)
        return 0

    if args.forget:
        try:
            host, port = parse_host_port(args.forget)
        except ValueError:
            print(f"Error: invalid host specification {args.forget!r}", file=sys.stderr)
            return 1
        if store.forget(host, port):
            print(f"Removed {host}:{port}", file=out)
            return 0
        print(f"No trusted key for {host}:{port}", file=sys.stderr)
        return 1

    entries = store.list_all()
    for entry in entries:
        print(
            f"{entry.hostname}:{entry.port}  {entry.key_type}  {entry.fingerprint}  "
            f"{entry.trust_level.value}",
            file=out,
        )
    if not entries:
        print("No trusted hosts", file=out)
    return 0


async def run_command(args: argparse.Namespace, settings: EngineSettings) -> int:
    """
    Connect, run the command if one was given, and disconnect.

    Returns:
        0 on success, 1 on any failure
    """
    try:
        profile = build_profile(args)
        credentials = load_credentials(args, profile)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    trust_path = Path(args.trust_store) if args.trust_store else settings.trust_store_path
    store = TrustStore(JsonFileTrustPersistence(expand_path(trust_path)))
    emitter = EventEmitter(
        jsonl_path=settings.event_log_path,
        sinks=[StreamEventWriter(sys.stderr)] if args.events else (),
    )

    controller = ConnectionController(
        profile,
        authenticator=Authenticator(credentials),
        trust_store=store,
        resolver=CallbackResolver(
            on_new_host=cli_new_host_callback,
            on_changed_key=cli_changed_key_callback,
        ),
        emitter=emitter,
        reconnect_policy=ReconnectPolicy(max_attempts=0),
        decision_timeout=settings.decision_timeout_sec,
        relay_command=settings.relay_command,
    )

    exit_code = 1
    logger.info("Connecting to %s (%s)", profile.target, profile.auth_type.value)
    try:
        if not await controller.connect():
            error = controller.last_error
            if error is not None:
                print(error.diagnostics_text(), file=sys.stderr, end="")
            return 1

        if args.command:
            output = await controller.execute(args.command, timeout=args.exec_timeout)
            sys.stdout.write(output)
            sys.stdout.flush()
        else:
            stats = controller.stats()
            print(f"Connected to {profile.target}", file=sys.stderr)
            if stats["server_version"]:
                print(f"Server: {stats['server_version']}", file=sys.stderr)
        exit_code = 0
    finally:
        await controller.disconnect()
        emitter.close()

    return exit_code


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = EngineSettings.from_env()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.list_trusted or args.forget or args.import_known_hosts is not None:
        trust_path = Path(args.trust_store) if args.trust_store else settings.trust_store_path
        store = TrustStore(JsonFileTrustPersistence(expand_path(trust_path)))
        return manage_trust(args, store, sys.stdout)

    if not args.target:
        parser.error("a target host is required")

    try:
        return asyncio.run(run_command(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
