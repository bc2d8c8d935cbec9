"""
Engine settings and OpenSSH config import.

Provides:
- EngineSettings: tunables shared by every controller (decision timeout,
  reconnect policy, trust store and event log locations, relay command)
- SSHConfigImporter: turn the Host blocks of an OpenSSH client config into
  ConnectionProfiles

The importer follows OpenSSH's reading rules: "Option Value" and
"Option=Value" are both accepted, the first value seen for an option wins,
and Host blocks are matched with * and ? wildcards (with ! negation). Only
concrete aliases become profiles; wildcard blocks such as "Host *" supply
defaults.
"""
from __future__ import annotations

import fnmatch
import getpass
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from sshtab.platform import expand_path, get_config_path, get_trust_store_path
from sshtab.profile import AuthType, ConnectionProfile, JumpHost

logger = logging.getLogger(__name__)

ENV_PREFIX = "SSHTAB_"


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None


@dataclass
class EngineSettings:
    """
    Tunables shared by the controllers a SessionManager builds.

    Usage:
        settings = EngineSettings.from_env()
        factory = make_controller_factory(authenticator, store, settings=settings)
    """
    decision_timeout_sec: float = 60.0
    max_reconnect_attempts: int = 3
    reconnect_backoff_sec: float = 5.0
    trust_store_path: Path = field(default_factory=get_trust_store_path)
    event_log_path: Path | None = None
    relay_command: str = "nc"

    def __post_init__(self) -> None:
        assert self.decision_timeout_sec > 0, \
            f"decision_timeout_sec must be positive, got {self.decision_timeout_sec}"
        assert self.max_reconnect_attempts >= 0, \
            f"max_reconnect_attempts must be >= 0, got {self.max_reconnect_attempts}"
        assert self.reconnect_backoff_sec >= 0, \
            f"reconnect_backoff_sec must be >= 0, got {self.reconnect_backoff_sec}"
        assert self.relay_command, "relay_command must be non-empty"
        self.trust_store_path = expand_path(self.trust_store_path)
        if self.event_log_path is not None:
            self.event_log_path = expand_path(self.event_log_path)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """
        Build settings from SSHTAB_* environment variables.

        Recognised: SSHTAB_DECISION_TIMEOUT, SSHTAB_MAX_RECONNECT_ATTEMPTS,
        SSHTAB_RECONNECT_BACKOFF, SSHTAB_TRUST_STORE, SSHTAB_EVENT_LOG,
        SSHTAB_RELAY_COMMAND. Unset variables keep their defaults.

        Raises:
            ValueError: If a numeric variable does not parse
        """
        trust_store = os.environ.get(ENV_PREFIX + "TRUST_STORE")
        event_log = os.environ.get(ENV_PREFIX + "EVENT_LOG")
        return cls(
            decision_timeout_sec=_env_float("DECISION_TIMEOUT", 60.0),
            max_reconnect_attempts=_env_int("MAX_RECONNECT_ATTEMPTS", 3),
            reconnect_backoff_sec=_env_float("RECONNECT_BACKOFF", 5.0),
            trust_store_path=Path(trust_store) if trust_store else get_trust_store_path(),
            event_log_path=Path(event_log) if event_log else None,
            relay_command=os.environ.get(ENV_PREFIX + "RELAY_COMMAND") or "nc",
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "decision_timeout_sec": self.decision_timeout_sec,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "reconnect_backoff_sec": self.reconnect_backoff_sec,
            "trust_store_path": str(self.trust_store_path),
            "event_log_path": str(self.event_log_path) if self.event_log_path else None,
            "relay_command": self.relay_command,
        }


# ---------------------------------------------------------------------------
# OpenSSH config import
# ---------------------------------------------------------------------------

@dataclass
class _HostBlock:
    patterns: list[str]
    options: dict[str, str | list[str]]


def _is_yes(value: str | list[str] | None) -> bool:
    return isinstance(value, str) and value.lower() in ("yes", "true", "1")


def _is_no(value: str | list[str] | None) -> bool:
    return isinstance(value, str) and value.lower() in ("no", "false", "0")


def parse_jump_spec(spec: str) -> JumpHost:
    """
    Parse the first hop of a ProxyJump value: [user@]host[:port].

    Bracketed IPv6 literals ([::1]:2222) are accepted.

    Raises:
        ValueError: If the host, port or user is invalid
    """
    first_hop = spec.split(",", 1)[0].strip()
    if first_hop.startswith("ssh://"):
        first_hop = first_hop[len("ssh://"):]

    username: str | None = None
    if "@" in first_hop:
        username, first_hop = first_hop.rsplit("@", 1)

    port = 22
    if first_hop.startswith("["):
        host, _, rest = first_hop[1:].partition("]")
        if rest.startswith(":"):
            port = int(rest[1:])
    elif first_hop.count(":") == 1:
        host, port_text = first_hop.split(":", 1)
        port = int(port_text)
    else:
        host = first_hop

    return JumpHost(host=host, port=port, username=username or None)


class SSHConfigImporter:
    """
    Reads an OpenSSH client config and yields one profile per concrete alias.

    Usage:
        importer = SSHConfigImporter.from_file()   # ~/.ssh/config
        for profile in importer.profiles():
            ...

        importer = SSHConfigImporter(text)
    """

    MULTI_VALUE_OPTIONS = frozenset({"identityfile"})

    SUPPORTED_OPTIONS = frozenset({
        "hostname",
        "user",
        "port",
        "identityfile",
        "proxyjump",
        "compression",
        "serveraliveinterval",
        "connecttimeout",
        "passwordauthentication",
        "pubkeyauthentication",
    })

    def __init__(self, content: str = "", default_user: str | None = None) -> None:
        self._blocks: list[_HostBlock] = []
        self._global_options: dict[str, str | list[str]] = {}
        self._default_user = default_user
        if content:
            self._parse(content)

    @classmethod
    def from_file(
        cls,
        path: Path | str | None = None,
        default_user: str | None = None,
    ) -> "SSHConfigImporter":
        """Load a config file; a missing or unreadable file yields no profiles."""
        config_path = expand_path(path) if path is not None else get_config_path()
        try:
            content = config_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug("Cannot read SSH config %s: %s", config_path, e)
            content = ""
        return cls(content, default_user=default_user)

    # -----------------------------------------------------------------------
    # Parsing
    # -----------------------------------------------------------------------

    def _parse(self, content: str) -> None:
        current: _HostBlock | None = None

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            comment_idx = line.find(" #")
            if comment_idx >= 0:
                line = line[:comment_idx].rstrip()

            if "=" in line and " " not in line.split("=", 1)[0]:
                option, value = line.split("=", 1)
            else:
                parts = line.split(None, 1)
                if len(parts) < 2:
                    continue
                option, value = parts
                if value.startswith("="):
                    value = value[1:]

            option = option.strip().lower()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]

            if option == "host":
                if current is not None:
                    self._blocks.append(current)
                current = _HostBlock(patterns=value.split(), options={})
            elif option == "match":
                # Match criteria are not evaluated; the block applies to nothing
                if current is not None:
                    self._blocks.append(current)
                current = _HostBlock(patterns=[], options={})
            elif option in self.SUPPORTED_OPTIONS:
                target = current.options if current is not None else self._global_options
                self._set_option(target, option, value)

        if current is not None:
            self._blocks.append(current)

    def _set_option(
        self,
        options: dict[str, str | list[str]],
        name: str,
        value: str,
    ) -> None:
        if name in self.MULTI_VALUE_OPTIONS:
            values = options.setdefault(name, [])
            assert isinstance(values, list)
            values.append(value)
        elif name not in options:
            options[name] = value

    @staticmethod
    def _matches(alias: str, patterns: list[str]) -> bool:
        matched = False
        for pattern in patterns:
            if pattern.startswith("!"):
                if fnmatch.fnmatch(alias.lower(), pattern[1:].lower()):
                    return False
            elif fnmatch.fnmatch(alias.lower(), pattern.lower()):
                matched = True
        return matched

    # -----------------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------------

    def aliases(self) -> list[str]:
        """Concrete host aliases in file order (wildcards and negations skipped)."""
        seen: list[str] = []
        for block in self._blocks:
            for pattern in block.patterns:
                if any(c in pattern for c in "*?") or pattern.startswith("!"):
                    continue
                if pattern not in seen:
                    seen.append(pattern)
        return seen

    def options_for(self, alias: str) -> dict[str, str | list[str]]:
        """Merged options for an alias: globals first, then matching blocks."""
        merged: dict[str, str | list[str]] = {}
        for key, value in self._global_options.items():
            for v in (value if isinstance(value, list) else [value]):
                self._set_option(merged, key, v)
        for block in self._blocks:
            if self._matches(alias, block.patterns):
                for key, value in block.options.items():
                    for v in (value if isinstance(value, list) else [value]):
                        self._set_option(merged, key, v)
        return merged

    def profile_for(self, alias: str) -> ConnectionProfile:
        """
        Build the profile for one alias.

        Raises:
            ValueError: If the resolved host, port, user or timeout is invalid
        """
        options = self.options_for(alias)

        username = str(options.get("user") or self._default_user or getpass.getuser())
        host = str(options.get("hostname") or alias).replace("%h", alias)

        port = 22
        if "port" in options:
            try:
                port = int(str(options["port"]))
            except ValueError:
                raise ValueError(f"Invalid Port for {alias}: {options['port']!r}") from None

        connect_timeout = 15.0
        if "connecttimeout" in options:
            try:
                connect_timeout = float(str(options["connecttimeout"]))
            except ValueError:
                raise ValueError(
                    f"Invalid ConnectTimeout for {alias}: {options['connecttimeout']!r}"
                ) from None

        keep_alive = True
        if "serveraliveinterval" in options:
            keep_alive = str(options["serveraliveinterval"]).strip() not in ("", "0")

        identity_files = options.get("identityfile") or []
        assert isinstance(identity_files, list)
        key_id: str | None = None
        if identity_files:
            key_id = str(expand_path(identity_files[0].replace("%h", host)))

        if key_id is not None and not _is_no(options.get("pubkeyauthentication")):
            auth_type = AuthType.PUBLIC_KEY
        elif not _is_no(options.get("passwordauthentication")):
            auth_type = AuthType.PASSWORD
        else:
            auth_type = AuthType.KEYBOARD_INTERACTIVE

        proxy = None
        jump = options.get("proxyjump")
        if isinstance(jump, str) and jump.lower() != "none":
            proxy = parse_jump_spec(jump)

        return ConnectionProfile(
            id=f"ssh-config:{alias}",
            name=alias,
            host=host,
            port=port,
            username=username,
            auth_type=auth_type,
            key_id=key_id if auth_type == AuthType.PUBLIC_KEY else None,
            compression=_is_yes(options.get("compression")),
            keep_alive=keep_alive,
            connect_timeout=connect_timeout,
            proxy=proxy,
        )

    def profiles(self) -> Iterator[ConnectionProfile]:
        """Yield profiles for every alias; invalid entries are logged and skipped."""
        for alias in self.aliases():
            try:
                yield self.profile_for(alias)
            except ValueError as e:
                logger.warning("Skipping SSH config host %s: %s", alias, e)
