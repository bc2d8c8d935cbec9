"""
Connection profile data model.

Provides:
- AuthType: credential strategies a profile may ask for
- ConnectionProfile: immutable description of one SSH target
- Identity: reusable username/credential pairing
- HttpProxy, Socks4Proxy, Socks5Proxy, JumpHost: proxy variants, each
  carrying only its own fields
- KnockSpec: pre-connect port-knock description
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from sshtab.validation import (
    validate_hostname,
    validate_port,
    validate_timeout,
    validate_username,
)


class AuthType(str, Enum):
    """Authentication strategy requested by a profile."""
    PASSWORD = "PASSWORD"
    PUBLIC_KEY = "PUBLIC_KEY"
    KEYBOARD_INTERACTIVE = "KEYBOARD_INTERACTIVE"
    GSSAPI = "GSSAPI"

    @classmethod
    def parse(cls, text: str | None) -> "AuthType":
        """
        Parse an auth type from an enum name or an OpenSSH method name.

        Unrecognised text falls back to PASSWORD.
        """
        if not text:
            return cls.PASSWORD
        normalised = text.strip().upper().replace("-", "_")
        if normalised in cls.__members__:
            return cls[normalised]
        return _OPENSSH_AUTH_NAMES.get(text.strip().lower(), cls.PASSWORD)


_OPENSSH_AUTH_NAMES: dict[str, AuthType] = {
    "password": AuthType.PASSWORD,
    "publickey": AuthType.PUBLIC_KEY,
    "public_key": AuthType.PUBLIC_KEY,
    "keyboard-interactive": AuthType.KEYBOARD_INTERACTIVE,
    "gssapi-with-mic": AuthType.GSSAPI,
    "gssapi": AuthType.GSSAPI,
}


class ProxyKind(str, Enum):
    """Tag for the proxy variant in use."""
    HTTP = "HTTP"
    SOCKS4 = "SOCKS4"
    SOCKS5 = "SOCKS5"
    SSH_JUMP = "SSH_JUMP"


# ---------------------------------------------------------------------------
# Proxy variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _RelayProxy:
    host: str
    port: int
    username: str | None = None

    kind = ProxyKind.HTTP

    def __post_init__(self) -> None:
        object.__setattr__(self, "host", validate_hostname(self.host))
        validate_port(self.port)
        if self.username is not None:
            validate_username(self.username)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "host": self.host,
            "port": self.port,
        }
        if self.username:
            result["username"] = self.username
        return result


@dataclass(frozen=True)
class HttpProxy(_RelayProxy):
    """HTTP CONNECT proxy."""
    port: int = 8080
    kind = ProxyKind.HTTP


@dataclass(frozen=True)
class Socks4Proxy(_RelayProxy):
    """SOCKS4 proxy."""
    port: int = 1080
    kind = ProxyKind.SOCKS4


@dataclass(frozen=True)
class Socks5Proxy(_RelayProxy):
    """SOCKS5 proxy."""
    port: int = 1080
    kind = ProxyKind.SOCKS5


@dataclass(frozen=True)
class JumpHost:
    """
    Intermediate SSH server the target is reached through.

    Authenticates with key_id when set, otherwise with the primary
    profile's stored password.
    """
    host: str
    port: int = 22
    username: str | None = None
    auth_type: AuthType = AuthType.PASSWORD
    key_id: str | None = None

    kind = ProxyKind.SSH_JUMP

    def __post_init__(self) -> None:
        object.__setattr__(self, "host", validate_hostname(self.host))
        validate_port(self.port)
        if self.username is not None:
            validate_username(self.username)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "host": self.host,
            "port": self.port,
            "auth_type": self.auth_type.value,
        }
        if self.username:
            result["username"] = self.username
        if self.key_id:
            result["key_id"] = self.key_id
        return result


ProxyConfig = Union[HttpProxy, Socks4Proxy, Socks5Proxy, JumpHost]


@dataclass(frozen=True)
class KnockSpec:
    """Port-knock sequence run by the pre-connect hook."""
    sequence: tuple[int, ...]
    delay_ms: int = 100

    def __post_init__(self) -> None:
        object.__setattr__(self, "sequence", tuple(self.sequence))
        assert self.sequence, "Knock sequence must contain at least one port"
        for port in self.sequence:
            validate_port(port)
        assert self.delay_ms >= 0, f"delay_ms must be >= 0, got {self.delay_ms}"


# ---------------------------------------------------------------------------
# Profiles and identities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Identity:
    """A username and credential pairing shared between profiles."""
    id: str
    name: str
    username: str
    auth_type: AuthType = AuthType.PASSWORD
    key_id: str | None = None


@dataclass(frozen=True)
class ConnectionProfile:
    """
    Immutable description of one SSH target.

    Host, port, username and timeouts are validated on construction, so a
    profile that exists is safe to hand to the transport.
    """
    id: str
    host: str
    username: str
    port: int = 22
    name: str = ""
    auth_type: AuthType = AuthType.PASSWORD
    key_id: str | None = None
    identity_id: str | None = None
    terminal_type: str = "xterm-256color"
    encoding: str = "utf-8"
    compression: bool = True
    keep_alive: bool = True
    connect_timeout: float = 15.0
    read_timeout: float = 30.0
    proxy: ProxyConfig | None = None
    knock: KnockSpec | None = None

    def __post_init__(self) -> None:
        assert isinstance(self.id, str) and self.id, \
            f"Profile id must be a non-empty string, got {self.id!r}"
        object.__setattr__(self, "host", validate_hostname(self.host))
        validate_port(self.port)
        validate_username(self.username)
        validate_timeout(self.connect_timeout, "connect_timeout")
        validate_timeout(self.read_timeout, "read_timeout")
        if isinstance(self.auth_type, str) and not isinstance(self.auth_type, AuthType):
            object.__setattr__(self, "auth_type", AuthType.parse(self.auth_type))

    @property
    def display_name(self) -> str:
        """Name shown on the tab; falls back to user@host."""
        return self.name or f"{self.username}@{self.host}"

    @property
    def target(self) -> str:
        """user@host:port"""
        return f"{self.username}@{self.host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        """Describe the profile for logs (no secrets are held here)."""
        return {
            "id": self.id,
            "name": self.display_name,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "auth_type": self.auth_type.value,
            "key_id": self.key_id,
            "proxy": self.proxy.to_dict() if self.proxy else None,
            "knock": list(self.knock.sequence) if self.knock else None,
        }
