"""
Per-session transport configuration.

Provides:
- SessionOptions: compression, keep-alive, connect timeout and algorithm
  preference lists, converted to asyncssh connection options

Keep-alive defaults to a 60s interval with 3 missed replies allowed, so a
dead peer is noticed after about three minutes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sshtab.profile import ConnectionProfile

COMPRESSION_ALGS: tuple[str, ...] = ("zlib@openssh.com", "zlib", "none")

ENCRYPTION_ALGS: tuple[str, ...] = (
    "aes256-gcm@openssh.com",
    "aes128-gcm@openssh.com",
    "aes256-ctr",
    "aes192-ctr",
    "aes128-ctr",
)

MAC_ALGS: tuple[str, ...] = (
    "hmac-sha2-256-etm@openssh.com",
    "hmac-sha2-512-etm@openssh.com",
    "hmac-sha2-256",
    "hmac-sha2-512",
)

KEX_ALGS: tuple[str, ...] = (
    "curve25519-sha256",
    "curve25519-sha256@libssh.org",
    "ecdh-sha2-nistp256",
    "ecdh-sha2-nistp384",
    "ecdh-sha2-nistp521",
    "diffie-hellman-group-exchange-sha256",
    "diffie-hellman-group16-sha512",
    "diffie-hellman-group14-sha256",
)


@dataclass
class SessionOptions:
    """
    Transport options applied to one session.

    Usage:
        options = SessionOptions.from_profile(profile)
        conn = await asyncssh.connect(host, **options.to_asyncssh_options())
    """
    compression: bool = True
    keep_alive: bool = True
    keepalive_interval_sec: float = 60.0
    keepalive_count_max: int = 3
    connect_timeout: float = 15.0
    encryption_algs: list[str] = field(default_factory=lambda: list(ENCRYPTION_ALGS))
    mac_algs: list[str] = field(default_factory=lambda: list(MAC_ALGS))
    kex_algs: list[str] = field(default_factory=lambda: list(KEX_ALGS))

    def __post_init__(self) -> None:
        assert self.keepalive_interval_sec > 0, \
            f"keepalive_interval_sec must be positive, got {self.keepalive_interval_sec}"
        assert self.keepalive_count_max > 0, \
            f"keepalive_count_max must be positive, got {self.keepalive_count_max}"
        assert self.connect_timeout > 0, \
            f"connect_timeout must be positive, got {self.connect_timeout}"
        assert self.encryption_algs and self.mac_algs and self.kex_algs, \
            "Algorithm preference lists must not be empty"

    @classmethod
    def from_profile(cls, profile: "ConnectionProfile") -> "SessionOptions":
        return cls(
            compression=profile.compression,
            keep_alive=profile.keep_alive,
            connect_timeout=profile.connect_timeout,
        )

    @property
    def compression_algs(self) -> list[str]:
        return list(COMPRESSION_ALGS) if self.compression else ["none"]

    def to_asyncssh_options(self) -> dict[str, Any]:
        """
        Convert to asyncssh.connect() keyword arguments.

        Host key handling is not included: the transport pins the key the
        gate approved.
        """
        options: dict[str, Any] = {
            "compression_algs": self.compression_algs,
            "encryption_algs": list(self.encryption_algs),
            "mac_algs": list(self.mac_algs),
            "kex_algs": list(self.kex_algs),
            "connect_timeout": self.connect_timeout,
        }
        if self.keep_alive:
            options["keepalive_interval"] = self.keepalive_interval_sec
            options["keepalive_count_max"] = self.keepalive_count_max
        return options

    def to_dict(self) -> dict[str, Any]:
        return {
            "compression": self.compression,
            "keep_alive": self.keep_alive,
            "keepalive_interval_sec": self.keepalive_interval_sec,
            "keepalive_count_max": self.keepalive_count_max,
            "connect_timeout": self.connect_timeout,
        }
