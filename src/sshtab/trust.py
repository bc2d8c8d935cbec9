"""
Trust-on-first-use host key store.

Provides:
- TrustLevel, VerificationOutcome: trust record and verification enums
- TrustedHostKey: the persisted record for one (hostname, port)
- TrustStore: verify / remember / forget / list_all / get
- TrustPersistence contract with MemoryTrustPersistence and
  JsonFileTrustPersistence backends
- fingerprint_of, detect_key_type, is_structurally_valid helpers
- import_known_hosts: seed records from an OpenSSH known_hosts file

Records are keyed by (hostname, port) with the hostname compared
case-insensitively. Verification for one key is serialised by a per-key
lock; distinct hosts never contend.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import re
import struct
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class TrustLevel(str, Enum):
    """How far a stored key is trusted."""
    UNKNOWN = "UNKNOWN"
    ACCEPTED = "ACCEPTED"
    VERIFIED = "VERIFIED"


class VerificationOutcome(str, Enum):
    """Result of checking a presented key against the store."""
    ACCEPTED = "ACCEPTED"   # Fingerprint matches the stored record
    NEW_HOST = "NEW_HOST"   # No record for (hostname, port)
    CHANGED = "CHANGED"     # Structurally valid key with a different fingerprint
    INVALID = "INVALID"     # Different fingerprint and a malformed key


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------

# Longest names first so nistp521 is not reported as a shorter prefix
_KEY_TYPE_MARKERS: tuple[str, ...] = (
    "ecdsa-sha2-nistp521",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp256",
    "ssh-ed25519",
    "ssh-rsa",
    "ssh-dss",
)


def fingerprint_of(data: bytes) -> str:
    """
    Fingerprint a raw SSH public key blob.

    Returns:
        "SHA256:" followed by the colon-separated hex digest bytes
    """
    digest = hashlib.sha256(data).digest()
    return "SHA256:" + ":".join(f"{b:02x}" for b in digest)


def detect_key_type(data: bytes) -> str:
    """
    Best-effort key type of a public key blob.

    Advisory only: a blob naming no known algorithm reports "unknown".
    """
    text = data.decode("latin-1")
    for marker in _KEY_TYPE_MARKERS:
        if marker in text:
            return marker
    return "unknown"


def _read_field(data: bytes, offset: int) -> tuple[bytes, int] | None:
    if offset + 4 > len(data):
        return None
    (length,) = struct.unpack_from(">I", data, offset)
    start = offset + 4
    end = start + length
    if end > len(data):
        return None
    return data[start:end], end


def is_structurally_valid(data: bytes) -> bool:
    """
    Check that a blob looks like an SSH wire-format public key.

    It must begin with a length-prefixed printable algorithm name followed
    by at least one more length-prefixed field, all inside the buffer.
    """
    first = _read_field(data, 0)
    if first is None:
        return False
    name, offset = first
    if not name or not all(0x21 <= b <= 0x7E for b in name):
        return False
    return _read_field(data, offset) is not None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _now_ms() -> int:
    return int(time.time() * 1000)


def make_key_id(hostname: str, port: int) -> str:
    """Storage identifier for (hostname, port)."""
    return f"{hostname.lower()}:{port}"


@dataclass(frozen=True)
class TrustedHostKey:
    """
    Stored trust record for one (hostname, port).

    public_key holds the base64 of the raw key blob; timestamps are epoch
    milliseconds.
    """
    hostname: str
    port: int
    key_type: str
    public_key: str
    fingerprint: str
    trust_level: TrustLevel = TrustLevel.ACCEPTED
    first_seen: int = field(default_factory=_now_ms)
    last_verified: int = field(default_factory=_now_ms)

    def __post_init__(self) -> None:
        assert self.hostname, "TrustedHostKey hostname must be non-empty"
        assert 1 <= self.port <= 65535, f"Port out of range: {self.port}"
        assert self.fingerprint.startswith("SHA256:"), \
            f"Unexpected fingerprint format: {self.fingerprint!r}"

    @classmethod
    def from_key_bytes(
        cls,
        hostname: str,
        port: int,
        key_bytes: bytes,
        trust_level: TrustLevel = TrustLevel.ACCEPTED,
    ) -> "TrustedHostKey":
        """Build a fresh record for a presented key."""
        now = _now_ms()
        return cls(
            hostname=hostname,
            port=port,
            key_type=detect_key_type(key_bytes),
            public_key=base64.b64encode(key_bytes).decode("ascii"),
            fingerprint=fingerprint_of(key_bytes),
            trust_level=trust_level,
            first_seen=now,
            last_verified=now,
        )

    @property
    def id(self) -> str:
        return make_key_id(self.hostname, self.port)

    @property
    def short_fingerprint(self) -> str:
        """First and last four digest bytes, for compact display."""
        parts = self.fingerprint[len("SHA256:"):].split(":")
        if len(parts) <= 8:
            return self.fingerprint
        return "SHA256:" + ":".join(parts[:4]) + "..." + ":".join(parts[-4:])

    def to_dict(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "port": self.port,
            "key_type": self.key_type,
            "public_key": self.public_key,
            "fingerprint": self.fingerprint,
            "trust_level": self.trust_level.value,
            "first_seen": self.first_seen,
            "last_verified": self.last_verified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrustedHostKey":
        return cls(
            hostname=data["hostname"],
            port=int(data["port"]),
            key_type=data.get("key_type", "unknown"),
            public_key=data["public_key"],
            fingerprint=data["fingerprint"],
            trust_level=TrustLevel(data.get("trust_level", TrustLevel.ACCEPTED.value)),
            first_seen=int(data.get("first_seen", 0)),
            last_verified=int(data.get("last_verified", 0)),
        )


# ---------------------------------------------------------------------------
# Persistence backends
# ---------------------------------------------------------------------------

class TrustPersistence:
    """Storage contract behind a TrustStore."""

    def load(self) -> list[TrustedHostKey]:
        raise NotImplementedError

    def save(self, entry: TrustedHostKey) -> None:
        raise NotImplementedError

    def delete(self, key_id: str) -> None:
        raise NotImplementedError


class MemoryTrustPersistence(TrustPersistence):
    """Keeps records in a dict; nothing survives the process."""

    def __init__(self, entries: list[TrustedHostKey] | None = None) -> None:
        self._entries: dict[str, TrustedHostKey] = {e.id: e for e in entries or []}
        self._lock = threading.Lock()

    def load(self) -> list[TrustedHostKey]:
        with self._lock:
            return list(self._entries.values())

    def save(self, entry: TrustedHostKey) -> None:
        with self._lock:
            self._entries[entry.id] = entry

    def delete(self, key_id: str) -> None:
        with self._lock:
            self._entries.pop(key_id, None)


class JsonFileTrustPersistence(TrustPersistence):
    """
    Stores all records in one JSON document.

    Every write rewrites the file through a temporary file and an atomic
    rename; the file is created with mode 0600.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        with open(self._path, "r", encoding="utf-8") as f:
            content = f.read()
        if not content.strip():
            return {}
        document = json.loads(content)
        assert isinstance(document, dict), \
            f"Trust store {self._path} must contain a JSON object"
        return {record_id: record for record_id, record in document.get("hosts", {}).items()}

    def _write(self, records: dict[str, dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".trust-", suffix=".tmp", dir=str(self._path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                os.chmod(tmp_name, 0o600)
                json.dump({"version": 1, "hosts": records}, f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def load(self) -> list[TrustedHostKey]:
        with self._lock:
            return [TrustedHostKey.from_dict(r) for r in self._read().values()]

    def save(self, entry: TrustedHostKey) -> None:
        with self._lock:
            records = self._read()
            records[entry.id] = entry.to_dict()
            self._write(records)

    def delete(self, key_id: str) -> None:
        with self._lock:
            records = self._read()
            if records.pop(key_id, None) is not None:
                self._write(records)


# ---------------------------------------------------------------------------
# Trust store
# ---------------------------------------------------------------------------

class TrustStore:
    """
    Trust-on-first-use record of host keys.

    Usage:
        store = TrustStore(JsonFileTrustPersistence(path))
        outcome = store.verify(host, port, key_bytes)
        if outcome == VerificationOutcome.NEW_HOST and approved:
            store.remember(TrustedHostKey.from_key_bytes(host, port, key_bytes))
    """

    def __init__(self, persistence: TrustPersistence | None = None) -> None:
        self._persistence = persistence or MemoryTrustPersistence()
        self._entries: dict[str, TrustedHostKey] = {
            entry.id: entry for entry in self._persistence.load()
        }
        self._key_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key_id: str) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key_id] = lock
            return lock

    def verify(
        self,
        hostname: str,
        port: int,
        presented_key: bytes,
        fingerprint: str | None = None,
    ) -> VerificationOutcome:
        """
        Compare a presented key with the stored record.

        A match refreshes last_verified and persists the record.
        """
        assert isinstance(presented_key, bytes), \
            f"presented_key must be bytes, got {type(presented_key).__name__}"
        if fingerprint is None:
            fingerprint = fingerprint_of(presented_key)

        key_id = make_key_id(hostname, port)
        with self._lock_for(key_id):
            with self._guard:
                existing = self._entries.get(key_id)

            if existing is None:
                return VerificationOutcome.NEW_HOST

            if existing.fingerprint == fingerprint:
                refreshed = replace(existing, last_verified=_now_ms())
                self._persistence.save(refreshed)
                with self._guard:
                    self._entries[key_id] = refreshed
                return VerificationOutcome.ACCEPTED

            if not is_structurally_valid(presented_key):
                logger.warning(
                    "Malformed host key presented for %s:%d", hostname, port,
                )
                return VerificationOutcome.INVALID

            return VerificationOutcome.CHANGED

    def remember(self, entry: TrustedHostKey) -> None:
        """Store or replace the record for entry's (hostname, port)."""
        with self._lock_for(entry.id):
            self._persistence.save(entry)
            with self._guard:
                self._entries[entry.id] = entry

    def forget(self, hostname: str, port: int) -> bool:
        """Remove a record. Returns True if one existed."""
        key_id = make_key_id(hostname, port)
        with self._lock_for(key_id):
            with self._guard:
                existed = self._entries.pop(key_id, None) is not None
            if existed:
                self._persistence.delete(key_id)
            return existed

    def get(self, hostname: str, port: int) -> TrustedHostKey | None:
        with self._guard:
            return self._entries.get(make_key_id(hostname, port))

    def list_all(self) -> list[TrustedHostKey]:
        """All records ordered by hostname then port."""
        with self._guard:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda e: (e.hostname.lower(), e.port))

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# ---------------------------------------------------------------------------
# known_hosts import
# ---------------------------------------------------------------------------

_BRACKETED_HOST = re.compile(r"^\[([^\]]+)\]:(\d+)$")


def _parse_known_hosts_host(pattern: str) -> tuple[str, int] | None:
    """Map a known_hosts host field to (hostname, port); None for patterns."""
    if pattern.startswith("|1|") or pattern.startswith("!"):
        return None
    if any(c in pattern for c in "*?"):
        return None
    match = _BRACKETED_HOST.match(pattern)
    if match:
        return match.group(1), int(match.group(2))
    return pattern, 22


def import_known_hosts(path: Path | str) -> list[TrustedHostKey]:
    """
    Read trust records from an OpenSSH known_hosts file.

    Plain and [host]:port entries are imported. Hashed hosts, negated or
    wildcard patterns, @revoked and @cert-authority lines are skipped, as
    are lines whose key data is not valid base64. A missing file yields [].
    """
    path = Path(path)
    if not path.exists():
        return []

    records: dict[str, TrustedHostKey] = {}
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or line.startswith("@"):
                continue

            parts = line.split()
            if len(parts) < 3:
                continue
            hosts_field, _key_type, key_data = parts[0], parts[1], parts[2]

            try:
                key_bytes = base64.b64decode(key_data, validate=True)
            except (binascii.Error, ValueError):
                logger.debug("Skipping known_hosts line with bad key data: %s", hosts_field)
                continue
            if not is_structurally_valid(key_bytes):
                continue

            for host_pattern in hosts_field.split(","):
                parsed = _parse_known_hosts_host(host_pattern.strip())
                if parsed is None:
                    continue
                hostname, port = parsed
                record = TrustedHostKey.from_key_bytes(hostname, port, key_bytes)
                # First entry for a host wins, as in OpenSSH lookups
                records.setdefault(record.id, record)

    return list(records.values())
