"""
Contracts for the storage backends the engine consumes.

Provides:
- PrivateKeyMaterial: serialized private key plus optional passphrase
- CredentialStore / MemoryCredentialStore: passwords and private keys
- IdentityStore / MemoryIdentityStore: identity lookup by username
- PreConnectHook / NoopPreConnectHook: port-knock helper run before connect

The engine never invents credentials: whatever these stores return is all
that is offered to the server.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field

from sshtab.profile import Identity, KnockSpec


@dataclass(frozen=True)
class PrivateKeyMaterial:
    """PEM or OpenSSH formatted private key and its passphrase, if any."""
    data: str
    passphrase: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        assert isinstance(self.data, str) and self.data.strip(), \
            "Private key data must be a non-empty string"


class CredentialStore:
    """Source of secrets. Subclasses override both lookups."""

    def get_password(self, profile_id: str) -> str | None:
        raise NotImplementedError

    def get_private_key(self, key_id: str) -> PrivateKeyMaterial | None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    """In-memory credential store, used by the CLI and tests."""

    def __init__(self) -> None:
        self._passwords: dict[str, str] = {}
        self._keys: dict[str, PrivateKeyMaterial] = {}
        self._lock = threading.Lock()

    def set_password(self, profile_id: str, password: str) -> None:
        with self._lock:
            self._passwords[profile_id] = password

    def set_private_key(
        self, key_id: str, data: str, passphrase: str | None = None,
    ) -> None:
        with self._lock:
            self._keys[key_id] = PrivateKeyMaterial(data, passphrase)

    def get_password(self, profile_id: str) -> str | None:
        with self._lock:
            return self._passwords.get(profile_id)

    def get_private_key(self, key_id: str) -> PrivateKeyMaterial | None:
        with self._lock:
            return self._keys.get(key_id)


class IdentityStore:
    """Lookup of shared identities."""

    def find_identity_by_username(self, username: str) -> Identity | None:
        raise NotImplementedError


class MemoryIdentityStore(IdentityStore):
    """
    Identities held in insertion order.

    An identity is found by its name; the first identity named after the
    requested username wins.
    """

    def __init__(self, identities: list[Identity] | None = None) -> None:
        self._identities: list[Identity] = list(identities or [])
        self._lock = threading.Lock()

    def add(self, identity: Identity) -> None:
        with self._lock:
            self._identities.append(identity)

    def find_identity_by_username(self, username: str) -> Identity | None:
        with self._lock:
            for identity in self._identities:
                if identity.name == username:
                    return identity
        return None


class PreConnectHook:
    """Runs a knock sequence before the transport connects."""

    async def run_knock_sequence(self, host: str, spec: KnockSpec) -> bool:
        """Return True when the sequence was sent."""
        raise NotImplementedError


class NoopPreConnectHook(PreConnectHook):
    """Hook used when no knocking helper is configured."""

    async def run_knock_sequence(self, host: str, spec: KnockSpec) -> bool:
        return False
