"""
Authentication planning.

Provides:
- AuthPlan: credentials chosen for one connection, converted to asyncssh
  options
- Authenticator: resolves a profile (or jump host) to an AuthPlan using the
  credential and identity stores

Only credentials returned by the stores are ever offered. Default key
discovery and the ssh-agent are disabled in every plan.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import asyncssh

from sshtab.errors import ErrorContext, KeyLoadError, NoCredential
from sshtab.profile import AuthType, ConnectionProfile, JumpHost
from sshtab.stores import CredentialStore, IdentityStore

logger = logging.getLogger(__name__)


@dataclass
class AuthPlan:
    """
    Credentials selected for one connection.

    password doubles as the answer to every keyboard-interactive prompt.
    """
    method: AuthType
    username: str
    password: str | None = field(default=None, repr=False)
    client_keys: list[asyncssh.SSHKey] = field(default_factory=list, repr=False)
    key_id: str | None = None
    identity_id: str | None = None
    skipped: bool = False

    def __post_init__(self) -> None:
        if self.method in (AuthType.PASSWORD, AuthType.KEYBOARD_INTERACTIVE):
            assert self.password is not None, \
                f"A password is required for {self.method.value}"
        if self.method == AuthType.PUBLIC_KEY:
            assert self.client_keys, "At least one key is required for PUBLIC_KEY"

    @property
    def kbdint_password(self) -> str | None:
        """Password used to answer keyboard-interactive challenges."""
        if self.method in (AuthType.PASSWORD, AuthType.KEYBOARD_INTERACTIVE):
            return self.password
        return None

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() keyword arguments."""
        options: dict[str, Any] = {
            "username": self.username,
            "agent_path": None,
            "client_keys": [],
            "password": None,
        }

        if self.method == AuthType.PASSWORD:
            options["password"] = self.password
            options["preferred_auth"] = ["password", "keyboard-interactive"]

        elif self.method == AuthType.PUBLIC_KEY:
            options["client_keys"] = list(self.client_keys)
            options["preferred_auth"] = ["publickey"]

        elif self.method == AuthType.KEYBOARD_INTERACTIVE:
            options["kbdint_auth"] = True
            options["preferred_auth"] = ["keyboard-interactive"]

        return options

    def to_dict(self) -> dict[str, Any]:
        """Describe the plan for logging (excludes secrets)."""
        result: dict[str, Any] = {
            "method": self.method.value,
            "username": self.username,
        }
        if self.key_id:
            result["key_id"] = self.key_id
        if self.identity_id:
            result["identity_id"] = self.identity_id
        if self.skipped:
            result["skipped"] = True
        return result


def import_client_key(
    data: str,
    passphrase: str | None,
    key_id: str,
) -> asyncssh.SSHKey:
    """
    Import serialized private key material.

    Raises:
        KeyLoadError: If the key is malformed or the passphrase is wrong
    """
    try:
        return asyncssh.import_private_key(data, passphrase)
    except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
        error_msg = str(e).lower()
        if "passphrase" in error_msg or "decrypt" in error_msg:
            reason = "wrong_passphrase"
        elif "format" in error_msg or "invalid" in error_msg:
            reason = "invalid_format"
        else:
            reason = "import_error"
        raise KeyLoadError(
            f"Failed to load private key {key_id}: {e}",
            key_id=key_id,
            reason=reason,
        ) from e


class Authenticator:
    """
    Chooses credentials for a connection.

    Usage:
        authenticator = Authenticator(credentials, identities)
        plan = authenticator.prepare(profile)
        options.update(plan.to_asyncssh_options())
    """

    def __init__(
        self,
        credentials: CredentialStore,
        identities: IdentityStore | None = None,
    ) -> None:
        self._credentials = credentials
        self._identities = identities

    def prepare(self, profile: ConnectionProfile) -> AuthPlan:
        """
        Build the plan for a profile.

        An identity named after the profile's username overrides the
        profile's auth type; its key reference wins when it has one.

        Raises:
            NoCredential: If the stores hold nothing for the chosen strategy
            KeyLoadError: If the stored private key cannot be imported
        """
        auth_type = profile.auth_type
        key_id = profile.key_id
        identity_id = profile.identity_id

        if self._identities is not None:
            identity = self._identities.find_identity_by_username(profile.username)
            if identity is not None:
                logger.debug(
                    "Identity %s applies to %s", identity.id, profile.username,
                )
                auth_type = identity.auth_type
                key_id = identity.key_id or profile.key_id
                identity_id = identity.id

        ctx = ErrorContext(
            host=profile.host,
            port=profile.port,
            username=profile.username,
            auth_method=auth_type.value,
            key_id=key_id,
        )
        return self._build(auth_type, profile.username, profile.id, key_id, identity_id, ctx)

    def prepare_jump(self, profile: ConnectionProfile, jump: JumpHost) -> AuthPlan:
        """
        Build the plan for a jump host.

        Uses the jump host's key when one is configured, otherwise the
        primary profile's stored password.
        """
        username = jump.username or profile.username
        ctx = ErrorContext(
            host=jump.host,
            port=jump.port,
            username=username,
            key_id=jump.key_id,
        )
        if jump.key_id:
            ctx.auth_method = AuthType.PUBLIC_KEY.value
            return self._build(AuthType.PUBLIC_KEY, username, profile.id, jump.key_id, None, ctx)

        auth_type = jump.auth_type
        if auth_type not in (AuthType.PASSWORD, AuthType.KEYBOARD_INTERACTIVE):
            auth_type = AuthType.PASSWORD
        ctx.auth_method = auth_type.value
        return self._build(auth_type, username, profile.id, None, None, ctx)

    def _build(
        self,
        auth_type: AuthType,
        username: str,
        profile_id: str,
        key_id: str | None,
        identity_id: str | None,
        ctx: ErrorContext,
    ) -> AuthPlan:
        if auth_type in (AuthType.PASSWORD, AuthType.KEYBOARD_INTERACTIVE):
            password = self._credentials.get_password(profile_id)
            if password is None:
                raise NoCredential(
                    f"No stored password for profile {profile_id}",
                    reference=profile_id,
                    context=ctx,
                )
            return AuthPlan(
                method=auth_type,
                username=username,
                password=password,
                identity_id=identity_id,
            )

        if auth_type == AuthType.PUBLIC_KEY:
            if not key_id:
                raise NoCredential(
                    f"Profile {profile_id} uses key authentication but names no key",
                    reference=profile_id,
                    context=ctx,
                )
            material = self._credentials.get_private_key(key_id)
            if material is None:
                raise NoCredential(
                    f"No stored private key {key_id}",
                    reference=key_id,
                    context=ctx,
                )
            key = import_client_key(material.data, material.passphrase, key_id)
            return AuthPlan(
                method=auth_type,
                username=username,
                client_keys=[key],
                key_id=key_id,
                identity_id=identity_id,
            )

        logger.warning(
            "GSSAPI authentication is not supported, skipping for %s", username,
        )
        return AuthPlan(
            method=AuthType.GSSAPI,
            username=username,
            identity_id=identity_id,
            skipped=True,
        )
