"""
Exception taxonomy for the connection engine.

Every error carries an ErrorContext so that it can be written to the JSONL
event log and folded into an ErrorInfo without re-parsing messages.

Error hierarchy:
- SSHError (base)
  - SSHConnectionError
    - HostUnreachable
  - AuthenticationError
    - NoCredential (credential store has nothing for the strategy)
    - KeyLoadError (private key material unusable)
  - HostKeyRejected (decision protocol refused the host key)
  - JumpHostFailure (tunnel provisioning failed)
  - IllegalState (operation not allowed in the current state)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class DisconnectReason(str, Enum):
    """Why a session ended, recorded on DISCONNECT events."""
    NORMAL = "normal"
    NETWORK_ERROR = "network_error"
    AUTH_FAILURE = "auth_failure"
    HOST_KEY_REJECTED = "host_key_rejected"
    CANCELLED = "cancelled"


@dataclass
class ErrorContext:
    """
    Structured context for engine errors.

    Carries the target and auth details needed to explain a failure
    without consulting the logs.
    """
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    key_id: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra":
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Base class for connection-related errors."""
    pass


class HostUnreachable(SSHConnectionError):
    """Host could not be reached (network error)."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(SSHError):
    """Base class for authentication-related errors."""
    pass


class NoCredential(AuthenticationError):
    """
    The credential store holds nothing usable for the chosen strategy.

    Raised instead of guessing: there are no fallback credentials.
    """

    def __init__(
        self,
        message: str,
        reference: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if reference:
            context.extra["reference"] = reference
        super().__init__(message, context)
        self.reference = reference


class KeyLoadError(AuthenticationError):
    """
    Private key material could not be imported.

    Raised when the stored key is malformed or its passphrase is wrong.
    """

    def __init__(
        self,
        message: str,
        key_id: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        assert key_id is None or (isinstance(key_id, str) and key_id.strip()), (
            f"key_id must be None or a non-empty string, got {key_id!r}"
        )
        if context is None:
            context = ErrorContext()
        context.key_id = key_id
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)


# ---------------------------------------------------------------------------
# Trust and tunnel errors
# ---------------------------------------------------------------------------

class HostKeyRejected(SSHError):
    """
    The host key was not approved.

    Covers an explicit REJECT decision, a decision timeout, a missing
    resolver, and a key that failed structural validation. Never retried.
    """

    def __init__(
        self,
        message: str,
        host: str,
        port: int,
        fingerprint: str | None = None,
        outcome: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext(host=host, port=port)
        if fingerprint:
            context.extra["fingerprint"] = fingerprint
        if outcome:
            context.extra["outcome"] = outcome
        super().__init__(message, context)
        self.host = host
        self.port = port
        self.fingerprint = fingerprint
        self.outcome = outcome


class JumpHostFailure(SSHError):
    """Tunnel provisioning through a jump host failed."""
    pass


class IllegalState(SSHError):
    """Operation is not permitted in the controller's current state."""
    pass
