"""
Failure classification and user-facing diagnostics.

Provides:
- ErrorKind: failure categories, split into transient and terminal kinds
- ErrorInfo: classified failure with message, details and remedies
- classify(): map any exception raised by a connect attempt to ErrorInfo
- is_auth_failure_message() / should_reconnect(): reconnect policy inputs
"""
from __future__ import annotations

import asyncio
import socket
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import asyncssh

from sshtab.errors import (
    AuthenticationError,
    HostKeyRejected,
    HostUnreachable,
    JumpHostFailure,
)

if TYPE_CHECKING:
    from sshtab.profile import ConnectionProfile


class ErrorKind(str, Enum):
    """Category of a connection failure."""
    TIMEOUT = "TIMEOUT"
    UNKNOWN_HOST = "UNKNOWN_HOST"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    ALGORITHM_MISMATCH = "ALGORITHM_MISMATCH"
    HOST_KEY_REJECTED = "HOST_KEY_REJECTED"
    JUMP_HOST_FAILURE = "JUMP_HOST_FAILURE"
    GENERIC_SSH_ERROR = "GENERIC_SSH_ERROR"
    UNKNOWN = "UNKNOWN"

    @property
    def is_transient(self) -> bool:
        return self in TRANSIENT_KINDS

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_KINDS


TRANSIENT_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.UNKNOWN_HOST,
    ErrorKind.CONNECTION_REFUSED,
    ErrorKind.NETWORK_ERROR,
})

TERMINAL_KINDS = frozenset({
    ErrorKind.AUTHENTICATION_FAILED,
    ErrorKind.HOST_KEY_REJECTED,
    ErrorKind.JUMP_HOST_FAILURE,
    ErrorKind.ALGORITHM_MISMATCH,
})

# Case-insensitive substrings marking a credential problem
AUTH_FAILURE_SIGNATURES: tuple[str, ...] = (
    "auth fail",
    "authentication",
    "permission denied",
    "too many authentication failures",
    "publickey",
    "password",
)

_REMEDIES: dict[ErrorKind, list[str]] = {
    ErrorKind.TIMEOUT: [
        "Check if the server is running and accessible",
        "Verify the hostname or IP address is correct",
        "Ensure the port is not blocked by a firewall",
        "Try increasing the connection timeout",
        "If using port knocking, verify the sequence is correct",
    ],
    ErrorKind.UNKNOWN_HOST: [
        "Check if the hostname is spelled correctly",
        "Try using the IP address instead of the hostname",
        "Verify the DNS settings of this machine",
    ],
    ErrorKind.CONNECTION_REFUSED: [
        "Verify the SSH server is running on the configured port",
        "Check if a firewall is blocking the connection",
        "Ensure the port number is correct (default: 22)",
        "Check the server's sshd_config for AllowUsers or DenyUsers",
    ],
    ErrorKind.NETWORK_ERROR: [
        "Check your network connection",
        "The server may have dropped the connection",
        "Check if a network proxy is interfering",
    ],
    ErrorKind.AUTHENTICATION_FAILED: [
        "Check the username and credentials are correct",
        "Verify the user account exists and is not locked",
        "For key authentication, check ~/.ssh/authorized_keys on the server",
        "Check the key passphrase if the key is encrypted",
        "The server may require a different authentication method",
    ],
    ErrorKind.ALGORITHM_MISMATCH: [
        "The server may only offer outdated algorithms",
        "Check the server's Ciphers, MACs and KexAlgorithms settings",
        "Consider upgrading the server's SSH version",
    ],
    ErrorKind.HOST_KEY_REJECTED: [
        "Confirm the server's host key fingerprint with its administrator",
        "If the key was replaced legitimately, accept the new key when prompted",
    ],
    ErrorKind.JUMP_HOST_FAILURE: [
        "Check the jump host address, port and credentials",
        "Verify the jump host allows TCP forwarding to the target",
        "Connect to the jump host directly to confirm it is reachable",
    ],
    ErrorKind.GENERIC_SSH_ERROR: [
        "Check all connection parameters are correct",
        "Try connecting with the ssh command line to verify the server",
        "Check the server logs (/var/log/auth.log or /var/log/secure)",
    ],
    ErrorKind.UNKNOWN: [
        "Review the connection settings",
        "Try connecting with standard SSH tools to verify",
        "Enable verbose logging for more details",
    ],
}


@dataclass
class ErrorInfo:
    """
    A classified failure ready to show to a user.

    details is a multi-line technical description suitable for a
    "copy diagnostics" action.
    """
    kind: ErrorKind
    user_message: str
    details: str = ""
    remedies: list[str] = field(default_factory=list)
    cause: BaseException | None = field(default=None, repr=False, compare=False)

    @property
    def message(self) -> str:
        """Message of the underlying exception, or the user message."""
        if self.cause is not None and str(self.cause):
            return str(self.cause)
        return self.user_message

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_message": self.user_message,
            "message": self.message,
            "error_type": type(self.cause).__name__ if self.cause else None,
            "remedies": list(self.remedies),
        }

    def diagnostics_text(self) -> str:
        lines = [f"{self.kind.value}: {self.user_message}", ""]
        if self.remedies:
            lines.append("Possible solutions:")
            lines.extend(f"  - {r}" for r in self.remedies)
            lines.append("")
        if self.details:
            lines.append("Details:")
            lines.append(self.details)
        return "\n".join(lines).rstrip() + "\n"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_kind(exc: BaseException) -> ErrorKind:
    """Map an exception to its ErrorKind."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, socket.gaierror):
        return ErrorKind.UNKNOWN_HOST
    if isinstance(exc, ConnectionRefusedError):
        return ErrorKind.CONNECTION_REFUSED
    if isinstance(exc, (asyncssh.PermissionDenied, AuthenticationError)):
        return ErrorKind.AUTHENTICATION_FAILED
    if isinstance(exc, asyncssh.KeyExchangeFailed):
        return ErrorKind.ALGORITHM_MISMATCH
    if isinstance(exc, (HostKeyRejected, asyncssh.HostKeyNotVerifiable)):
        return ErrorKind.HOST_KEY_REJECTED
    if isinstance(exc, JumpHostFailure):
        return ErrorKind.JUMP_HOST_FAILURE
    if isinstance(exc, (OSError, asyncssh.ConnectionLost, HostUnreachable)):
        return ErrorKind.NETWORK_ERROR
    if isinstance(exc, asyncssh.Error):
        message = str(exc).lower()
        if "auth fail" in message:
            return ErrorKind.AUTHENTICATION_FAILED
        if "connection refused" in message:
            return ErrorKind.CONNECTION_REFUSED
        if "algorithm" in message:
            return ErrorKind.ALGORITHM_MISMATCH
        return ErrorKind.GENERIC_SSH_ERROR
    return ErrorKind.UNKNOWN


def _user_message(kind: ErrorKind, exc: BaseException, profile: "ConnectionProfile | None") -> str:
    where = f"{profile.host}:{profile.port}" if profile else "the server"
    if kind == ErrorKind.TIMEOUT:
        if profile:
            return f"Connection to {where} timed out after {profile.connect_timeout:g}s"
        return f"Connection to {where} timed out"
    if kind == ErrorKind.UNKNOWN_HOST:
        return f"Cannot resolve hostname {profile.host if profile else ''}".rstrip()
    if kind == ErrorKind.CONNECTION_REFUSED:
        return f"Connection refused by {where}"
    if kind == ErrorKind.NETWORK_ERROR:
        return f"Network error while talking to {where}"
    if kind == ErrorKind.AUTHENTICATION_FAILED:
        return f"Authentication failed for {profile.username}@{profile.host}" if profile \
            else "Authentication failed"
    if kind == ErrorKind.ALGORITHM_MISMATCH:
        return f"No common algorithms with {where}"
    if kind == ErrorKind.HOST_KEY_REJECTED:
        return f"Host key for {where} was not accepted"
    if kind == ErrorKind.JUMP_HOST_FAILURE:
        return f"Could not reach {where} through the jump host"
    if kind == ErrorKind.GENERIC_SSH_ERROR:
        return f"SSH error: {exc}" if str(exc) else "SSH error"
    return f"Unexpected error: {type(exc).__name__}"


def _details(exc: BaseException, profile: "ConnectionProfile | None") -> str:
    lines = [f"Exception: {type(exc).__name__}"]
    if profile is not None:
        lines.append(f"Target: {profile.target}")
        lines.append(f"Auth Type: {profile.auth_type.value}")
        if profile.key_id:
            lines.append(f"Key ID: {profile.key_id}")
        lines.append(f"Timeout: {profile.connect_timeout:g}s")
        lines.append(f"Proxy: {profile.proxy.kind.value if profile.proxy else 'None'}")
        if profile.knock is not None:
            sequence = ",".join(str(p) for p in profile.knock.sequence)
            lines.append(f"Port Knock: Enabled ({sequence})")
    if str(exc):
        lines.append(f"Message: {exc}")
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    lines.append("")
    lines.append("Stack Trace:")
    lines.append(stack.rstrip())
    return "\n".join(lines)


def classify(
    exc: BaseException,
    profile: "ConnectionProfile | None" = None,
) -> ErrorInfo:
    """
    Classify a failure from a connect attempt.

    Usage:
        info = classify(exc, profile)
        print(info.diagnostics_text())
    """
    kind = classify_kind(exc)
    return ErrorInfo(
        kind=kind,
        user_message=_user_message(kind, exc, profile),
        details=_details(exc, profile),
        remedies=list(_REMEDIES[kind]),
        cause=exc,
    )


def is_auth_failure_message(message: str | None) -> bool:
    """True if message carries one of the credential failure signatures."""
    if not message:
        return False
    lowered = message.lower()
    return any(signature in lowered for signature in AUTH_FAILURE_SIGNATURES)


def should_reconnect(info: ErrorInfo) -> bool:
    """
    Whether the reconnect policy may retry after this failure.

    Credential failures and terminal kinds are never retried.
    """
    if info.kind.is_terminal:
        return False
    return not is_auth_failure_message(info.message)
