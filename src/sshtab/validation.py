"""
Input validation for connection profiles.

Profiles arrive from external storage and imported OpenSSH configs, and
their fields end up in transport options and relay command arguments, so
hostnames, usernames, ports and timeouts are checked before a profile is
accepted.
"""
from __future__ import annotations

import ipaddress
import re
from typing import Final

MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 64

# Characters that must never appear in connection parameters
FORBIDDEN_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"
    "\n\r\t"
    "`$(){}|;&<>\\'\""
)

_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z0-9_]([a-zA-Z0-9_-]*[a-zA-Z0-9_])?$"
)

# POSIX names plus the dots common in directory-backed accounts
_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_.-]*$"
)

_CHAR_NAMES: Final[dict[str, str]] = {
    "\x00": "null byte",
    "\n": "newline",
    "\r": "carriage return",
    "\t": "tab",
}


def _check_forbidden_chars(value: str, field_name: str) -> None:
    """Raise ValueError if value contains a forbidden character."""
    assert isinstance(field_name, str) and field_name, \
        f"Precondition: field_name must be non-empty str, got {field_name!r}"

    for char in value:
        if char in FORBIDDEN_CHARS:
            char_desc = _CHAR_NAMES.get(char, repr(char))
            raise ValueError(f"{field_name} contains forbidden character: {char_desc}")


def _is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def validate_hostname(hostname: str) -> str:
    """
    Validate a hostname or IP literal.

    Accepts IPv4/IPv6 literals and RFC 1123 names (labels of at most 63
    alphanumeric/hyphen characters, no leading or trailing hyphen).

    Returns:
        The hostname in lowercase

    Raises:
        ValueError: If the hostname is invalid
    """
    if not isinstance(hostname, str):
        raise ValueError(f"hostname must be a string, got {type(hostname).__name__}")
    if not hostname:
        raise ValueError("hostname must not be empty")

    _check_forbidden_chars(hostname, "hostname")

    if _is_ip_literal(hostname):
        return hostname.lower()

    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})"
        )

    labels = hostname.split(".")
    for i, label in enumerate(labels):
        if not label:
            if i == 0:
                raise ValueError("hostname must not start with a dot")
            if i == len(labels) - 1:
                raise ValueError("hostname must not end with a dot")
            raise ValueError("hostname must not contain consecutive dots")

        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(
                f"hostname label '{label}' exceeds maximum length of "
                f"{MAX_LABEL_LENGTH} characters (got {len(label)})"
            )

        if not _LABEL_PATTERN.match(label):
            if label.startswith("-") or label.endswith("-"):
                raise ValueError(
                    f"hostname label '{label}' must not start or end with a hyphen"
                )
            raise ValueError(
                f"hostname label '{label}' contains invalid characters "
                "(only alphanumeric and hyphens allowed)"
            )

    return hostname.lower()


def validate_username(username: str) -> str:
    """
    Validate a login name.

    Returns:
        The username unchanged

    Raises:
        ValueError: If the username is invalid
    """
    if not isinstance(username, str):
        raise ValueError(f"username must be a string, got {type(username).__name__}")
    if not username:
        raise ValueError("username must not be empty")

    _check_forbidden_chars(username, "username")

    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters "
            f"(got {len(username)})"
        )

    if not _USERNAME_PATTERN.match(username):
        first_char = username[0]
        if not (first_char.isalpha() or first_char == "_"):
            raise ValueError(
                f"username must start with a letter or underscore, got '{first_char}'"
            )
        for char in username:
            if not (char.isalnum() or char in "_.-"):
                raise ValueError(f"username contains invalid character: {char!r}")

    return username


def validate_port(port: int) -> int:
    """
    Validate a TCP port number (1-65535).

    Raises:
        ValueError: If the port is not an int in range
    """
    # bool is a subclass of int
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")
    if not 1 <= port <= 65535:
        raise ValueError(f"port must be between 1 and 65535, got {port}")
    return port


def validate_timeout(value: float, field_name: str) -> float:
    """Validate a positive timeout in seconds."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field_name} must be a number, got {type(value).__name__}")
    if value <= 0:
        raise ValueError(f"{field_name} must be positive, got {value}")
    return value
