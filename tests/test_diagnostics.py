"""
Tests for failure classification.

Tests cover:
- classify_kind for socket, asyncssh and engine exceptions
- Remedies and diagnostics text
- should_reconnect for transient, terminal and credential failures
"""
from __future__ import annotations

import asyncio
import socket

import asyncssh
import pytest

from sshtab.diagnostics import (
    ErrorInfo,
    ErrorKind,
    classify,
    classify_kind,
    is_auth_failure_message,
    should_reconnect,
)
from sshtab.errors import HostKeyRejected, JumpHostFailure, NoCredential
from sshtab.profile import ConnectionProfile, KnockSpec


class TestClassifyKind:
    """Tests for classify_kind."""

    @pytest.mark.parametrize("exc,kind", [
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
        (socket.gaierror(-2, "Name or service not known"), ErrorKind.UNKNOWN_HOST),
        (ConnectionRefusedError(111, "Connection refused"), ErrorKind.CONNECTION_REFUSED),
        (ConnectionResetError(104, "reset"), ErrorKind.NETWORK_ERROR),
        (OSError(113, "No route to host"), ErrorKind.NETWORK_ERROR),
        (asyncssh.PermissionDenied("Permission denied"), ErrorKind.AUTHENTICATION_FAILED),
        (NoCredential("nothing stored"), ErrorKind.AUTHENTICATION_FAILED),
        (asyncssh.KeyExchangeFailed("no matching kex"), ErrorKind.ALGORITHM_MISMATCH),
        (HostKeyRejected("no", "example.com", 22), ErrorKind.HOST_KEY_REJECTED),
        (JumpHostFailure("bastion down"), ErrorKind.JUMP_HOST_FAILURE),
        (asyncssh.ConnectionLost("lost"), ErrorKind.NETWORK_ERROR),
        (asyncssh.ProtocolError("bad packet"), ErrorKind.GENERIC_SSH_ERROR),
        (ValueError("boom"), ErrorKind.UNKNOWN),
    ])
    def test_mapping(self, exc: BaseException, kind: ErrorKind) -> None:
        assert classify_kind(exc) == kind

    def test_asyncssh_message_fallbacks(self) -> None:
        assert classify_kind(asyncssh.ProtocolError("Auth failed for user")) == \
            ErrorKind.AUTHENTICATION_FAILED
        assert classify_kind(asyncssh.ProtocolError("no matching algorithm")) == \
            ErrorKind.ALGORITHM_MISMATCH


class TestClassify:
    """Tests for classify and ErrorInfo."""

    def test_timeout_message_uses_profile(self) -> None:
        profile = ConnectionProfile(
            id="p1", host="example.com", username="alice", connect_timeout=7,
            knock=KnockSpec((7000, 8000)),
        )
        info = classify(asyncio.TimeoutError(), profile)
        assert info.kind == ErrorKind.TIMEOUT
        assert info.user_message == "Connection to example.com:22 timed out after 7s"
        assert info.remedies
        assert "Port Knock: Enabled (7000,8000)" in info.details
        assert "Target: alice@example.com:22" in info.details

    def test_without_profile(self) -> None:
        info = classify(ConnectionRefusedError(111, "Connection refused"))
        assert info.user_message == "Connection refused by the server"

    def test_diagnostics_text(self) -> None:
        info = classify(asyncssh.PermissionDenied("Permission denied"))
        text = info.diagnostics_text()
        assert text.startswith("AUTHENTICATION_FAILED: Authentication failed")
        assert "Possible solutions:" in text
        assert "Stack Trace:" in text

    def test_to_dict(self) -> None:
        data = classify(ValueError("boom")).to_dict()
        assert data["kind"] == "UNKNOWN"
        assert data["message"] == "boom"
        assert data["error_type"] == "ValueError"

    def test_message_falls_back_to_user_message(self) -> None:
        info = ErrorInfo(ErrorKind.UNKNOWN, "Something broke")
        assert info.message == "Something broke"


class TestReconnectPolicyInputs:
    """Tests for is_auth_failure_message and should_reconnect."""

    def test_auth_signatures(self) -> None:
        assert is_auth_failure_message("Permission denied (publickey)")
        assert is_auth_failure_message("Too many authentication failures")
        assert is_auth_failure_message("Auth failed")
        assert not is_auth_failure_message("Connection reset by peer")
        assert not is_auth_failure_message(None)

    def test_transient_kinds_retry(self) -> None:
        assert should_reconnect(classify(ConnectionRefusedError(111, "Connection refused")))
        assert should_reconnect(classify(asyncio.TimeoutError()))

    def test_terminal_kinds_never_retry(self) -> None:
        assert not should_reconnect(classify(HostKeyRejected("no", "example.com", 22)))
        assert not should_reconnect(classify(asyncssh.PermissionDenied("denied")))
        assert not should_reconnect(classify(JumpHostFailure("down")))

    def test_credential_message_blocks_retry(self) -> None:
        """A network-looking error whose text names a credential problem."""
        info = classify(ConnectionResetError(104, "closed after password prompt"))
        assert info.kind == ErrorKind.NETWORK_ERROR
        assert not should_reconnect(info)

    def test_generic_and_unknown_retry(self) -> None:
        assert should_reconnect(classify(asyncssh.ProtocolError("bad packet")))
        assert should_reconnect(classify(ValueError("boom")))
