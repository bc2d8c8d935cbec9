"""
Tests for the connection profile data model.

Tests:
- ConnectionProfile defaults, validation and helpers
- AuthType parsing of enum names and OpenSSH method names
- Proxy variants carry only their own fields
- KnockSpec validation
"""
from __future__ import annotations

import dataclasses

import pytest

from sshtab.profile import (
    AuthType,
    ConnectionProfile,
    HttpProxy,
    JumpHost,
    KnockSpec,
    ProxyKind,
    Socks4Proxy,
    Socks5Proxy,
)


class TestConnectionProfile:
    """Tests for ConnectionProfile."""

    def test_defaults(self) -> None:
        profile = ConnectionProfile(id="p1", host="example.com", username="alice")
        assert profile.port == 22
        assert profile.auth_type == AuthType.PASSWORD
        assert profile.terminal_type == "xterm-256color"
        assert profile.encoding == "utf-8"
        assert profile.compression is True
        assert profile.keep_alive is True
        assert profile.connect_timeout == 15.0
        assert profile.read_timeout == 30.0
        assert profile.proxy is None
        assert profile.knock is None

    def test_host_is_normalised(self) -> None:
        profile = ConnectionProfile(id="p1", host="Example.COM", username="alice")
        assert profile.host == "example.com"

    def test_is_immutable(self) -> None:
        profile = ConnectionProfile(id="p1", host="example.com", username="alice")
        with pytest.raises(dataclasses.FrozenInstanceError):
            profile.port = 2222  # type: ignore[misc]

    def test_invalid_fields_rejected(self) -> None:
        with pytest.raises(ValueError):
            ConnectionProfile(id="p1", host="bad host", username="alice")
        with pytest.raises(ValueError):
            ConnectionProfile(id="p1", host="example.com", username="alice", port=0)
        with pytest.raises(ValueError):
            ConnectionProfile(id="p1", host="example.com", username="$(id)")
        with pytest.raises(ValueError):
            ConnectionProfile(id="p1", host="example.com", username="a", connect_timeout=0)

    def test_empty_id_rejected(self) -> None:
        with pytest.raises(AssertionError):
            ConnectionProfile(id="", host="example.com", username="alice")

    def test_string_auth_type_is_parsed(self) -> None:
        profile = ConnectionProfile(
            id="p1", host="example.com", username="alice",
            auth_type="publickey",  # type: ignore[arg-type]
        )
        assert profile.auth_type == AuthType.PUBLIC_KEY

    def test_display_name_and_target(self) -> None:
        unnamed = ConnectionProfile(id="p1", host="example.com", username="alice", port=2222)
        assert unnamed.display_name == "alice@example.com"
        assert unnamed.target == "alice@example.com:2222"

        named = dataclasses.replace(unnamed, name="Prod")
        assert named.display_name == "Prod"

    def test_to_dict_describes_proxy_and_knock(self) -> None:
        profile = ConnectionProfile(
            id="p1",
            host="example.com",
            username="alice",
            proxy=HttpProxy("proxy.local"),
            knock=KnockSpec((7000, 8000, 9000)),
        )
        data = profile.to_dict()
        assert data["proxy"] == {"kind": "HTTP", "host": "proxy.local", "port": 8080}
        assert data["knock"] == [7000, 8000, 9000]
        assert data["auth_type"] == "PASSWORD"


class TestAuthType:
    """Tests for AuthType.parse."""

    @pytest.mark.parametrize("text,expected", [
        ("PASSWORD", AuthType.PASSWORD),
        ("public_key", AuthType.PUBLIC_KEY),
        ("publickey", AuthType.PUBLIC_KEY),
        ("keyboard-interactive", AuthType.KEYBOARD_INTERACTIVE),
        ("KEYBOARD_INTERACTIVE", AuthType.KEYBOARD_INTERACTIVE),
        ("gssapi-with-mic", AuthType.GSSAPI),
    ])
    def test_known_names(self, text: str, expected: AuthType) -> None:
        assert AuthType.parse(text) == expected

    def test_unknown_falls_back_to_password(self) -> None:
        assert AuthType.parse("hostbased") == AuthType.PASSWORD
        assert AuthType.parse("") == AuthType.PASSWORD
        assert AuthType.parse(None) == AuthType.PASSWORD


class TestProxyVariants:
    """Tests for the proxy variants."""

    def test_default_ports(self) -> None:
        assert HttpProxy("p.local").port == 8080
        assert Socks4Proxy("p.local").port == 1080
        assert Socks5Proxy("p.local").port == 1080
        assert JumpHost("bastion").port == 22

    def test_kinds(self) -> None:
        assert HttpProxy("p.local").kind == ProxyKind.HTTP
        assert Socks4Proxy("p.local").kind == ProxyKind.SOCKS4
        assert Socks5Proxy("p.local").kind == ProxyKind.SOCKS5
        assert JumpHost("bastion").kind == ProxyKind.SSH_JUMP

    def test_jump_host_fields(self) -> None:
        jump = JumpHost("Bastion.Example.com", 2222, username="ops", key_id="k1")
        assert jump.host == "bastion.example.com"
        assert jump.to_dict() == {
            "kind": "SSH_JUMP",
            "host": "bastion.example.com",
            "port": 2222,
            "auth_type": "PASSWORD",
            "username": "ops",
            "key_id": "k1",
        }

    def test_relay_proxies_have_no_jump_fields(self) -> None:
        proxy = Socks5Proxy("p.local", username="bob")
        assert not hasattr(proxy, "key_id")
        assert proxy.to_dict() == {
            "kind": "SOCKS5", "host": "p.local", "port": 1080, "username": "bob",
        }

    def test_invalid_proxy_host_rejected(self) -> None:
        with pytest.raises(ValueError):
            HttpProxy("proxy;rm")


class TestKnockSpec:
    """Tests for KnockSpec."""

    def test_sequence_is_tuple(self) -> None:
        spec = KnockSpec([1000, 2000])  # type: ignore[arg-type]
        assert spec.sequence == (1000, 2000)
        assert spec.delay_ms == 100

    def test_empty_sequence_rejected(self) -> None:
        with pytest.raises(AssertionError):
            KnockSpec(())

    def test_bad_port_rejected(self) -> None:
        with pytest.raises(ValueError):
            KnockSpec((70000,))
