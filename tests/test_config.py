"""
Tests for engine settings and OpenSSH config import.

Tests cover:
- EngineSettings defaults, validation and SSHTAB_* environment overrides
- ProxyJump parsing
- Host pattern matching (wildcards, negation) and first-value-wins
- Profile construction from Host blocks
"""
from __future__ import annotations

import getpass
from pathlib import Path

import pytest

from sshtab.config import EngineSettings, SSHConfigImporter, parse_jump_spec
from sshtab.profile import AuthType, JumpHost


# ---------------------------------------------------------------------------
# EngineSettings Tests
# ---------------------------------------------------------------------------

class TestEngineSettings:
    """Test EngineSettings defaults and environment loading."""

    def test_defaults(self) -> None:
        settings = EngineSettings()
        assert settings.decision_timeout_sec == 60.0
        assert settings.max_reconnect_attempts == 3
        assert settings.reconnect_backoff_sec == 5.0
        assert settings.relay_command == "nc"
        assert settings.trust_store_path.name == "trusted_hosts.json"
        assert settings.event_log_path is None

    def test_invalid_values_rejected(self) -> None:
        with pytest.raises(AssertionError):
            EngineSettings(decision_timeout_sec=0)
        with pytest.raises(AssertionError):
            EngineSettings(max_reconnect_attempts=-1)
        with pytest.raises(AssertionError):
            EngineSettings(relay_command="")

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """SSHTAB_* variables override the defaults."""
        monkeypatch.setenv("SSHTAB_DECISION_TIMEOUT", "5")
        monkeypatch.setenv("SSHTAB_MAX_RECONNECT_ATTEMPTS", "0")
        monkeypatch.setenv("SSHTAB_RECONNECT_BACKOFF", "0.5")
        monkeypatch.setenv("SSHTAB_TRUST_STORE", str(tmp_path / "trust.json"))
        monkeypatch.setenv("SSHTAB_EVENT_LOG", str(tmp_path / "events.jsonl"))
        monkeypatch.setenv("SSHTAB_RELAY_COMMAND", "ncat")

        settings = EngineSettings.from_env()

        assert settings.decision_timeout_sec == 5.0
        assert settings.max_reconnect_attempts == 0
        assert settings.reconnect_backoff_sec == 0.5
        assert settings.trust_store_path == tmp_path / "trust.json"
        assert settings.event_log_path == tmp_path / "events.jsonl"
        assert settings.to_dict()["relay_command"] == "ncat"

    def test_from_env_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("DECISION_TIMEOUT", "MAX_RECONNECT_ATTEMPTS", "EVENT_LOG"):
            monkeypatch.delenv(f"SSHTAB_{name}", raising=False)
        settings = EngineSettings.from_env()
        assert settings.decision_timeout_sec == 60.0
        assert settings.event_log_path is None

    def test_from_env_bad_number(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SSHTAB_MAX_RECONNECT_ATTEMPTS", "lots")
        with pytest.raises(ValueError, match="SSHTAB_MAX_RECONNECT_ATTEMPTS"):
            EngineSettings.from_env()

    def test_trust_store_tilde_expanded(self) -> None:
        settings = EngineSettings(trust_store_path=Path("~/trust.json"))
        assert settings.trust_store_path == Path.home() / "trust.json"


# ---------------------------------------------------------------------------
# ProxyJump Tests
# ---------------------------------------------------------------------------

class TestParseJumpSpec:
    """Test parse_jump_spec."""

    def test_host_only(self) -> None:
        assert parse_jump_spec("bastion") == JumpHost("bastion")

    def test_user_host_port(self) -> None:
        jump = parse_jump_spec("ops@bastion.example:2222")
        assert (jump.username, jump.host, jump.port) == ("ops", "bastion.example", 2222)

    def test_first_hop_of_chain(self) -> None:
        """Only the first hop of a comma-separated chain is used."""
        assert parse_jump_spec("a.example,b.example").host == "a.example"

    def test_ipv6_literal(self) -> None:
        jump = parse_jump_spec("[fe80::1]:2200")
        assert (jump.host, jump.port) == ("fe80::1", 2200)

    def test_ssh_url(self) -> None:
        jump = parse_jump_spec("ssh://ops@bastion:22")
        assert (jump.username, jump.host) == ("ops", "bastion")

    def test_bad_port(self) -> None:
        with pytest.raises(ValueError):
            parse_jump_spec("bastion:ssh")


# ---------------------------------------------------------------------------
# SSHConfigImporter Tests
# ---------------------------------------------------------------------------

SAMPLE_CONFIG = """\
# Work machines
Host web
    HostName web01.example.com
    User deploy
    Port 2222
    IdentityFile ~/.ssh/id_work
    IdentityFile ~/.ssh/id_backup

Host db db-replica
    HostName %h.internal.example.com
    ProxyJump ops@bastion.example.com
    PasswordAuthentication yes

Host legacy
    HostName legacy.example.com
    PubkeyAuthentication no
    PasswordAuthentication no
    ServerAliveInterval 0

Host *.lab !secret.lab
    User labuser

Host *
    User fallback
    Compression yes
    ConnectTimeout 30
    IdentitiesOnly yes
"""


class TestSSHConfigImporter:
    """Test SSHConfigImporter parsing and profile building."""

    def test_aliases(self) -> None:
        """Concrete aliases in file order; wildcards skipped."""
        importer = SSHConfigImporter(SAMPLE_CONFIG)
        assert importer.aliases() == ["web", "db", "db-replica", "legacy"]

    def test_key_profile(self) -> None:
        profile = SSHConfigImporter(SAMPLE_CONFIG).profile_for("web")
        assert profile.id == "ssh-config:web"
        assert profile.name == "web"
        assert profile.host == "web01.example.com"
        assert profile.port == 2222
        assert profile.username == "deploy"
        assert profile.auth_type == AuthType.PUBLIC_KEY
        assert profile.key_id == str(Path.home() / ".ssh" / "id_work")
        assert profile.connect_timeout == 30.0
        assert profile.compression is True

    def test_hostname_token_and_proxy_jump(self) -> None:
        profile = SSHConfigImporter(SAMPLE_CONFIG).profile_for("db-replica")
        assert profile.host == "db-replica.internal.example.com"
        assert profile.username == "fallback"
        assert profile.auth_type == AuthType.PASSWORD
        assert profile.proxy == JumpHost("bastion.example.com", username="ops")

    def test_keyboard_interactive_when_others_disabled(self) -> None:
        profile = SSHConfigImporter(SAMPLE_CONFIG).profile_for("legacy")
        assert profile.auth_type == AuthType.KEYBOARD_INTERACTIVE
        assert profile.key_id is None
        assert profile.keep_alive is False

    def test_negated_pattern(self) -> None:
        importer = SSHConfigImporter(SAMPLE_CONFIG)
        assert importer.options_for("box.lab")["user"] == "labuser"
        assert importer.options_for("secret.lab")["user"] == "fallback"

    def test_first_value_wins(self) -> None:
        importer = SSHConfigImporter(
            "Host app\n    User first\nHost app\n    User second\n"
        )
        assert importer.profile_for("app").username == "first"

    def test_identity_files_accumulate(self) -> None:
        options = SSHConfigImporter(SAMPLE_CONFIG).options_for("web")
        assert options["identityfile"] == ["~/.ssh/id_work", "~/.ssh/id_backup"]

    def test_global_options_before_host(self) -> None:
        importer = SSHConfigImporter("User early\nHost box\n    Port 2200\n")
        assert importer.profile_for("box").username == "early"

    def test_equals_quotes_and_comments(self) -> None:
        importer = SSHConfigImporter(
            'Host box\n'
            '    HostName="box.example.com"\n'
            '    Port = 2201 # ssh on a side port\n'
            '    User alice\n'
        )
        profile = importer.profile_for("box")
        assert profile.host == "box.example.com"
        assert profile.port == 2201

    def test_defaults_without_options(self) -> None:
        profile = SSHConfigImporter("Host plain\n", default_user="carol").profile_for("plain")
        assert profile.host == "plain"
        assert profile.port == 22
        assert profile.username == "carol"
        assert profile.auth_type == AuthType.PASSWORD
        assert profile.compression is False
        assert profile.proxy is None

    def test_current_user_fallback(self) -> None:
        profile = SSHConfigImporter("Host plain\n").profile_for("plain")
        assert profile.username == getpass.getuser()

    def test_match_block_ignored(self) -> None:
        importer = SSHConfigImporter(
            "Host box\n    User alice\nMatch exec true\n    User mallory\n"
        )
        assert importer.profile_for("box").username == "alice"

    def test_invalid_entries_skipped(self) -> None:
        importer = SSHConfigImporter(
            "Host good\n    User alice\nHost bad\n    Port nope\n"
        )
        assert [p.id for p in importer.profiles()] == ["ssh-config:good"]
        with pytest.raises(ValueError, match="Invalid Port"):
            importer.profile_for("bad")

    def test_from_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config"
        config_file.write_text(SAMPLE_CONFIG)
        importer = SSHConfigImporter.from_file(config_file)
        assert "web" in importer.aliases()

    def test_from_missing_file(self, tmp_path: Path) -> None:
        importer = SSHConfigImporter.from_file(tmp_path / "missing")
        assert list(importer.profiles()) == []
