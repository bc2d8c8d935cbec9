"""
Tests for the session manager pool.

Tests cover:
- Reuse of CONNECTED controllers and eviction of stale ones
- close_one / close_all bookkeeping
- maintenance() over both maps
- Listener callbacks and stats
"""
from __future__ import annotations

import asyncio

import pytest

from sshtab.auth import Authenticator
from sshtab.config import EngineSettings
from sshtab.controller import ConnectionState
from sshtab.diagnostics import ErrorInfo, ErrorKind
from sshtab.events import EventCollector, EventEmitter, EventType
from sshtab.host_key import HostKeyDecision, StaticResolver
from sshtab.listeners import SessionManagerListener
from sshtab.manager import SessionManager, SessionStats, make_controller_factory
from sshtab.profile import ConnectionProfile
from sshtab.trust import TrustStore

from conftest import FakeTransport


class RecordingManagerListener(SessionManagerListener):
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_connection_established(self, profile_id, controller) -> None:
        self.events.append(("established", profile_id))

    def on_connection_failed(self, profile_id, error) -> None:
        self.events.append(("failed", profile_id, error.kind if error else None))

    def on_connection_closed(self, profile_id) -> None:
        self.events.append(("closed", profile_id))

    def on_connection_state_changed(self, profile_id, state) -> None:
        self.events.append(("state", profile_id, state))

    def on_connection_error(self, profile_id, error: ErrorInfo) -> None:
        self.events.append(("error", profile_id, error.kind))

    def on_all_connections_closed(self) -> None:
        self.events.append(("all_closed",))


def _manager(
    authenticator: Authenticator,
    transport: FakeTransport,
    emitter: EventEmitter | None = None,
) -> SessionManager:
    factory = make_controller_factory(
        authenticator,
        TrustStore(),
        StaticResolver(HostKeyDecision.ACCEPT_AND_STORE),
        settings=EngineSettings(max_reconnect_attempts=0, reconnect_backoff_sec=0.01),
        transport=transport,  # type: ignore[arg-type]
    )
    return SessionManager(factory, emitter=emitter)


def _profile(profile_id: str, host: str = "example.com") -> ConnectionProfile:
    return ConnectionProfile(id=profile_id, host=host, username="alice")


class TestSessionManager:
    """Tests for SessionManager."""

    @pytest.mark.asyncio
    async def test_connect_and_get(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        controller = await manager.connect(_profile("p1"))

        assert controller.state == ConnectionState.CONNECTED
        assert manager.get("p1") is controller
        assert manager.is_connection_active("p1")
        assert manager.get_connection_state("p1") == ConnectionState.CONNECTED
        assert manager.get_connection_state("nope") == ConnectionState.DISCONNECTED
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_reuses_connected_controller(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
        emitter: EventEmitter, event_collector: EventCollector,
    ) -> None:
        manager = _manager(authenticator, fake_transport, emitter)
        first = await manager.connect(_profile("p1"))
        second = await manager.connect(_profile("p1"))

        assert first is second
        assert len(fake_transport.connect_calls) == 1
        actions = [e.data["action"] for e in event_collector.get_by_type(EventType.POOL)]
        assert actions == ["create", "reuse"]
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_controller(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
        emitter: EventEmitter, event_collector: EventCollector,
    ) -> None:
        manager = _manager(authenticator, fake_transport, emitter)
        fake_transport.fetch_delay = 0.05

        a, b = await asyncio.gather(
            manager.connect(_profile("p1")), manager.connect(_profile("p1")),
        )

        assert a is b
        assert a.state == ConnectionState.CONNECTED
        assert manager.get("p1") is a
        assert len(fake_transport.connect_calls) == 1
        actions = [e.data["action"] for e in event_collector.get_by_type(EventType.POOL)]
        assert "evict_stale" not in actions
        assert actions == ["create", "reuse"]
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_stale_controller_replaced(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        fake_transport.fetch_errors = [ConnectionRefusedError(111, "Connection refused")]

        failed = await manager.connect(_profile("p1"))
        assert failed.state == ConnectionState.ERROR
        assert manager.get("p1") is failed

        fresh = await manager.connect(_profile("p1"))

        assert fresh is not failed
        assert fresh.state == ConnectionState.CONNECTED
        assert failed.state == ConnectionState.DISCONNECTED
        assert manager.get("p1") is fresh
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_failed_connect_notifies(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        listener = RecordingManagerListener()
        manager.add_listener(listener)
        fake_transport.always_refuse = True

        await manager.connect(_profile("p1"))

        assert ("error", "p1", ErrorKind.CONNECTION_REFUSED) in listener.events
        assert listener.events[-1] == ("failed", "p1", ErrorKind.CONNECTION_REFUSED)
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_state_changes_forwarded(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        listener = RecordingManagerListener()
        manager.add_listener(listener)

        await manager.connect(_profile("p1"))
        await manager.close_one("p1")

        assert listener.events == [
            ("state", "p1", ConnectionState.CONNECTING),
            ("state", "p1", ConnectionState.AUTHENTICATING),
            ("state", "p1", ConnectionState.CONNECTED),
            ("established", "p1"),
            ("state", "p1", ConnectionState.DISCONNECTED),
            ("closed", "p1"),
        ]

    @pytest.mark.asyncio
    async def test_close_one(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        controller = await manager.connect(_profile("p1"))

        assert await manager.close_one("p1") is True
        assert await manager.close_one("p1") is False
        assert controller.state == ConnectionState.DISCONNECTED
        assert manager.get("p1") is None
        assert manager.stats() == SessionStats(total=0, connected=0, pooled=0)

    @pytest.mark.asyncio
    async def test_close_all(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        listener = RecordingManagerListener()
        a = await manager.connect(_profile("p1", "a.example"))
        b = await manager.connect(_profile("p2", "b.example"))
        manager.add_listener(listener)

        await manager.close_all()

        assert a.state == b.state == ConnectionState.DISCONNECTED
        assert manager.stats().to_dict() == {"total": 0, "connected": 0, "pooled": 0}
        assert listener.events[-1] == ("all_closed",)

    @pytest.mark.asyncio
    async def test_stats(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        await manager.connect(_profile("p1", "a.example"))
        fake_transport.always_refuse = True
        await manager.connect(_profile("p2", "b.example"))

        assert manager.stats() == SessionStats(total=2, connected=1, pooled=2)
        assert manager.states() == {
            "p1": ConnectionState.CONNECTED, "p2": ConnectionState.ERROR,
        }
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_disconnect_outside_manager_leaves_active(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        """A controller disconnected directly drops out of the active map."""
        manager = _manager(authenticator, fake_transport)
        controller = await manager.connect(_profile("p1"))

        await controller.disconnect()

        assert manager.get("p1") is None
        assert manager.stats().pooled == 1

    @pytest.mark.asyncio
    async def test_maintenance_scans_both_maps(
        self, authenticator: Authenticator, fake_transport: FakeTransport,
    ) -> None:
        manager = _manager(authenticator, fake_transport)
        controller = await manager.connect(_profile("p1"))
        await manager.connect(_profile("p2", "b.example"))
        await controller.disconnect()

        assert manager.maintenance() == 1
        assert manager.stats() == SessionStats(total=1, connected=1, pooled=1)
        assert manager.maintenance() == 0
        await manager.close_all()
