"""
Session manager: a keyed pool of connection controllers.

Provides:
- SessionManager: connect / get / close_one / close_all / maintenance /
  stats over controllers keyed by profile id
- SessionStats: snapshot returned by SessionManager.stats()
- make_controller_factory(): build controllers sharing one set of stores

Two maps are kept: active (what the UI is showing) and pool (what may be
reused). A pooled controller is reused only while CONNECTED.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from sshtab.auth import Authenticator
from sshtab.config import EngineSettings
from sshtab.controller import ConnectionController, ConnectionState, ReconnectPolicy
from sshtab.diagnostics import ErrorInfo
from sshtab.events import EventEmitter, EventType
from sshtab.host_key import HostKeyResolver
from sshtab.listeners import ConnectionListener, SessionManagerListener, dispatch
from sshtab.profile import ConnectionProfile
from sshtab.stores import PreConnectHook
from sshtab.transport import Transport
from sshtab.trust import TrustStore

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[ConnectionProfile], ConnectionController]


@dataclass(frozen=True)
class SessionStats:
    """Pool counters."""
    total: int
    connected: int
    pooled: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "connected": self.connected, "pooled": self.pooled}


def make_controller_factory(
    authenticator: Authenticator,
    trust_store: TrustStore,
    resolver: HostKeyResolver | None = None,
    *,
    settings: EngineSettings | None = None,
    transport: Transport | None = None,
    pre_connect_hook: PreConnectHook | None = None,
    emitter: EventEmitter | None = None,
) -> ControllerFactory:
    """Return a factory building controllers that share stores and resolver."""
    settings = settings or EngineSettings()

    def factory(profile: ConnectionProfile) -> ConnectionController:
        return ConnectionController(
            profile,
            authenticator=authenticator,
            trust_store=trust_store,
            resolver=resolver,
            transport=transport,
            pre_connect_hook=pre_connect_hook,
            emitter=emitter,
            reconnect_policy=ReconnectPolicy(
                max_attempts=settings.max_reconnect_attempts,
                backoff_sec=settings.reconnect_backoff_sec,
            ),
            decision_timeout=settings.decision_timeout_sec,
            relay_command=settings.relay_command,
        )

    return factory


class _ControllerBridge(ConnectionListener):
    """Forwards one controller's callbacks to the manager."""

    def __init__(self, manager: "SessionManager", controller: ConnectionController) -> None:
        self._manager = manager
        self._controller = controller
        self._profile_id = controller.profile.id

    def on_connecting(self, connection_id: str) -> None:
        self._manager._state_changed(self._profile_id, ConnectionState.CONNECTING)

    def on_authenticating(self, connection_id: str) -> None:
        self._manager._state_changed(self._profile_id, ConnectionState.AUTHENTICATING)

    def on_connected(self, connection_id: str) -> None:
        self._manager._state_changed(self._profile_id, ConnectionState.CONNECTED)

    def on_disconnected(self, connection_id: str) -> None:
        self._manager._controller_disconnected(self._profile_id, self._controller)

    def on_error(self, connection_id: str, error: ErrorInfo) -> None:
        self._manager._controller_error(self._profile_id, error)


class SessionManager:
    """
    Keyed pool of controllers, one per profile.

    Usage:
        manager = SessionManager(make_controller_factory(authenticator, store, resolver))
        controller = await manager.connect(profile)
        ...
        await manager.close_all()
    """

    def __init__(
        self,
        controller_factory: ControllerFactory,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._factory = controller_factory
        self._emitter = emitter or EventEmitter()
        self._active: dict[str, ConnectionController] = {}
        self._pool: dict[str, ConnectionController] = {}
        # One connect at a time per profile; later callers reuse its result.
        self._connect_locks: dict[str, asyncio.Lock] = {}
        self._lock = threading.Lock()
        self._listeners: list[SessionManagerListener] = []

    def add_listener(self, listener: SessionManagerListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: SessionManagerListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, method: str, *args: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        dispatch(listeners, method, *args)

    # -----------------------------------------------------------------------
    # Controller callbacks
    # -----------------------------------------------------------------------

    def _state_changed(self, profile_id: str, state: ConnectionState) -> None:
        self._notify("on_connection_state_changed", profile_id, state)

    def _controller_disconnected(
        self, profile_id: str, controller: ConnectionController,
    ) -> None:
        with self._lock:
            if self._active.get(profile_id) is controller:
                del self._active[profile_id]
        self._notify("on_connection_state_changed", profile_id, ConnectionState.DISCONNECTED)

    def _controller_error(self, profile_id: str, error: ErrorInfo) -> None:
        self._notify("on_connection_state_changed", profile_id, ConnectionState.ERROR)
        self._notify("on_connection_error", profile_id, error)

    # -----------------------------------------------------------------------
    # Pool operations
    # -----------------------------------------------------------------------

    async def connect(self, profile: ConnectionProfile) -> ConnectionController:
        """
        Connect a profile, reusing a pooled controller only if CONNECTED.

        Returns the controller whether or not the connect succeeded; a
        failed controller stays registered so its reconnects remain visible.
        Concurrent calls for one profile are serialised, so a caller arriving
        while a connect is in flight waits for it and reuses its controller.
        """
        with self._lock:
            connect_lock = self._connect_locks.setdefault(profile.id, asyncio.Lock())
        async with connect_lock:
            return await self._connect_locked(profile)

    async def _connect_locked(self, profile: ConnectionProfile) -> ConnectionController:
        stale: ConnectionController | None = None
        with self._lock:
            existing = self._pool.get(profile.id)
            if existing is not None and existing.state == ConnectionState.CONNECTED:
                self._active[profile.id] = existing
                reused = existing
            else:
                reused = None
                if existing is not None:
                    stale = existing
                    self._pool.pop(profile.id, None)
                    if self._active.get(profile.id) is existing:
                        del self._active[profile.id]

        if reused is not None:
            logger.info("Reusing connection for %s", profile.id)
            self._emitter.emit(EventType.POOL, action="reuse", profile_id=profile.id)
            return reused

        if stale is not None:
            logger.info("Discarding stale %s connection for %s", stale.state.value, profile.id)
            self._emitter.emit(
                EventType.POOL, action="evict_stale", profile_id=profile.id,
                state=stale.state.value,
            )
            await stale.disconnect()

        controller = self._factory(profile)
        controller.add_listener(_ControllerBridge(self, controller))
        with self._lock:
            self._active[profile.id] = controller
            self._pool[profile.id] = controller
        self._emitter.emit(EventType.POOL, action="create", profile_id=profile.id)

        if await controller.connect():
            self._notify("on_connection_established", profile.id, controller)
        else:
            self._notify("on_connection_failed", profile.id, controller.last_error)
        return controller

    def get(self, profile_id: str) -> ConnectionController | None:
        with self._lock:
            return self._active.get(profile_id)

    async def close_one(self, profile_id: str) -> bool:
        """Disconnect and forget one profile. Returns False if it was unknown."""
        with self._lock:
            controller = self._active.pop(profile_id, None)
            pooled = self._pool.pop(profile_id, None)
        controller = controller or pooled
        if controller is None:
            return False

        await controller.disconnect()
        self._emitter.emit(EventType.POOL, action="close", profile_id=profile_id)
        self._notify("on_connection_closed", profile_id)
        return True

    async def close_all(self) -> None:
        """Disconnect every controller and empty both maps."""
        with self._lock:
            controllers = {id(c): c for c in [*self._active.values(), *self._pool.values()]}
            self._active.clear()
            self._pool.clear()

        for controller in controllers.values():
            try:
                await controller.disconnect()
            except Exception:
                logger.exception("Error disconnecting %s", controller.id)

        self._emitter.emit(EventType.POOL, action="close_all", count=len(controllers))
        self._notify("on_all_connections_closed")

    def maintenance(self) -> int:
        """Drop DISCONNECTED controllers still mapped. Returns how many."""
        removed: set[str] = set()
        with self._lock:
            for mapping in (self._active, self._pool):
                for profile_id, controller in list(mapping.items()):
                    if controller.state == ConnectionState.DISCONNECTED:
                        del mapping[profile_id]
                        removed.add(profile_id)
        if removed:
            self._emitter.emit(EventType.POOL, action="maintenance", removed=sorted(removed))
        return len(removed)

    def stats(self) -> SessionStats:
        with self._lock:
            active = list(self._active.values())
            pooled = len(self._pool)
        return SessionStats(
            total=len(active),
            connected=sum(1 for c in active if c.state == ConnectionState.CONNECTED),
            pooled=pooled,
        )

    def states(self) -> dict[str, ConnectionState]:
        with self._lock:
            return {pid: c.state for pid, c in self._active.items()}

    def is_connection_active(self, profile_id: str) -> bool:
        controller = self.get(profile_id)
        return controller is not None and controller.state == ConnectionState.CONNECTED

    def get_connection_state(self, profile_id: str) -> ConnectionState:
        controller = self.get(profile_id)
        return controller.state if controller is not None else ConnectionState.DISCONNECTED
