"""
Observer interfaces for controllers and the session manager.

Provides:
- ConnectionListener: per-connection lifecycle callbacks
- SessionManagerListener: pool-level callbacks
- dispatch(): fan a callback out to listeners, isolating their failures

Callbacks run on whichever thread or task performed the transition; UI code
is expected to marshal onto its own thread.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from sshtab.controller import ConnectionController, ConnectionState
    from sshtab.diagnostics import ErrorInfo

logger = logging.getLogger(__name__)


class ConnectionListener:
    """Lifecycle callbacks for a single connection. All methods are optional."""

    def on_connecting(self, connection_id: str) -> None:
        pass

    def on_authenticating(self, connection_id: str) -> None:
        pass

    def on_connected(self, connection_id: str) -> None:
        pass

    def on_disconnected(self, connection_id: str) -> None:
        pass

    def on_error(self, connection_id: str, error: "ErrorInfo") -> None:
        pass

    def on_data_received(self, connection_id: str, data: bytes) -> None:
        pass


class SessionManagerListener:
    """Pool-level callbacks. All methods are optional."""

    def on_connection_established(
        self, profile_id: str, controller: "ConnectionController",
    ) -> None:
        pass

    def on_connection_failed(self, profile_id: str, error: "ErrorInfo | None") -> None:
        pass

    def on_connection_closed(self, profile_id: str) -> None:
        pass

    def on_connection_state_changed(
        self, profile_id: str, state: "ConnectionState",
    ) -> None:
        pass

    def on_connection_error(self, profile_id: str, error: "ErrorInfo") -> None:
        pass

    def on_all_connections_closed(self) -> None:
        pass


def dispatch(listeners: Iterable[Any], method: str, *args: Any) -> None:
    """
    Call method on every listener.

    A listener that raises is logged and skipped; the remaining listeners
    still run.
    """
    for listener in list(listeners):
        callback = getattr(listener, method, None)
        if callback is None:
            continue
        try:
            callback(*args)
        except Exception:
            logger.exception("Listener %r failed in %s", listener, method)
