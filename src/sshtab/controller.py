"""
Connection controller: the per-profile SSH state machine.

Provides:
- ConnectionState: DISCONNECTED, CONNECTING, AUTHENTICATING, CONNECTED, ERROR
- ReconnectPolicy: bounded fixed-backoff retry configuration
- ConnectionController: connect sequence, reconnect policy, channels and
  orderly teardown for one ConnectionProfile

State transitions:
    DISCONNECTED -> CONNECTING (connect)
    CONNECTING -> AUTHENTICATING (tunnel and session options ready)
    AUTHENTICATING -> CONNECTED (host key approved, credentials accepted)
    CONNECTING / AUTHENTICATING -> ERROR (any failure)
    CONNECTED -> ERROR (transport lost unexpectedly)
    ERROR -> CONNECTING (retry)
    any -> DISCONNECTED (disconnect)

All network I/O for one controller runs on a dedicated task on the loop that
called connect(); listeners are notified inside the transition, so they see
transitions in order.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sshtab.auth import Authenticator
from sshtab.diagnostics import ErrorInfo, ErrorKind, classify, should_reconnect
from sshtab.errors import (
    DisconnectReason,
    ErrorContext,
    HostUnreachable,
    IllegalState,
)
from sshtab.events import EventEmitter, EventType
from sshtab.host_key import DEFAULT_DECISION_TIMEOUT_SEC, HostKeyGate, HostKeyResolver
from sshtab.listeners import ConnectionListener, dispatch
from sshtab.profile import ConnectionProfile
from sshtab.session_options import SessionOptions
from sshtab.stores import NoopPreConnectHook, PreConnectHook
from sshtab.transport import Transport
from sshtab.trust import TrustStore
from sshtab.tunnel import TunnelHandle, TunnelProvisioner

logger = logging.getLogger(__name__)

DEFAULT_TERM_SIZE = (80, 24)
_READ_CHUNK = 4096


class ConnectionState(str, Enum):
    """Lifecycle state of a controller."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def is_active(self) -> bool:
        return self in (
            ConnectionState.CONNECTING,
            ConnectionState.AUTHENTICATING,
            ConnectionState.CONNECTED,
        )

    @property
    def is_connected(self) -> bool:
        return self == ConnectionState.CONNECTED

    @property
    def can_reconnect(self) -> bool:
        return self in (ConnectionState.DISCONNECTED, ConnectionState.ERROR)


_DISPLAY_NAMES: dict[ConnectionState, str] = {
    ConnectionState.DISCONNECTED: "Disconnected",
    ConnectionState.CONNECTING: "Connecting...",
    ConnectionState.AUTHENTICATING: "Authenticating...",
    ConnectionState.CONNECTED: "Connected",
    ConnectionState.ERROR: "Error",
}

_LISTENER_METHODS: dict[ConnectionState, str] = {
    ConnectionState.CONNECTING: "on_connecting",
    ConnectionState.AUTHENTICATING: "on_authenticating",
    ConnectionState.CONNECTED: "on_connected",
    ConnectionState.DISCONNECTED: "on_disconnected",
}

# Reason recorded when a failure ends the attempt; anything else is the network.
_FAILURE_REASONS: dict[ErrorKind, DisconnectReason] = {
    ErrorKind.AUTHENTICATION_FAILED: DisconnectReason.AUTH_FAILURE,
    ErrorKind.HOST_KEY_REJECTED: DisconnectReason.HOST_KEY_REJECTED,
}


@dataclass
class ReconnectPolicy:
    """
    Automatic reconnection after transient failures.

    Up to max_attempts reconnects, each after a fixed backoff_sec pause.
    The attempt counter resets on a successful connect and on disconnect().
    """
    max_attempts: int = 3
    backoff_sec: float = 5.0

    def __post_init__(self) -> None:
        assert self.max_attempts >= 0, \
            f"max_attempts must be non-negative, got {self.max_attempts}"
        assert self.backoff_sec >= 0, \
            f"backoff_sec must be non-negative, got {self.backoff_sec}"


class ConnectionController:
    """
    Drives one profile through connect, use and teardown.

    Usage:
        controller = ConnectionController(
            profile,
            authenticator=Authenticator(credentials, identities),
            trust_store=store,
            resolver=CallbackResolver(on_new_host=ask_user),
        )
        if await controller.connect():
            output = await controller.execute("uptime")
        await controller.disconnect()
    """

    _VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
        ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.ERROR},
        ConnectionState.CONNECTING: {
            ConnectionState.AUTHENTICATING,
            ConnectionState.ERROR,
            ConnectionState.DISCONNECTED,
        },
        ConnectionState.AUTHENTICATING: {
            ConnectionState.CONNECTED,
            ConnectionState.ERROR,
            ConnectionState.DISCONNECTED,
        },
        ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED, ConnectionState.ERROR},
        ConnectionState.ERROR: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
    }

    def __init__(
        self,
        profile: ConnectionProfile,
        *,
        authenticator: Authenticator,
        trust_store: TrustStore,
        resolver: HostKeyResolver | None = None,
        transport: Transport | None = None,
        pre_connect_hook: PreConnectHook | None = None,
        emitter: EventEmitter | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
        decision_timeout: float = DEFAULT_DECISION_TIMEOUT_SEC,
        relay_command: str = "nc",
        connection_id: str | None = None,
    ) -> None:
        assert isinstance(profile, ConnectionProfile), \
            f"Expected ConnectionProfile, got {type(profile).__name__}"

        self._profile = profile
        self._id = connection_id or profile.id
        self._authenticator = authenticator
        self._transport = transport or Transport()
        self._hook = pre_connect_hook or NoopPreConnectHook()
        self._emitter = emitter or EventEmitter()
        self._policy = reconnect_policy or ReconnectPolicy()
        self._gate = HostKeyGate(trust_store, resolver, decision_timeout, self._emitter)
        self._provisioner = TunnelProvisioner(
            self._transport, authenticator, self._gate, relay_command, self._emitter,
        )

        # State machine
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.RLock()
        self._listeners: list[ConnectionListener] = []
        self._last_error: ErrorInfo | None = None
        self._reconnect_attempts = 0

        # Live resources
        self._conn: Any = None
        self._conn_token: object | None = None
        self._tunnel: TunnelHandle | None = None
        self._channels: list[tuple[str, Any]] = []

        # Tasks
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connect_task: asyncio.Task[bool] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._loss_task: asyncio.Task[None] | None = None
        self._disconnect_requested = False

    # -----------------------------------------------------------------------
    # Properties
    # -----------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def profile(self) -> ConnectionProfile:
        return self._profile

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def last_error(self) -> ErrorInfo | None:
        return self._last_error

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    def add_listener(self, listener: ConnectionListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: ConnectionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # -----------------------------------------------------------------------
    # State machine
    # -----------------------------------------------------------------------

    def _transition(
        self,
        new_state: ConnectionState,
        error: ErrorInfo | None = None,
        **event_data: Any,
    ) -> None:
        """Move to new_state, emit STATE_CHANGE and notify listeners in order."""
        with self._lock:
            old_state = self._state
            assert new_state in self._VALID_TRANSITIONS[old_state], \
                f"Invalid state transition: {old_state.value} -> {new_state.value}"
            self._state = new_state

            self._emitter.emit(
                EventType.STATE_CHANGE,
                connection_id=self._id,
                from_state=old_state.value,
                to_state=new_state.value,
                reconnect_attempts=self._reconnect_attempts,
                **event_data,
            )

            if new_state == ConnectionState.ERROR:
                assert error is not None, "ERROR transition requires ErrorInfo"
                dispatch(self._listeners, "on_error", self._id, error)
            else:
                dispatch(self._listeners, _LISTENER_METHODS[new_state], self._id)

    # -----------------------------------------------------------------------
    # Connect
    # -----------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Run the connect sequence on the controller's worker task.

        Returns:
            True once CONNECTED, False if the attempt failed or was cancelled
            by disconnect(). Failures are reported through last_error and
            listeners, not raised.
        """
        with self._lock:
            if self._state == ConnectionState.CONNECTED:
                return True

            task = self._connect_task
            if task is None or task.done():
                self._loop = asyncio.get_running_loop()
                self._disconnect_requested = False
                task = self._loop.create_task(
                    self._run_connect(), name=f"sshtab-connect-{self._id}",
                )
                self._connect_task = task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    async def _run_connect(self) -> bool:
        self._transition(ConnectionState.CONNECTING)
        start_ms = time.time() * 1000
        self._emitter.emit(
            EventType.CONNECT, status="started", connection_id=self._id, **self._profile.to_dict(),
        )

        try:
            await self._establish()
        except asyncio.CancelledError:
            await self._teardown()
            raise
        except Exception as e:
            await self._teardown()
            self._emit_connect_finished(start_ms, success=False)
            if self._disconnect_requested:
                logger.debug("Connect for %s ended during disconnect: %s", self._id, e)
                return False
            self._fail(e)
            return False

        if self._disconnect_requested:
            await self._teardown()
            self._emit_connect_finished(start_ms, success=False)
            return False

        with self._lock:
            self._reconnect_attempts = 0
            self._transition(ConnectionState.CONNECTED)
        self._emit_connect_finished(start_ms, success=True)
        return True

    async def _establish(self) -> None:
        profile = self._profile

        if profile.knock is not None:
            await self._run_knock()

        plan = await self._provisioner.provision(profile)
        self._tunnel = plan.handle

        options = SessionOptions.from_profile(profile).to_asyncssh_options()

        self._transition(ConnectionState.AUTHENTICATING)
        auth_plan = self._authenticator.prepare(profile)
        self._emitter.emit(EventType.AUTH, connection_id=self._id, **auth_plan.to_dict())
        options.update(auth_plan.to_asyncssh_options())
        if plan.proxy_command:
            options["proxy_command"] = plan.proxy_command

        host_key = await self._transport.fetch_host_key(
            plan.host,
            plan.port,
            timeout=profile.connect_timeout,
            proxy_command=plan.proxy_command,
            kex_algs=options["kex_algs"],
        )
        # Trust is keyed by the profile's host even when dialling a tunnel
        await self._gate.check(profile.host, profile.port, host_key.public_data)

        token = object()
        self._conn_token = token

        def on_lost(exc: Exception | None) -> None:
            self._on_connection_lost(token, exc)

        self._conn = await self._transport.connect(
            plan.host,
            plan.port,
            host_key=host_key,
            options=options,
            kbdint_password=auth_plan.kbdint_password,
            on_connection_lost=on_lost,
        )

    async def _run_knock(self) -> None:
        knock = self._profile.knock
        assert knock is not None
        try:
            sent = await self._hook.run_knock_sequence(self._profile.host, knock)
        except Exception as e:
            logger.warning("Port knock for %s failed, continuing: %s", self._profile.host, e)
            sent = False
        self._emitter.emit(
            EventType.KNOCK,
            connection_id=self._id,
            host=self._profile.host,
            sequence=list(knock.sequence),
            sent=sent,
        )

    def _emit_connect_finished(self, start_ms: float, success: bool) -> None:
        self._emitter.emit(
            EventType.CONNECT,
            status="finished",
            connection_id=self._id,
            success=success,
            duration_ms=(time.time() * 1000) - start_ms,
        )

    # -----------------------------------------------------------------------
    # Failure handling and reconnect
    # -----------------------------------------------------------------------

    def _fail(self, exc: BaseException) -> None:
        info = classify(exc, self._profile)
        self._last_error = info
        self._emitter.emit(EventType.ERROR, connection_id=self._id, **info.to_dict())
        reason = _FAILURE_REASONS.get(info.kind, DisconnectReason.NETWORK_ERROR)
        self._transition(
            ConnectionState.ERROR, error=info, kind=info.kind.value, reason=reason.value,
        )
        self._maybe_schedule_reconnect(info)

    def _maybe_schedule_reconnect(self, info: ErrorInfo) -> None:
        if not should_reconnect(info):
            logger.info("Not reconnecting %s after %s", self._id, info.kind.value)
            return
        if self._disconnect_requested:
            return
        with self._lock:
            if self._reconnect_attempts >= self._policy.max_attempts:
                logger.info(
                    "Giving up on %s after %d reconnect attempts",
                    self._id, self._reconnect_attempts,
                )
                return
            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts

        logger.info(
            "Reconnecting %s in %.1fs (attempt %d/%d)",
            self._id, self._policy.backoff_sec, attempt, self._policy.max_attempts,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(
            self._reconnect_after_backoff(), name=f"sshtab-reconnect-{self._id}",
        )

    async def _reconnect_after_backoff(self) -> None:
        await asyncio.sleep(self._policy.backoff_sec)
        previous = self._connect_task
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        if self._disconnect_requested:
            return
        await self.connect()

    def _on_connection_lost(self, token: object, exc: Exception | None) -> None:
        """Transport callback; runs on the event loop thread."""
        if token is not self._conn_token:
            return
        with self._lock:
            if self._state != ConnectionState.CONNECTED:
                return
        loop = asyncio.get_running_loop()
        self._loss_task = loop.create_task(self._handle_connection_lost(exc))

    async def _handle_connection_lost(self, exc: Exception | None) -> None:
        with self._lock:
            if self._state != ConnectionState.CONNECTED or self._disconnect_requested:
                return
        await self._teardown()
        detail = f": {exc}" if exc else ""
        error = HostUnreachable(
            f"Connection to {self._profile.host}:{self._profile.port} lost{detail}",
            context=ErrorContext(
                host=self._profile.host,
                port=self._profile.port,
                username=self._profile.username,
            ),
        )
        self._emitter.emit(
            EventType.DISCONNECT,
            connection_id=self._id,
            reason=DisconnectReason.NETWORK_ERROR.value,
        )
        self._fail(error)

    async def wait_idle(self) -> None:
        """Wait until no connect, reconnect or loss handling is pending."""
        while True:
            pending = {
                t for t in (self._connect_task, self._reconnect_task, self._loss_task)
                if t is not None and not t.done() and t is not asyncio.current_task()
            }
            if not pending:
                return
            await asyncio.wait(pending)

    # -----------------------------------------------------------------------
    # Disconnect
    # -----------------------------------------------------------------------

    async def disconnect(self) -> None:
        """
        Close everything and move to DISCONNECTED.

        Idempotent: calling it while already disconnected emits nothing. A
        connect waiting on a host key decision is allowed to finish before
        cleanup runs; any other pending connect is cancelled.
        """
        current = asyncio.current_task()
        with self._lock:
            busy = any(
                t is not None and not t.done() and t is not current
                for t in (self._connect_task, self._reconnect_task, self._loss_task)
            )
            if self._state == ConnectionState.DISCONNECTED and not busy and self._conn is None:
                return
            self._disconnect_requested = True

        reconnect = self._reconnect_task
        if reconnect is not None and not reconnect.done() and reconnect is not current:
            reconnect.cancel()
            await asyncio.wait({reconnect})

        reason = DisconnectReason.NORMAL
        task = self._connect_task
        if task is not None and not task.done() and task is not current:
            if self._gate.awaiting_decision:
                logger.info("Disconnect of %s waits for the pending host key decision", self._id)
            else:
                task.cancel()
                reason = DisconnectReason.CANCELLED
            await asyncio.wait({task})

        loss = self._loss_task
        if loss is not None and not loss.done() and loss is not current:
            await asyncio.wait({loss})

        await self._teardown()

        with self._lock:
            self._reconnect_attempts = 0
            if self._state != ConnectionState.DISCONNECTED:
                self._transition(ConnectionState.DISCONNECTED, reason=reason.value)
                self._emitter.emit(
                    EventType.DISCONNECT,
                    connection_id=self._id,
                    reason=reason.value,
                )

    def request_disconnect(self) -> concurrent.futures.Future[None] | None:
        """
        Schedule disconnect() from any thread.

        Returns the future of the scheduled call, or None if the controller
        never ran on a loop.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return None
        return asyncio.run_coroutine_threadsafe(self.disconnect(), loop)

    async def _teardown(self) -> None:
        """Release channels, the session and the tunnel."""
        self._conn_token = None

        channels, self._channels = self._channels, []
        for kind, channel in channels:
            try:
                if kind == "sftp":
                    channel.exit()
                else:
                    channel.close()
            except Exception:
                logger.debug("Error closing %s channel", kind, exc_info=True)

        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            await conn.wait_closed()

        tunnel, self._tunnel = self._tunnel, None
        if tunnel is not None:
            try:
                await tunnel.close()
            except Exception:
                logger.debug("Error closing tunnel for %s", self._id, exc_info=True)

    async def __aenter__(self) -> "ConnectionController":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    # -----------------------------------------------------------------------
    # Channels
    # -----------------------------------------------------------------------

    def _require_connected(self) -> Any:
        with self._lock:
            if self._state != ConnectionState.CONNECTED or self._conn is None:
                raise IllegalState(
                    f"Connection {self._id} is {self._state.value}, not CONNECTED",
                    context=ErrorContext(host=self._profile.host, port=self._profile.port),
                )
            return self._conn

    async def open_shell(self) -> Any:
        """
        Open an interactive shell with a pty.

        Returns:
            asyncssh SSHClientProcess using the profile's terminal type
        """
        conn = self._require_connected()
        process = await conn.create_process(
            term_type=self._profile.terminal_type,
            term_size=DEFAULT_TERM_SIZE,
            encoding=self._profile.encoding,
        )
        self._channels.append(("shell", process))
        self._emitter.emit(
            EventType.CHANNEL,
            connection_id=self._id,
            kind="shell",
            term_type=self._profile.terminal_type,
        )
        return process

    async def execute(self, command: str, timeout: float = 30.0) -> str:
        """
        Run a command and return its stdout.

        Output is streamed to listeners as it arrives. A non-zero exit is
        logged with its stderr rather than raised. On timeout the channel is
        closed and whatever stdout arrived is returned.
        """
        assert command, "command must be non-empty"
        assert timeout > 0, f"timeout must be positive, got {timeout}"
        conn = self._require_connected()
        encoding = self._profile.encoding

        chunks: list[bytes] = []
        with self._emitter.timed_event(
            EventType.EXEC, connection_id=self._id, command=command,
        ) as event_data:
            process = await conn.create_process(command, encoding=None)
            entry = ("exec", process)
            self._channels.append(entry)
            try:
                try:
                    stderr, exit_status = await asyncio.wait_for(
                        self._collect(process, chunks), timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Command on %s timed out after %.1fs: %s", self._id, timeout, command,
                    )
                    event_data["timed_out"] = True
                    stderr, exit_status = b"", None

                event_data["exit_code"] = exit_status
                if exit_status not in (0, None) and stderr:
                    logger.warning(
                        "Command on %s exited with %s: %s",
                        self._id, exit_status, stderr.decode(encoding, errors="replace").strip(),
                    )
            finally:
                process.close()
                if entry in self._channels:
                    self._channels.remove(entry)

            output = b"".join(chunks).decode(encoding, errors="replace")
            event_data["stdout_len"] = len(output)
        return output

    async def _collect(self, process: Any, chunks: list[bytes]) -> tuple[bytes, int | None]:
        stderr_task = asyncio.ensure_future(process.stderr.read())
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                chunks.append(chunk)
                with self._lock:
                    listeners = list(self._listeners)
                dispatch(listeners, "on_data_received", self._id, chunk)
            stderr = await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
        result = await process.wait(check=False)
        return stderr, result.exit_status

    async def open_file_transfer_channel(self) -> Any:
        """Start an SFTP client on the session."""
        conn = self._require_connected()
        sftp = await conn.start_sftp_client()
        self._channels.append(("sftp", sftp))
        self._emitter.emit(EventType.CHANNEL, connection_id=self._id, kind="sftp")
        return sftp

    # -----------------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Server/client versions, open channel count and state."""
        conn = self._conn
        return {
            "connection_id": self._id,
            "state": self.state.value,
            "server_version": conn.get_extra_info("server_version") if conn else None,
            "client_version": conn.get_extra_info("client_version") if conn else None,
            "channels": len(self._channels),
            "reconnect_attempts": self._reconnect_attempts,
            "last_error": self._last_error.kind.value if self._last_error else None,
        }
