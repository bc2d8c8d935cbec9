"""
Tunnel provisioning for proxied and jump-host connections.

Provides:
- TunnelPlan: where the transport should connect and how
- TunnelHandle: owns a jump-host session and its local forward
- TunnelProvisioner: turns a profile's proxy setting into a TunnelPlan

HTTP and SOCKS proxies are reached through a relay command (nc by default)
run as the asyncssh proxy command. A jump host gets its own SSH session,
host key check and authentication, and a local forward to the real target.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sshtab.errors import ErrorContext, JumpHostFailure
from sshtab.events import EventType
from sshtab.profile import (
    ConnectionProfile,
    HttpProxy,
    JumpHost,
    ProxyKind,
    Socks4Proxy,
    Socks5Proxy,
)
from sshtab.session_options import SessionOptions

if TYPE_CHECKING:
    import asyncssh
    from sshtab.auth import Authenticator
    from sshtab.events import EventEmitter
    from sshtab.host_key import HostKeyGate
    from sshtab.transport import Transport

logger = logging.getLogger(__name__)

LOCAL_FORWARD_HOST = "127.0.0.1"

_RELAY_PROTOCOLS: dict[ProxyKind, str] = {
    ProxyKind.HTTP: "connect",
    ProxyKind.SOCKS4: "4",
    ProxyKind.SOCKS5: "5",
}


class TunnelHandle:
    """
    A live jump-host session with a local forward to the target.

    close() is idempotent and waits for the listener and the session to
    shut down.
    """

    def __init__(
        self,
        jump_conn: "asyncssh.SSHClientConnection",
        listener: "asyncssh.SSHListener",
        jump_host: JumpHost,
    ) -> None:
        self._jump_conn = jump_conn
        self._listener = listener
        self._jump_host = jump_host
        self._local_port = listener.get_port()
        self._closed = False

    @property
    def local_port(self) -> int:
        return self._local_port

    @property
    def jump_host(self) -> JumpHost:
        return self._jump_host

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        """Stop the forward and close the jump session."""
        if self._closed:
            return
        self._closed = True

        self._listener.close()
        await self._listener.wait_closed()
        self._jump_conn.close()
        await self._jump_conn.wait_closed()
        logger.debug("Closed tunnel through %s:%d", self._jump_host.host, self._jump_host.port)


@dataclass
class TunnelPlan:
    """
    Transport endpoint after tunnel provisioning.

    host/port are what the transport dials; proxy_command, when set, is the
    relay argv asyncssh spawns instead of opening a socket.
    """
    host: str
    port: int
    proxy_command: list[str] | None = None
    handle: TunnelHandle | None = None
    kind: ProxyKind | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "kind": self.kind.value if self.kind else "DIRECT",
        }
        if self.proxy_command:
            result["proxy_command"] = " ".join(self.proxy_command)
        if self.handle is not None:
            result["local_port"] = self.handle.local_port
        return result


def build_relay_command(
    relay_command: str,
    proxy: HttpProxy | Socks4Proxy | Socks5Proxy,
    target_host: str,
    target_port: int,
) -> list[str]:
    """
    Build the relay argv for an HTTP or SOCKS proxy.

    The argv is passed to asyncssh as a list, so no shell is involved.
    """
    argv = [
        relay_command,
        "-X", _RELAY_PROTOCOLS[proxy.kind],
        "-x", f"{proxy.host}:{proxy.port}",
    ]
    if proxy.username:
        argv.extend(["-P", proxy.username])
    argv.extend([target_host, str(target_port)])
    return argv


class TunnelProvisioner:
    """
    Prepares the path to a profile's host.

    Usage:
        provisioner = TunnelProvisioner(transport, authenticator, gate)
        plan = await provisioner.provision(profile)
        try:
            ...connect to plan.host, plan.port...
        finally:
            if plan.handle:
                await plan.handle.close()
    """

    def __init__(
        self,
        transport: "Transport",
        authenticator: "Authenticator",
        gate: "HostKeyGate",
        relay_command: str = "nc",
        emitter: "EventEmitter | None" = None,
    ) -> None:
        assert relay_command, "relay_command must be non-empty"
        self._transport = transport
        self._authenticator = authenticator
        self._gate = gate
        self._relay_command = relay_command
        self._emitter = emitter

    async def provision(self, profile: ConnectionProfile) -> TunnelPlan:
        """
        Build the TunnelPlan for a profile.

        Raises:
            JumpHostFailure: If the jump-host session or forward could not be
                established; the partial session is torn down first
        """
        proxy = profile.proxy

        if proxy is None:
            plan = TunnelPlan(profile.host, profile.port)
        elif isinstance(proxy, JumpHost):
            handle = await self._open_jump(profile, proxy)
            plan = TunnelPlan(
                LOCAL_FORWARD_HOST, handle.local_port, handle=handle, kind=proxy.kind,
            )
        else:
            plan = TunnelPlan(
                profile.host,
                profile.port,
                proxy_command=build_relay_command(
                    self._relay_command, proxy, profile.host, profile.port,
                ),
                kind=proxy.kind,
            )

        if self._emitter is not None and plan.kind is not None:
            self._emitter.emit(EventType.TUNNEL, status="established", **plan.to_dict())
        return plan

    async def _open_jump(self, profile: ConnectionProfile, jump: JumpHost) -> TunnelHandle:
        ctx = ErrorContext(
            host=jump.host,
            port=jump.port,
            username=jump.username or profile.username,
            extra={"target": profile.target},
        )
        jump_conn = None
        try:
            auth_plan = self._authenticator.prepare_jump(profile, jump)
            options = SessionOptions.from_profile(profile).to_asyncssh_options()
            options.update(auth_plan.to_asyncssh_options())

            host_key = await self._transport.fetch_host_key(
                jump.host,
                jump.port,
                timeout=profile.connect_timeout,
                kex_algs=options.get("kex_algs"),
            )
            await self._gate.check(jump.host, jump.port, host_key.public_data)

            jump_conn = await self._transport.connect(
                jump.host,
                jump.port,
                host_key=host_key,
                options=options,
                kbdint_password=auth_plan.kbdint_password,
            )
            listener = await jump_conn.forward_local_port(
                LOCAL_FORWARD_HOST, 0, profile.host, profile.port,
            )
        except Exception as e:
            if jump_conn is not None:
                jump_conn.close()
                await jump_conn.wait_closed()
            ctx.original_error = str(e)
            if self._emitter is not None:
                self._emitter.emit(
                    EventType.TUNNEL,
                    status="failed",
                    kind=jump.kind.value,
                    jump_host=jump.host,
                    jump_port=jump.port,
                    error_type=type(e).__name__,
                    message=str(e),
                )
            raise JumpHostFailure(
                f"Jump host {jump.host}:{jump.port} failed: {e}", context=ctx,
            ) from e

        handle = TunnelHandle(jump_conn, listener, jump)
        logger.info(
            "Tunnel to %s via %s:%d on local port %d",
            profile.target, jump.host, jump.port, handle.local_port,
        )
        return handle
