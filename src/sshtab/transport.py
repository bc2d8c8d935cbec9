"""
asyncssh seam used by the controller and the tunnel provisioner.

Provides:
- Transport: fetch a server's host key, then connect with that key pinned
- EngineSSHClient: asyncssh client callbacks (pinned-key enforcement,
  keyboard-interactive answers, connection-loss notification)

asyncssh validates host keys synchronously during the handshake, while
the decision protocol waits asynchronously. Connecting therefore happens in
two steps: the host key is fetched and run through the gate first, and the
real connection trusts only that key. A server presenting any other key
during the second step fails with HostKeyNotVerifiable.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Sequence

import asyncssh

from sshtab.errors import ErrorContext, HostUnreachable

logger = logging.getLogger(__name__)


class EngineSSHClient(asyncssh.SSHClient):
    """
    Client callbacks for an engine connection.

    Keys outside the pinned set are refused. Keyboard-interactive
    challenges are answered with the plan's password.
    """

    def __init__(
        self,
        kbdint_password: str | None = None,
        on_connection_lost: Callable[[Exception | None], None] | None = None,
    ) -> None:
        super().__init__()
        self._kbdint_password = kbdint_password
        self._on_connection_lost = on_connection_lost
        self.unexpected_key: asyncssh.SSHKey | None = None

    def validate_host_public_key(
        self,
        host: str,
        addr: tuple[str, int],
        port: int,
        key: asyncssh.SSHKey,
    ) -> bool:
        """Reached only for keys that are not pinned."""
        self.unexpected_key = key
        logger.warning("Server %s:%d presented a key that was not approved", host, port)
        return False

    def kbdint_auth_requested(self) -> str | None:
        if self._kbdint_password is None:
            return None
        return ""

    def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: list[tuple[str, bool]],
    ) -> list[str] | None:
        if self._kbdint_password is None:
            return None
        return [self._kbdint_password] * len(prompts)

    def connection_lost(self, exc: Exception | None) -> None:
        if self._on_connection_lost is not None:
            self._on_connection_lost(exc)


class Transport:
    """
    Opens asyncssh connections on behalf of the engine.

    Tests substitute a fake with the same two coroutines.
    """

    async def fetch_host_key(
        self,
        host: str,
        port: int,
        *,
        timeout: float,
        proxy_command: Sequence[str] | None = None,
        kex_algs: Sequence[str] | None = None,
    ) -> asyncssh.SSHKey:
        """
        Retrieve the host key the server presents.

        Raises:
            HostUnreachable: If the server presented no key
            asyncio.TimeoutError: If the handshake did not finish in time
        """
        kwargs: dict[str, Any] = {}
        if proxy_command:
            kwargs["proxy_command"] = list(proxy_command)
        if kex_algs:
            kwargs["kex_algs"] = list(kex_algs)

        key = await asyncio.wait_for(
            asyncssh.get_server_host_key(host, port, config=None, **kwargs),
            timeout=timeout,
        )
        if key is None:
            raise HostUnreachable(
                f"{host}:{port} did not present a host key",
                context=ErrorContext(host=host, port=port),
            )
        return key

    async def connect(
        self,
        host: str,
        port: int,
        *,
        host_key: asyncssh.SSHKey,
        options: dict[str, Any],
        kbdint_password: str | None = None,
        on_connection_lost: Callable[[Exception | None], None] | None = None,
    ) -> asyncssh.SSHClientConnection:
        """Connect trusting only host_key."""

        def client_factory() -> EngineSSHClient:
            return EngineSSHClient(kbdint_password, on_connection_lost)

        return await asyncssh.connect(
            host,
            port,
            known_hosts=([host_key], [], []),
            client_factory=client_factory,
            config=None,
            **options,
        )
