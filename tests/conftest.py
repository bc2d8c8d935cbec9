"""
Pytest fixtures for sshtab tests.

Provides:
- FakeTransport / FakeConnection / FakeProcess: scripted stand-ins for the
  asyncssh seam, used by controller, tunnel and manager unit tests
- host key, trust store, credential and event fixtures
- mock_ssh_server: a real in-process SSH server (MockSSHServer)
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Callable, Generator

import asyncssh
import pytest

from sshtab.auth import Authenticator
from sshtab.events import EventCollector, EventEmitter
from sshtab.profile import ConnectionProfile
from sshtab.stores import MemoryCredentialStore
from sshtab.testing.mock_server import MockServerConfig, MockSSHServer
from sshtab.trust import JsonFileTrustPersistence, TrustStore


# ---------------------------------------------------------------------------
# Fake asyncssh seam
# ---------------------------------------------------------------------------

class FakeStream:
    """Reader returning scripted chunks, then EOF (or blocking forever)."""

    def __init__(self, chunks: list[bytes] | None = None, block: bool = False) -> None:
        self._chunks = list(chunks or [])
        self._block = block

    async def read(self, n: int = -1) -> bytes:
        if n == -1:
            data = b"".join(self._chunks)
            self._chunks.clear()
            if not data and self._block:
                await asyncio.Event().wait()
            return data
        if self._chunks:
            return self._chunks.pop(0)
        if self._block:
            await asyncio.Event().wait()
        return b""


class FakeProcess:
    def __init__(
        self,
        stdout: list[bytes] | None = None,
        stderr: bytes = b"",
        exit_status: int = 0,
        block: bool = False,
    ) -> None:
        self.stdout = FakeStream(stdout, block=block)
        self.stderr = FakeStream([stderr] if stderr else [], block=block)
        self.exit_status = exit_status
        self.closed = False

    async def wait(self, check: bool = False) -> SimpleNamespace:
        return SimpleNamespace(exit_status=self.exit_status)

    def close(self) -> None:
        self.closed = True


class FakeListener:
    def __init__(self, port: int = 40022) -> None:
        self._port = port
        self.closed = False

    def get_port(self) -> int:
        return self._port

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeSFTP:
    def __init__(self) -> None:
        self.exited = False

    def exit(self) -> None:
        self.exited = True


class FakeConnection:
    """Stand-in for asyncssh.SSHClientConnection."""

    def __init__(
        self,
        host: str,
        port: int,
        options: dict[str, Any],
        on_connection_lost: Callable[[Exception | None], None] | None,
    ) -> None:
        self.host = host
        self.port = port
        self.options = options
        self.on_connection_lost = on_connection_lost
        self.closed = False
        self.processes: list[FakeProcess] = []
        self.forwards: list[tuple[str, int, str, int]] = []
        self.next_process: FakeProcess | None = None
        self.forward_error: Exception | None = None
        self.listener = FakeListener()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.on_connection_lost is not None:
            self.on_connection_lost(None)

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return {
            "server_version": "SSH-2.0-FakeServer",
            "client_version": "SSH-2.0-AsyncSSH_2.14",
        }.get(name, default)

    async def create_process(self, command: str | None = None, **kwargs: Any) -> FakeProcess:
        process = self.next_process or FakeProcess()
        self.next_process = None
        process.command = command
        process.kwargs = kwargs
        self.processes.append(process)
        return process

    async def start_sftp_client(self) -> FakeSFTP:
        return FakeSFTP()

    async def forward_local_port(
        self, listen_host: str, listen_port: int, dest_host: str, dest_port: int,
    ) -> FakeListener:
        if self.forward_error is not None:
            raise self.forward_error
        self.forwards.append((listen_host, listen_port, dest_host, dest_port))
        return self.listener

    def drop(self, exc: Exception | None = None) -> None:
        """Simulate the server dropping the session."""
        self.closed = True
        if self.on_connection_lost is not None:
            self.on_connection_lost(exc or ConnectionResetError("reset by peer"))


class FakeTransport:
    """
    Scripted Transport.

    fetch_errors / connect_errors are consumed one per call; a None entry
    (or an exhausted list) means that call succeeds. Setting
    always_refuse makes every fetch raise ConnectionRefusedError.
    """

    def __init__(self, host_keys: dict[tuple[str, int], asyncssh.SSHKey] | None = None,
                 default_key: asyncssh.SSHKey | None = None) -> None:
        self.host_keys = dict(host_keys or {})
        self.default_key = default_key or asyncssh.generate_private_key("ssh-ed25519")
        self.fetch_errors: list[BaseException | None] = []
        self.connect_errors: list[BaseException | None] = []
        self.always_refuse = False
        self.fetch_calls: list[dict[str, Any]] = []
        self.connect_calls: list[dict[str, Any]] = []
        self.connections: list[FakeConnection] = []
        self.fetch_delay = 0.0

    def key_for(self, host: str, port: int) -> asyncssh.SSHKey:
        return self.host_keys.get((host, port), self.default_key)

    async def fetch_host_key(
        self,
        host: str,
        port: int,
        *,
        timeout: float,
        proxy_command: Any = None,
        kex_algs: Any = None,
    ) -> asyncssh.SSHKey:
        self.fetch_calls.append({
            "host": host, "port": port, "timeout": timeout,
            "proxy_command": proxy_command, "kex_algs": kex_algs,
        })
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.always_refuse:
            raise ConnectionRefusedError(111, "Connection refused")
        if self.fetch_errors:
            error = self.fetch_errors.pop(0)
            if error is not None:
                raise error
        return self.key_for(host, port)

    async def connect(
        self,
        host: str,
        port: int,
        *,
        host_key: asyncssh.SSHKey,
        options: dict[str, Any],
        kbdint_password: str | None = None,
        on_connection_lost: Callable[[Exception | None], None] | None = None,
    ) -> FakeConnection:
        self.connect_calls.append({
            "host": host, "port": port, "host_key": host_key,
            "options": options, "kbdint_password": kbdint_password,
        })
        if self.connect_errors:
            error = self.connect_errors.pop(0)
            if error is not None:
                raise error
        conn = FakeConnection(host, port, options, on_connection_lost)
        self.connections.append(conn)
        return conn


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def host_key() -> asyncssh.SSHKey:
    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture
def fake_transport(host_key: asyncssh.SSHKey) -> FakeTransport:
    return FakeTransport(default_key=host_key)


@pytest.fixture
def trust_store() -> TrustStore:
    return TrustStore()


@pytest.fixture
def trust_path(tmp_path: Path) -> Path:
    return tmp_path / "trusted_hosts.json"


@pytest.fixture
def file_trust_store(trust_path: Path) -> TrustStore:
    return TrustStore(JsonFileTrustPersistence(trust_path))


@pytest.fixture
def credentials() -> MemoryCredentialStore:
    store = MemoryCredentialStore()
    store.set_password("p1", "secret")
    return store


@pytest.fixture
def authenticator(credentials: MemoryCredentialStore) -> Authenticator:
    return Authenticator(credentials)


@pytest.fixture
def profile() -> ConnectionProfile:
    return ConnectionProfile(id="p1", host="example.com", username="alice")


@pytest.fixture
def event_collector() -> Generator[EventCollector, None, None]:
    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def emitter(event_collector: EventCollector) -> EventEmitter:
    return EventEmitter(collector=event_collector)


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator[MockSSHServer, None]:
    """A MockSSHServer accepting test/test."""
    async with MockSSHServer(MockServerConfig(username="test", password="test")) as server:
        yield server
