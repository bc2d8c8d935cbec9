"""
Testing utilities for sshtab.

Provides MockSSHServer for integration tests against a real SSH handshake.
"""
from sshtab.testing.mock_server import MockServerConfig, MockSSHServer, ServerRecord

__all__ = ["MockSSHServer", "MockServerConfig", "ServerRecord"]
