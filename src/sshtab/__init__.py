"""sshtab: SSH connection engine for a tabbed terminal client."""

__version__ = "0.1.0"

from sshtab.auth import Authenticator, AuthPlan, import_client_key
from sshtab.config import EngineSettings, SSHConfigImporter, parse_jump_spec
from sshtab.controller import ConnectionController, ConnectionState, ReconnectPolicy
from sshtab.diagnostics import (
    ErrorInfo,
    ErrorKind,
    classify,
    is_auth_failure_message,
    should_reconnect,
)
from sshtab.errors import (
    AuthenticationError,
    DisconnectReason,
    ErrorContext,
    HostKeyRejected,
    HostUnreachable,
    IllegalState,
    JumpHostFailure,
    KeyLoadError,
    NoCredential,
    SSHConnectionError,
    SSHError,
)
from sshtab.events import (
    Event,
    EventCollector,
    EventEmitter,
    EventSink,
    EventType,
    JSONLEventWriter,
    StreamEventWriter,
)
from sshtab.host_key import (
    CallbackResolver,
    DecisionRequest,
    HostKeyChangedInfo,
    HostKeyDecision,
    HostKeyGate,
    HostKeyResolver,
    NewHostKeyInfo,
    StaticResolver,
)
from sshtab.listeners import ConnectionListener, SessionManagerListener
from sshtab.manager import SessionManager, SessionStats, make_controller_factory
from sshtab.profile import (
    AuthType,
    ConnectionProfile,
    HttpProxy,
    Identity,
    JumpHost,
    KnockSpec,
    ProxyKind,
    Socks4Proxy,
    Socks5Proxy,
)
from sshtab.session_options import SessionOptions
from sshtab.stores import (
    CredentialStore,
    IdentityStore,
    MemoryCredentialStore,
    MemoryIdentityStore,
    NoopPreConnectHook,
    PreConnectHook,
    PrivateKeyMaterial,
)
from sshtab.transport import Transport
from sshtab.trust import (
    JsonFileTrustPersistence,
    MemoryTrustPersistence,
    TrustedHostKey,
    TrustLevel,
    TrustPersistence,
    TrustStore,
    VerificationOutcome,
    fingerprint_of,
    import_known_hosts,
)
from sshtab.tunnel import TunnelHandle, TunnelPlan, TunnelProvisioner
from sshtab.validation import (
    validate_hostname,
    validate_port,
    validate_username,
)

__all__ = [
    # Profiles
    "AuthType",
    "ConnectionProfile",
    "Identity",
    "KnockSpec",
    "ProxyKind",
    "HttpProxy",
    "Socks4Proxy",
    "Socks5Proxy",
    "JumpHost",
    # Controller and manager
    "ConnectionController",
    "ConnectionState",
    "ReconnectPolicy",
    "SessionManager",
    "SessionStats",
    "make_controller_factory",
    "ConnectionListener",
    "SessionManagerListener",
    # Config
    "EngineSettings",
    "SSHConfigImporter",
    "SessionOptions",
    "parse_jump_spec",
    # Auth
    "Authenticator",
    "AuthPlan",
    "import_client_key",
    "CredentialStore",
    "MemoryCredentialStore",
    "IdentityStore",
    "MemoryIdentityStore",
    "PrivateKeyMaterial",
    "PreConnectHook",
    "NoopPreConnectHook",
    # Trust
    "TrustStore",
    "TrustedHostKey",
    "TrustLevel",
    "TrustPersistence",
    "MemoryTrustPersistence",
    "JsonFileTrustPersistence",
    "VerificationOutcome",
    "fingerprint_of",
    "import_known_hosts",
    # Host key decisions
    "HostKeyDecision",
    "HostKeyGate",
    "HostKeyResolver",
    "CallbackResolver",
    "StaticResolver",
    "DecisionRequest",
    "NewHostKeyInfo",
    "HostKeyChangedInfo",
    # Transport and tunnels
    "Transport",
    "TunnelProvisioner",
    "TunnelPlan",
    "TunnelHandle",
    # Diagnostics
    "ErrorInfo",
    "ErrorKind",
    "classify",
    "is_auth_failure_message",
    "should_reconnect",
    # Errors
    "SSHError",
    "SSHConnectionError",
    "HostUnreachable",
    "AuthenticationError",
    "NoCredential",
    "KeyLoadError",
    "HostKeyRejected",
    "JumpHostFailure",
    "IllegalState",
    "ErrorContext",
    "DisconnectReason",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventSink",
    "EventType",
    "JSONLEventWriter",
    "StreamEventWriter",
    # Validation
    "validate_hostname",
    "validate_port",
    "validate_username",
]
