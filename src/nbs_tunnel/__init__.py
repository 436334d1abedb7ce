"""nbs-tunnel: SSH tunnels and port forwarding over jump host chains."""

__version__ = "0.1.0"

from nbs_tunnel.auth import (
    AgentAuth,
    AuthConfig,
    PasswordAuth,
    PrivateKeyAuth,
    auth_to_options,
    load_private_key,
)
from nbs_tunnel.chain import ChainTransport, JumpHostChainConnector
from nbs_tunnel.errors import (
    AgentError,
    AuthenticationError,
    AuthFailed,
    BindError,
    ChainConnectionError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyMismatch,
    HostUnreachable,
    KeyLoadError,
    SessionLifecycleError,
    SessionNotReady,
    SocksProtocolError,
    SSHConnectionError,
    TunnelError,
)
from nbs_tunnel.events import (
    Event,
    EventCollector,
    EventEmitter,
    EventType,
    ForwardingEvent,
    ForwardingEventKind,
)
from nbs_tunnel.forwarding import (
    BoundForward,
    DynamicForwardEngine,
    LocalForwardEngine,
    RemoteForwardEngine,
)
from nbs_tunnel.hosts import HostDescriptor, JumpHostConfig
from nbs_tunnel.records import (
    ForwardConfig,
    ForwardingRecord,
    ForwardOrigin,
    ForwardStatus,
    ForwardType,
)
from nbs_tunnel.registry import ForwardingRegistry
from nbs_tunnel.scanner import ListeningPort, PortScanner
from nbs_tunnel.session import (
    CommandResult,
    InboundConnection,
    SessionState,
    SshSession,
    SshSessionFactory,
)
from nbs_tunnel.settings import TunnelSettings
from nbs_tunnel.splice import ConnectionTracker, splice
from nbs_tunnel.store import JsonRecordStore, MemoryRecordStore, RecordStore

__all__ = [
    # Version
    "__version__",
    # Auth
    "AgentAuth",
    "AuthConfig",
    "PasswordAuth",
    "PrivateKeyAuth",
    "auth_to_options",
    "load_private_key",
    # Hosts
    "HostDescriptor",
    "JumpHostConfig",
    # Sessions
    "ChainTransport",
    "CommandResult",
    "InboundConnection",
    "JumpHostChainConnector",
    "SessionState",
    "SshSession",
    "SshSessionFactory",
    # Forwarding
    "BoundForward",
    "ConnectionTracker",
    "DynamicForwardEngine",
    "ForwardConfig",
    "ForwardingRecord",
    "ForwardingRegistry",
    "ForwardOrigin",
    "ForwardStatus",
    "ForwardType",
    "LocalForwardEngine",
    "RemoteForwardEngine",
    "splice",
    # Persistence
    "JsonRecordStore",
    "MemoryRecordStore",
    "RecordStore",
    # Scanning
    "ListeningPort",
    "PortScanner",
    # Settings
    "TunnelSettings",
    # Errors
    "AgentError",
    "AuthenticationError",
    "AuthFailed",
    "BindError",
    "ChainConnectionError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "ErrorContext",
    "HostKeyMismatch",
    "HostUnreachable",
    "KeyLoadError",
    "SessionLifecycleError",
    "SessionNotReady",
    "SocksProtocolError",
    "SSHConnectionError",
    "TunnelError",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    "ForwardingEvent",
    "ForwardingEventKind",
]
