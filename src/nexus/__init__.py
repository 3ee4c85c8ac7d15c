"""
Nexus - Peer-to-peer and relay chat

Two ways to talk: a direct peer session negotiated by exchanging
copy-pasteable connection codes, and an authenticated relay room with a
bounded shared history and friend codes.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .connection import ConnectionManager, PeerSession, Role
from .connection_fsm import ConnectionStatus, SessionState
from .constants import APP_NAME, VERSION
from .errors import (
    AuthError,
    ConfigError,
    ConnectionFailureError,
    ErrorCode,
    MalformedCodeError,
    NetworkError,
    NexusError,
    NotConnectedError,
    ProtocolMisuseError,
    RelayError,
    SignalingError,
)
from .message import Message, MessageHistory, MessageType
from .router import ChatMode, SessionRouter
from .server import RelayServer
from .signaling import EnvelopeKind, SessionDescription, SignalingCodec, SignalingEnvelope

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthError",
    "ChatMode",
    "Config",
    "ConfigError",
    "ConnectionFailureError",
    "ConnectionManager",
    "ConnectionStatus",
    "EnvelopeKind",
    "ErrorCode",
    "MalformedCodeError",
    "Message",
    "MessageHistory",
    "MessageType",
    "NetworkError",
    "NexusError",
    "NotConnectedError",
    "PeerSession",
    "ProtocolMisuseError",
    "RelayError",
    "RelayServer",
    "Role",
    "SessionDescription",
    "SessionRouter",
    "SessionState",
    "SignalingCodec",
    "SignalingEnvelope",
    "SignalingError",
    "__license__",
    "__version__",
]
