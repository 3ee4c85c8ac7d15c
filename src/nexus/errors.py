"""
Nexus - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
Nexus. Each error has a unique code for logging and debugging.

Every error defined here is recoverable at the component boundary that raises
it; none of them should terminate the process.

Author: Nexus contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Nexus error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"

    # Network Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E203_CONNECTION_CLOSED = "E203"
    E204_NOT_CONNECTED = "E204"
    E205_SEND_FAILED = "E205"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"
    E208_RATE_LIMIT_EXCEEDED = "E208"

    # Signaling Errors (E300-E399)
    E300_SIGNALING_ERROR = "E300"
    E301_MALFORMED_CODE = "E301"
    E302_PROTOCOL_MISUSE = "E302"

    # Relay Errors (E400-E499)
    E400_RELAY_ERROR = "E400"
    E401_AUTH_FAILED = "E401"
    E402_NOT_LOGGED_IN = "E402"
    E403_DUPLICATE_MESSAGE = "E403"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class NexusError(Exception):
    """Base exception class for all Nexus errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a Nexus error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class NetworkError(NexusError):
    """Exception raised for transport and wire-format failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConnectionFailureError(NetworkError):
    """The direct session failed, timed out or was closed underneath the caller.

    The session is unusable afterwards; recovery means beginning a new one.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E201_CONNECTION_FAILED,
        message: str = "Connection failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NotConnectedError(NetworkError):
    """A send was attempted on a channel that is not open."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E204_NOT_CONNECTED,
        message: str = "Channel is not open",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SignalingError(NexusError):
    """Exception raised for out-of-band handshake failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_SIGNALING_ERROR,
        message: str = "Signaling failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MalformedCodeError(SignalingError):
    """A pasted connection code could not be decoded.

    Callers treat this as a normal negative result: no state changes and the
    user is asked for the code again.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E301_MALFORMED_CODE,
        message: str = "Invalid connection code",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolMisuseError(SignalingError):
    """An operation was applied in the wrong role or negotiation stage."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E302_PROTOCOL_MISUSE,
        message: str = "Operation not valid in the current session stage",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RelayError(NexusError):
    """Exception raised for relay room failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_RELAY_ERROR,
        message: str = "Relay operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthError(RelayError):
    """Login was refused by the relay server."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E401_AUTH_FAILED,
        message: str = "Invalid password",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(NexusError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
