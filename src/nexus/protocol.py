"""
Nexus - Relay wire protocol definitions.

The relay speaks newline-delimited JSON over TCP. Every frame is one JSON
object on one line, in one of three shapes:

- request:  {"type": "request", "id": n, "event": name, "data": {...}}
- response: {"type": "response", "id": n, "data": {...}}
- push:     {"type": "event", "event": name, "data": {...}}

Responses echo the request id. Pushes are unsolicited room traffic, plus
``signed_out``, which tells a connection that its user logged in elsewhere.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from .constants import MAX_FRAME_SIZE
from .errors import ErrorCode, NetworkError


class RelayEvent:
    """Event names used on the relay."""

    LOGIN = "login"
    SERVER_MESSAGE = "server_message"
    NEW_MESSAGE = "new_message"
    SYSTEM_MESSAGE = "system_message"
    LOOKUP_FRIEND = "lookup_friend"
    SIGNED_OUT = "signed_out"
    PING = "ping"

    REQUESTS = (LOGIN, SERVER_MESSAGE, LOOKUP_FRIEND, PING)
    PUSHES = (NEW_MESSAGE, SYSTEM_MESSAGE, SIGNED_OUT)


class FrameType:
    """Frame discriminators."""

    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"


class Protocol:
    """Relay frame codec."""

    MAX_FRAME_SIZE = MAX_FRAME_SIZE

    @staticmethod
    def encode_frame(frame: Dict[str, Any]) -> bytes:
        """
        Serialize one frame including its trailing newline.

        Raises:
            NetworkError: If the frame exceeds the maximum size
        """
        data = json.dumps(frame, separators=(",", ":")).encode("utf-8")
        if len(data) > Protocol.MAX_FRAME_SIZE:
            raise NetworkError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Frame too large: {len(data)} bytes",
                {"size": len(data), "max_size": Protocol.MAX_FRAME_SIZE},
            )
        return data + b"\n"

    @staticmethod
    def split_frames(buffer: bytes, max_size: Optional[int] = None) -> Tuple[List[bytes], bytes]:
        """
        Split complete lines off a receive buffer.

        Args:
            buffer: Bytes received so far
            max_size: Largest acceptable frame (default: MAX_FRAME_SIZE)

        Returns:
            Complete non-empty lines, and the unconsumed remainder

        Raises:
            NetworkError: If a frame is larger than ``max_size``
        """
        max_size = max_size or Protocol.MAX_FRAME_SIZE
        lines = []
        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            if len(line) > max_size:
                raise NetworkError(
                    ErrorCode.E207_MESSAGE_TOO_LARGE,
                    f"Frame too large: {len(line)} bytes",
                    {"size": len(line), "max_size": max_size},
                )
            if line.strip():
                lines.append(line)

        if len(buffer) > max_size:
            raise NetworkError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                "Frame exceeds maximum size without terminator",
                {"size": len(buffer), "max_size": max_size},
            )
        return lines, buffer

    @staticmethod
    def decode_frame(line: bytes) -> Dict[str, Any]:
        """
        Parse one frame.

        Raises:
            NetworkError: If the line is not a JSON object with a known type
        """
        try:
            frame = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE, f"Failed to parse frame: {e}", {"error": str(e)}
            ) from None

        if not isinstance(frame, dict):
            raise NetworkError(ErrorCode.E206_INVALID_MESSAGE, "Frame must be a JSON object")

        frame_type = frame.get("type")
        if frame_type not in (FrameType.REQUEST, FrameType.RESPONSE, FrameType.EVENT):
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unknown frame type: {frame_type!r}",
                {"type": frame_type},
            )

        data = frame.get("data", {})
        if not isinstance(data, dict):
            raise NetworkError(ErrorCode.E206_INVALID_MESSAGE, "Frame data must be an object")
        frame["data"] = data
        return frame

    @staticmethod
    def create_request(request_id: int, event: str, data: Optional[Dict[str, Any]] = None) -> bytes:
        """Create a request frame."""
        return Protocol.encode_frame(
            {"type": FrameType.REQUEST, "id": request_id, "event": event, "data": data or {}}
        )

    @staticmethod
    def create_response(request_id: Any, data: Dict[str, Any]) -> bytes:
        """Create a response frame for the given request id."""
        return Protocol.encode_frame({"type": FrameType.RESPONSE, "id": request_id, "data": data})

    @staticmethod
    def create_event(event: str, data: Dict[str, Any]) -> bytes:
        """Create an unsolicited push frame."""
        return Protocol.encode_frame({"type": FrameType.EVENT, "event": event, "data": data})

    @staticmethod
    def error_response(error: str, **extra: Any) -> Dict[str, Any]:
        """Standard failed response payload."""
        return {"success": False, "error": error, **extra}
