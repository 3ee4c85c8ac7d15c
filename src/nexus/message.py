"""
Nexus - Message model and history storage.

Both transports exchange the same JSON envelope::

    {"id": str, "senderId": str, "senderName": str?, "content": str,
     "timestamp": int, "type": "TEXT" | "SYSTEM" | "AI"}

Inbound payloads are validated into a ``Message`` at the boundary where they
arrive; anything that does not match the shape is rejected with a
``NetworkError`` (E206) instead of being trusted.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Iterator, List, Optional, Set

from .constants import MAX_TEXT_MESSAGE_SIZE, SENDER_SYSTEM
from .crypto import generate_message_id
from .errors import ErrorCode, NetworkError

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Message variants carried on the wire."""

    TEXT = "TEXT"
    SYSTEM = "SYSTEM"
    AI = "AI"


def now_ms() -> int:
    """Current wall-clock time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class Message:
    """Represents a chat message in either transport."""

    sender_id: str
    content: str
    type: MessageType = MessageType.TEXT
    sender_name: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    message_id: str = field(default_factory=generate_message_id)

    @classmethod
    def system(cls, content: str) -> "Message":
        """Build a locally synthesized SYSTEM notice."""
        return cls(sender_id=SENDER_SYSTEM, content=content, type=MessageType.SYSTEM)

    def to_wire(self, include_timestamp: bool = True) -> Dict[str, Any]:
        """Convert message to its wire envelope."""
        data: Dict[str, Any] = {
            "id": self.message_id,
            "senderId": self.sender_id,
            "content": self.content,
            "type": self.type.value,
        }
        if include_timestamp:
            data["timestamp"] = self.timestamp
        if self.sender_name is not None:
            data["senderName"] = self.sender_name
        return data

    @classmethod
    def from_wire(cls, data: Any, require_timestamp: bool = True) -> "Message":
        """
        Validate a wire envelope into a Message.

        Args:
            data: Decoded JSON payload
            require_timestamp: Whether ``timestamp`` must be present. Relay
                submissions omit it because the server stamps its own.

        Returns:
            Validated message

        Raises:
            NetworkError: If the payload does not match the envelope shape
        """
        if not isinstance(data, dict):
            raise _invalid("Message payload must be an object", {"payload_type": type(data).__name__})

        message_id = data.get("id")
        sender_id = data.get("senderId")
        content = data.get("content")
        sender_name = data.get("senderName")
        timestamp = data.get("timestamp")
        raw_type = data.get("type")

        if not isinstance(message_id, str) or not message_id:
            raise _invalid("Missing or invalid field: id", {"field": "id"})
        if not isinstance(sender_id, str):
            raise _invalid("Missing or invalid field: senderId", {"field": "senderId"})
        if not isinstance(content, str):
            raise _invalid("Missing or invalid field: content", {"field": "content"})
        if sender_name is not None and not isinstance(sender_name, str):
            raise _invalid("Invalid field: senderName", {"field": "senderName"})

        # bool is an int subclass; reject it explicitly
        if timestamp is None:
            if require_timestamp:
                raise _invalid("Missing field: timestamp", {"field": "timestamp"})
            timestamp = now_ms()
        elif not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise _invalid("Invalid field: timestamp", {"field": "timestamp"})

        try:
            message_type = MessageType(raw_type)
        except ValueError:
            raise _invalid(f"Unknown message type: {raw_type!r}", {"field": "type"}) from None

        if len(content) > MAX_TEXT_MESSAGE_SIZE:
            raise NetworkError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Text message too large: {len(content)} > {MAX_TEXT_MESSAGE_SIZE}",
                {"size": len(content), "max_size": MAX_TEXT_MESSAGE_SIZE},
            )

        return cls(
            sender_id=sender_id,
            content=content,
            type=message_type,
            sender_name=sender_name,
            timestamp=timestamp,
            message_id=message_id,
        )

    def is_system(self) -> bool:
        """Check if this is a SYSTEM notice."""
        return self.type == MessageType.SYSTEM


def _invalid(message: str, details: Dict[str, Any]) -> NetworkError:
    return NetworkError(ErrorCode.E206_INVALID_MESSAGE, message, details)


class MessageHistory:
    """Ordered message history with unique ids and optional FIFO capacity.

    When ``capacity`` is set the history behaves as a ring buffer: appending
    beyond capacity evicts the oldest message first.
    """

    def __init__(self, capacity: Optional[int] = None):
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._messages: Deque[Message] = deque()
        self._ids: Set[str] = set()

    def append(self, message: Message) -> bool:
        """
        Append a message.

        Returns:
            False if a message with the same id is already present
        """
        if message.message_id in self._ids:
            logger.debug(f"Ignoring duplicate message id {message.message_id}")
            return False

        self._messages.append(message)
        self._ids.add(message.message_id)

        if self.capacity is not None:
            while len(self._messages) > self.capacity:
                evicted = self._messages.popleft()
                self._ids.discard(evicted.message_id)

        return True

    def contains(self, message_id: str) -> bool:
        return message_id in self._ids

    def snapshot(self) -> List[Message]:
        """Return a copy of the messages, oldest first."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))
