"""
Nexus - Message channel over an open direct session.

Frames on the data channel are single JSON message envelopes. The channel
never forwards SYSTEM notices in either direction: those are local to each
peer's history.
"""

import json
import logging
from typing import Callable, List

from .connection import ConnectionManager
from .constants import SENDER_PEER
from .errors import NetworkError, NotConnectedError, ProtocolMisuseError
from .message import Message

logger = logging.getLogger(__name__)


class MessageChannel:
    """Typed send/receive on top of a ConnectionManager's data channel."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self._receivers: List[Callable[[Message], None]] = []
        manager.on_raw_message = self._handle_raw

    def send(self, message: Message) -> None:
        """
        Serialize and send one message.

        Raises:
            ProtocolMisuseError: For SYSTEM messages
            NotConnectedError: If the channel is not open
        """
        if message.is_system():
            raise ProtocolMisuseError(message="SYSTEM messages are never sent to a peer")
        if not self.manager.is_channel_open:
            raise NotConnectedError()
        self.manager.send_raw(json.dumps(message.to_wire()))

    def on_receive(self, callback: Callable[[Message], None]) -> None:
        """Register a callback invoked once per valid inbound message."""
        self._receivers.append(callback)

    def _handle_raw(self, data: str) -> None:
        try:
            message = Message.from_wire(json.loads(data))
        except ValueError as e:
            logger.warning(f"Dropping non-JSON frame from peer: {e}")
            return
        except NetworkError as e:
            logger.warning(f"Dropping invalid message from peer: {e.message}")
            return

        if message.is_system():
            logger.warning("Dropping SYSTEM message from peer")
            return

        message.sender_id = SENDER_PEER
        for callback in list(self._receivers):
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Message receiver error: {e}", exc_info=True)
