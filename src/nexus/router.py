"""
Nexus - Session router.

The router is the single object a user interface talks to. It owns the direct
session (ConnectionManager + MessageChannel), the relay client and the AI
assistant, keeps one message history per mode, and reports every message
that lands in a history through ``on_message(mode, message)``.

Direct mode appends outgoing messages locally before sending. Relay mode
never appends locally: the server's broadcast echo is the one copy that
enters the history, so every message appears exactly once and in server
order.
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .assistant import ChatAssistant
from .channel import MessageChannel
from .client import DISCONNECTED_EVENT, RelayClient
from .config import DEFAULT_CONFIG, Config
from .connection import ConnectionManager, PeerSession, Role
from .connection_fsm import ConnectionStatus
from .constants import (
    CONNECTED_NOTICE,
    CONNECTION_LOST_NOTICE,
    DIRECT_WELCOME_NOTICE,
    LOCAL_HISTORY_CAPACITY,
    NOT_CONNECTED_NOTICE,
    RELAY_DISCONNECTED_NOTICE,
    SENDER_ASSISTANT,
    SENDER_ME,
)
from .errors import AuthError, NetworkError, NexusError, NotConnectedError
from .message import Message, MessageHistory, MessageType
from .protocol import RelayEvent
from .transport import TransportFactory

logger = logging.getLogger(__name__)

LoginFlow = Callable[[], Awaitable[Optional[Tuple[str, str]]]]


class ChatMode(str, Enum):
    """Which transport carries outgoing messages."""

    DIRECT = "direct"
    RELAY = "relay"


class SessionRouter:
    """Unified chat API over the direct session and the relay."""

    def __init__(
        self,
        config: Optional[Config] = None,
        login_flow: Optional[LoginFlow] = None,
        assistant: Optional[ChatAssistant] = None,
        connection_manager: Optional[ConnectionManager] = None,
        relay_client: Optional[RelayClient] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """
        Initialize router.

        Args:
            config: Configuration (defaults apply when omitted)
            login_flow: Async callable returning ``(username, password)``,
                or None when the user cancels
            assistant: AI assistant (built from the ``assistant`` section when omitted)
            connection_manager: Direct session manager (built from ``direct`` when omitted)
            relay_client: Relay client (built from ``relay`` when omitted)
            transport_factory: Transport factory for the default connection manager
        """
        self.config = config
        self.login_flow = login_flow

        self.connection_manager = connection_manager or ConnectionManager(
            stun_servers=self._setting("direct", "stun_servers"),
            transport_factory=transport_factory,
            gathering_timeout=self._setting("direct", "gathering_timeout"),
        )
        self.channel = MessageChannel(self.connection_manager)
        self.relay_client = relay_client or RelayClient(
            self._setting("relay", "connect_host"), self._setting("relay", "port")
        )
        self.assistant = assistant or ChatAssistant(
            api_key=self._setting("assistant", "api_key"),
            model=self._setting("assistant", "model"),
        )

        self.mode = ChatMode.DIRECT
        self.histories: Dict[ChatMode, MessageHistory] = {
            ChatMode.DIRECT: MessageHistory(LOCAL_HISTORY_CAPACITY),
            ChatMode.RELAY: MessageHistory(LOCAL_HISTORY_CAPACITY),
        }
        self.username: Optional[str] = None

        # Room pushes that arrive while a login is in flight
        self._deferred_relay: Optional[List[Message]] = None

        # Callbacks
        self.on_message: Optional[Callable[[ChatMode, Message], None]] = None
        self.on_status_change: Optional[Callable[[ConnectionStatus], None]] = None

        self.channel.on_receive(self._handle_peer_message)
        self.connection_manager.on_connected = self._handle_connected
        self.connection_manager.on_connection_lost = self._handle_connection_lost
        self.connection_manager.on_status_change = self._handle_status_change

        self.relay_client.on(RelayEvent.NEW_MESSAGE, self._handle_relay_message)
        self.relay_client.on(RelayEvent.SYSTEM_MESSAGE, self._handle_relay_notice)
        self.relay_client.on(RelayEvent.SIGNED_OUT, self._handle_relay_signed_out)
        self.relay_client.on(DISCONNECTED_EVENT, self._handle_relay_disconnected)

        self.histories[ChatMode.DIRECT].append(Message.system(DIRECT_WELCOME_NOTICE))

    def _setting(self, section: str, key: str) -> Any:
        default = DEFAULT_CONFIG[section][key]
        if self.config is None:
            return default
        return self.config.get(section, key, default)

    # Views

    @property
    def direct_history(self) -> MessageHistory:
        return self.histories[ChatMode.DIRECT]

    @property
    def relay_history(self) -> MessageHistory:
        return self.histories[ChatMode.RELAY]

    @property
    def messages(self) -> List[Message]:
        """History of the active mode, oldest first."""
        return self.histories[self.mode].snapshot()

    @property
    def status(self) -> ConnectionStatus:
        return self.connection_manager.status

    # Mode

    async def switch_mode(self, mode: Union[ChatMode, str]) -> bool:
        """
        Make ``mode`` the active mode.

        Entering relay mode while not logged in runs the login flow first.

        Returns:
            True if switched, False if the user cancelled the login

        Raises:
            AuthError: If connecting or logging in failed; the mode is unchanged
        """
        mode = ChatMode(mode)
        if mode is ChatMode.RELAY and not self.relay_client.logged_in:
            if not await self._relay_login():
                return False

        if mode is not self.mode:
            logger.info(f"Switched to {mode.value} mode")
        self.mode = mode
        return True

    async def _relay_login(self) -> bool:
        if self.login_flow is None:
            raise AuthError(message="No login flow available")

        credentials = await self.login_flow()
        if credentials is None:
            logger.info("Relay login cancelled")
            return False
        username, password = credentials

        if not self.relay_client.connected and not await self.relay_client.connect():
            raise AuthError(
                message="Could not reach the relay server",
                details={"host": self.relay_client.host, "port": self.relay_client.port},
            )

        self._deferred_relay = []
        try:
            response = await self.relay_client.login(username, password)
        except AuthError:
            await self.relay_client.disconnect()
            raise
        except NetworkError as e:
            await self.relay_client.disconnect()
            raise AuthError(message=f"Login failed: {e.message}") from e
        finally:
            deferred, self._deferred_relay = self._deferred_relay, None

        self.username = username
        for data in response.get("history", []):
            try:
                message = Message.from_wire(data)
            except NetworkError as e:
                logger.warning(f"Skipping invalid history entry: {e.message}")
                continue
            self._append(ChatMode.RELAY, message)

        # The snapshot comes first; pushes received meanwhile follow it
        for message in deferred:
            self._append(ChatMode.RELAY, message)
        return True

    # Messaging

    async def send(self, text: str) -> bool:
        """
        Send text in the active mode.

        Returns:
            True if handed to the transport. On failure a SYSTEM notice is
            added to the active history and False is returned.
        """
        if not text or not text.strip():
            return False

        if self.mode is ChatMode.DIRECT:
            message = Message(sender_id=SENDER_ME, content=text)
            self._append(ChatMode.DIRECT, message)
            try:
                self.channel.send(message)
            except NotConnectedError:
                self._append(ChatMode.DIRECT, Message.system(NOT_CONNECTED_NOTICE))
                return False
            except NetworkError as e:
                logger.warning(f"Direct send failed: {e.message}")
                self._append(ChatMode.DIRECT, Message.system(f"Message not sent: {e.message}"))
                return False
            return True

        if not self.relay_client.logged_in:
            self._append(ChatMode.RELAY, Message.system(RELAY_DISCONNECTED_NOTICE))
            return False

        message = Message(sender_id=self.username, content=text, sender_name=self.username)
        try:
            await self.relay_client.send_message(message)
        except NexusError as e:
            logger.warning(f"Relay send failed: {e.message}")
            if not self.relay_client.logged_in:
                self.username = None
            self._append(ChatMode.RELAY, Message.system(f"Message not delivered: {e.message}"))
            return False
        return True

    async def ask_assistant(self, prompt: str) -> Message:
        """Ask the AI assistant about the active conversation; the reply is kept locally."""
        reply = await self.assistant.analyze(self.messages, prompt)
        message = Message(sender_id=SENDER_ASSISTANT, content=reply, type=MessageType.AI)
        self._append(self.mode, message)
        return message

    # Direct session intents

    async def start_direct_session(self, role: Union[Role, str]) -> PeerSession:
        return await self.connection_manager.begin_session(role)

    async def create_connection_code(self) -> str:
        return await self.connection_manager.produce_local_envelope()

    async def submit_connection_code(self, code: str) -> None:
        await self.connection_manager.accept_remote_envelope(code)

    async def end_direct_session(self) -> None:
        await self.connection_manager.teardown()

    async def lookup_friend(self, friend_code: str) -> Dict[str, Any]:
        return await self.relay_client.lookup_friend(friend_code)

    async def close(self) -> None:
        """Release the direct session and the relay connection."""
        await self.connection_manager.teardown()
        await self.relay_client.disconnect()
        self.username = None

    # Event handlers

    def _append(self, mode: ChatMode, message: Message) -> None:
        if not self.histories[mode].append(message):
            return
        if self.on_message:
            try:
                self.on_message(mode, message)
            except Exception as e:
                logger.error(f"Message callback error: {e}", exc_info=True)

    def _handle_peer_message(self, message: Message) -> None:
        self._append(ChatMode.DIRECT, message)

    def _handle_connected(self) -> None:
        self._append(ChatMode.DIRECT, Message.system(CONNECTED_NOTICE))

    def _handle_connection_lost(self, reason: str) -> None:
        logger.info(f"Direct session lost: {reason}")
        self._append(ChatMode.DIRECT, Message.system(CONNECTION_LOST_NOTICE))

    def _handle_status_change(self, status: ConnectionStatus) -> None:
        if self.on_status_change:
            try:
                self.on_status_change(status)
            except Exception as e:
                logger.error(f"Status callback error: {e}", exc_info=True)

    def _handle_relay_message(self, data: Dict[str, Any]) -> None:
        try:
            message = Message.from_wire(data)
        except NetworkError as e:
            logger.warning(f"Dropping invalid relay message: {e.message}")
            return
        if message.is_system():
            logger.warning("Dropping SYSTEM message pushed as new_message")
            return
        self._append_relay(message)

    def _handle_relay_notice(self, data: Dict[str, Any]) -> None:
        content = data.get("content")
        if isinstance(content, str) and content:
            self._append_relay(Message.system(content))

    def _append_relay(self, message: Message) -> None:
        if self._deferred_relay is not None:
            self._deferred_relay.append(message)
        else:
            self._append(ChatMode.RELAY, message)

    def _handle_relay_disconnected(self, data: Dict[str, Any]) -> None:
        self.username = None
        self._append(ChatMode.RELAY, Message.system(RELAY_DISCONNECTED_NOTICE))

    def _handle_relay_signed_out(self, data: Dict[str, Any]) -> None:
        # Still connected; the next switch to relay mode logs in again
        self.username = None
        self._append(ChatMode.RELAY, Message.system(data.get("reason") or RELAY_DISCONNECTED_NOTICE))
