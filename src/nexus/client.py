"""
Nexus - Relay client.

Async client for the relay server. Requests are correlated with responses by
id, so several may be in flight at once; room pushes (``new_message``,
``system_message``) are dispatched to callbacks registered with ``on``.
"""

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from .constants import (
    CLIENT_CONNECT_TIMEOUT,
    CLIENT_REQUEST_TIMEOUT,
    DEFAULT_RELAY_PORT,
    LOCALHOST,
    READ_CHUNK_SIZE,
)
from .errors import (
    AuthError,
    ConnectionFailureError,
    ErrorCode,
    NetworkError,
    NotConnectedError,
    RelayError,
)
from .message import Message
from .protocol import FrameType, Protocol, RelayEvent

logger = logging.getLogger(__name__)

DISCONNECTED_EVENT = "disconnected"


class RelayClient:
    """Async client for the Nexus relay."""

    def __init__(self, host: str = LOCALHOST, port: int = DEFAULT_RELAY_PORT):
        """
        Initialize client.

        Args:
            host: Relay host (default: 127.0.0.1)
            port: Relay port (default: 3001)
        """
        self.host = host
        self.port = port
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False

        # Receive task
        self.receive_task: Optional[asyncio.Task] = None
        self.buffer = b""

        # Event callbacks
        self.event_callbacks: Dict[str, List[Callable]] = {}

        # In-flight requests by id
        self.pending: Dict[int, asyncio.Future] = {}
        self._next_request_id = 1

        # Session
        self.username: Optional[str] = None
        self.friend_code: Optional[str] = None

    @property
    def logged_in(self) -> bool:
        return self.connected and self.username is not None

    async def connect(self) -> bool:
        """Connect to the relay."""
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=CLIENT_CONNECT_TIMEOUT
            )
        except asyncio.TimeoutError:
            logger.error(f"Connection to relay {self.host}:{self.port} timed out")
            return False
        except OSError as e:
            logger.error(f"Connection to relay failed: {e}")
            return False

        self.connected = True
        self.buffer = b""
        self.receive_task = asyncio.create_task(self._receive_loop())
        logger.info(f"Connected to relay at {self.host}:{self.port}")
        return True

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        self.connected = False
        self.username = None

        if self.receive_task and not self.receive_task.done():
            self.receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.receive_task
        self.receive_task = None

        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing writer: {e}")
            self.writer = None

        self.reader = None
        self._fail_pending("Disconnected from relay")

    async def _receive_loop(self) -> None:
        """Background task for receiving frames."""
        logger.debug("Receive loop started")

        try:
            while self.connected:
                data = await self.reader.read(READ_CHUNK_SIZE)
                if not data:
                    logger.warning("Relay closed connection")
                    break

                self.buffer += data
                lines, self.buffer = Protocol.split_frames(self.buffer)
                for line in lines:
                    try:
                        frame = Protocol.decode_frame(line)
                    except NetworkError as e:
                        logger.warning(f"Invalid frame from relay: {e.message}")
                        continue
                    await self._handle_frame(frame)
        except NetworkError as e:
            logger.error(f"Relay stream error: {e.message}")
        except (ConnectionError, OSError) as e:
            logger.warning(f"Relay connection lost: {e}")
        finally:
            was_connected = self.connected
            self.connected = False
            self.username = None
            self._fail_pending("Connection to relay lost")
            logger.debug("Receive loop ended")
            if was_connected:
                await self._dispatch(DISCONNECTED_EVENT, {})

    async def _handle_frame(self, frame: Dict[str, Any]) -> None:
        frame_type = frame["type"]

        if frame_type == FrameType.RESPONSE:
            future = self.pending.pop(frame.get("id"), None)
            if future is None:
                logger.debug(f"Unmatched response id {frame.get('id')!r}")
            elif not future.done():
                future.set_result(frame["data"])
        elif frame_type == FrameType.EVENT:
            event_name = frame.get("event")
            if event_name == RelayEvent.SIGNED_OUT:
                logger.info(f"Relay signed out {self.username}: {frame['data'].get('reason')}")
                self._clear_login()
            await self._dispatch(event_name, frame["data"])
        else:
            logger.warning(f"Unexpected {frame_type} frame from relay")

    async def _dispatch(self, event_name: Optional[str], data: Dict[str, Any]) -> None:
        for callback in list(self.event_callbacks.get(event_name, [])):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {event_name} callback: {e}", exc_info=True)

    def _clear_login(self) -> None:
        self.username = None
        self.friend_code = None

    def _fail_pending(self, reason: str) -> None:
        for future in self.pending.values():
            if not future.done():
                future.set_exception(
                    ConnectionFailureError(ErrorCode.E203_CONNECTION_CLOSED, reason)
                )
        self.pending.clear()

    async def request(
        self,
        event: str,
        data: Optional[Dict[str, Any]] = None,
        timeout: float = CLIENT_REQUEST_TIMEOUT,
    ) -> Dict[str, Any]:
        """
        Send a request and wait for its response payload.

        Raises:
            NotConnectedError: If not connected
            NetworkError: If sending fails or no response arrives in time
            ConnectionFailureError: If the connection drops while waiting
        """
        if not self.connected or self.writer is None:
            raise NotConnectedError(message="Not connected to relay")

        request_id = self._next_request_id
        self._next_request_id += 1
        future = asyncio.get_running_loop().create_future()
        self.pending[request_id] = future

        try:
            self.writer.write(Protocol.create_request(request_id, event, data))
            await self.writer.drain()
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Request timeout for event: {event}")
            raise NetworkError(ErrorCode.E202_CONNECTION_TIMEOUT, "Request timeout") from None
        except (ConnectionError, OSError) as e:
            raise NetworkError(ErrorCode.E205_SEND_FAILED, f"Send failed: {e}") from e
        finally:
            self.pending.pop(request_id, None)

    def on(self, event_name: str, callback: Callable):
        """
        Register callback for event.

        Args:
            event_name: Name of event to listen for
            callback: Function (or coroutine function) called with the payload
        """
        self.event_callbacks.setdefault(event_name, []).append(callback)

    def off(self, event_name: str, callback: Callable):
        """Unregister callback for event."""
        if event_name in self.event_callbacks:
            with contextlib.suppress(ValueError):
                self.event_callbacks[event_name].remove(callback)

    # Relay operations

    async def ping(self) -> bool:
        """Ping the relay to check connectivity."""
        response = await self.request(RelayEvent.PING)
        return response.get("success", False)

    async def login(self, username: str, password: str) -> Dict[str, Any]:
        """
        Log in (registering on first use) and join the room.

        Returns:
            Response with ``friendCode`` and the room ``history`` as wire dicts

        Raises:
            AuthError: If the relay refused the credentials
        """
        response = await self.request(
            RelayEvent.LOGIN, {"username": username, "password": password}
        )
        if not response.get("success"):
            raise AuthError(
                message=response.get("error") or "Login failed",
                details={"username": username, "code": response.get("code")},
            )

        self.username = username
        self.friend_code = response.get("friendCode")
        logger.info(f"Logged in to relay as {username}")
        return response

    async def send_message(self, message: Message) -> Dict[str, Any]:
        """
        Submit a message to the room. The server stamps the timestamp.

        Raises:
            RelayError: If the relay rejected the message
        """
        response = await self.request(
            RelayEvent.SERVER_MESSAGE, message.to_wire(include_timestamp=False)
        )
        if not response.get("success"):
            if response.get("code") == ErrorCode.E402_NOT_LOGGED_IN.value:
                self._clear_login()
            raise RelayError(
                message=response.get("error") or "Message rejected",
                details={"id": message.message_id, "code": response.get("code")},
            )
        return response

    async def lookup_friend(self, friend_code: str) -> Dict[str, Any]:
        """Resolve a friend code to ``{username, online}``."""
        response = await self.request(RelayEvent.LOOKUP_FRIEND, {"friendCode": friend_code})
        if not response.get("success"):
            raise RelayError(
                message=response.get("error") or "Lookup failed",
                details={"friendCode": friend_code, "code": response.get("code")},
            )
        return response
