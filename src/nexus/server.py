"""
Nexus - Relay server for the shared chat room.

This module implements the authenticated relay: clients connect over TCP,
log in with a username and password, and exchange messages in a single room
whose last messages are kept in a bounded history. Every state change (login,
broadcast, disconnect) runs under one asyncio lock; outbound frames are
queued per connection and written by that connection's own send task, so a
slow client never stalls the room.
"""

import asyncio
import contextlib
import logging
import platform
import signal
import sys
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULT_CONFIG, Config
from .constants import READ_CHUNK_SIZE, ROOM_NAME
from .crypto import constant_time_equals, generate_friend_code, generate_message_id
from .errors import (
    AuthError,
    ConfigError,
    ErrorCode,
    NetworkError,
    NexusError,
    RelayError,
)
from .message import Message, MessageType, now_ms
from .protocol import FrameType, Protocol, RelayEvent
from .rate_limiter import RateLimiter
from .store import InMemoryRelayStore, RelayStore, User
from .utils import configure_logging, validate_username

logger = logging.getLogger(__name__)

REBOUND_NOTICE = "You have signed in from another connection."


class RelayConnection:
    """One client connection and its outbound frame queue."""

    def __init__(
        self,
        connection_id: int,
        writer: Optional[asyncio.StreamWriter] = None,
        queue_size: int = 0,
        address: Any = None,
    ):
        """
        Initialize connection.

        Args:
            connection_id: Server-assigned id
            writer: Stream to write frames to; without one, frames stay queued
            queue_size: Maximum queued frames (0 for unbounded)
            address: Peer address, for logging
        """
        self.connection_id = connection_id
        self.writer = writer
        self.address = address
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.username: Optional[str] = None
        self.closed = False
        self.send_task: Optional[asyncio.Task] = None

    @property
    def logged_in(self) -> bool:
        return self.username is not None

    def start(self) -> None:
        """Start draining the queue to the writer."""
        self.send_task = asyncio.create_task(self._send_loop())

    def enqueue(self, frame: bytes) -> bool:
        """
        Queue one encoded frame.

        Returns:
            False if the connection is closed or its queue overflowed. An
            overflowing connection is closed.
        """
        if self.closed:
            return False
        try:
            self.queue.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            logger.warning(f"Send queue full for connection {self.connection_id}, closing")
            self.abort()
            return False

    async def _send_loop(self) -> None:
        try:
            while not self.closed:
                frame = await self.queue.get()
                self.writer.write(frame)
                await self.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Write failed for connection {self.connection_id}: {e}")
            self.closed = True
            self.writer.close()

    def abort(self) -> None:
        """Close immediately, dropping queued frames."""
        if self.closed:
            return
        self.closed = True
        if self.send_task is not None and not self.send_task.done():
            self.send_task.cancel()
        if self.writer is not None:
            self.writer.close()

    async def close(self) -> None:
        self.abort()
        if self.send_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self.send_task
        if self.writer is not None:
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing writer: {e}")

    def __repr__(self) -> str:
        return f"RelayConnection(id={self.connection_id}, user={self.username!r})"


class RelayServer:
    """Authenticated relay for the shared room."""

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[RelayStore] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize server.

        Args:
            config: Configuration (defaults apply when omitted)
            store: Room state (default: in-memory)
            host: Listen address overriding ``relay.host``
            port: Listen port overriding ``relay.port``; 0 picks a free port
            rate_limiter: Per-connection limiter overriding the ``limits`` section
        """
        self.config = config
        self.host = host if host is not None else self._setting("relay", "host")
        self.port = port if port is not None else self._setting("relay", "port")
        self.send_queue_size = self._setting("relay", "send_queue_size")
        self.max_frame_size = self._setting("limits", "max_message_size")

        self.store = store or InMemoryRelayStore(self._setting("limits", "history_capacity"))
        self.rate_limiter = rate_limiter or RateLimiter(
            self._setting("limits", "rate_limit_per_minute"),
            self._setting("limits", "rate_limit_burst"),
        )

        self.running = False
        self.server: Optional[asyncio.Server] = None
        self.connections: Dict[int, RelayConnection] = {}
        self.lock = asyncio.Lock()
        self._next_connection_id = 1
        self._last_timestamp = 0

    def _setting(self, section: str, key: str) -> Any:
        default = DEFAULT_CONFIG[section][key]
        if self.config is None:
            return default
        return self.config.get(section, key, default)

    # Lifecycle

    async def start(self) -> bool:
        """
        Start listening.

        Returns:
            True if the server started, False on error
        """
        try:
            self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
        except OSError as e:
            logger.error(f"Failed to start relay on {self.host}:{self.port}: {e}")
            return False

        self.port = self.server.sockets[0].getsockname()[1]
        self.running = True
        logger.info(f"Relay server for room '{ROOM_NAME}' listening on {self.host}:{self.port}")
        return True

    async def stop(self) -> None:
        """Stop accepting clients and close every connection."""
        logger.info("Stopping relay server...")
        self.running = False

        if self.server is not None:
            self.server.close()

        for conn in list(self.connections.values()):
            await conn.close()

        if self.server is not None:
            await self.server.wait_closed()
            self.server = None

        logger.info("Relay server stopped")

    async def run(self) -> None:
        """Block until the server is stopped."""
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.stop()

    # Room operations

    async def login(self, conn: RelayConnection, username: Any, password: Any) -> Dict[str, Any]:
        """
        Authenticate a connection and join it to the room.

        Unknown usernames are registered on the spot. A known username with
        the right password is rebound to this connection; the previous
        connection is told and leaves the room.

        Returns:
            ``{success, username, friendCode, history}`` or ``{success: False, error}``
        """
        async with self.lock:
            response, notice = self._login_locked(conn, username, password)
            if notice:
                self._announce(notice)
        return response

    async def broadcast(self, conn: RelayConnection, payload: Any) -> Dict[str, Any]:
        """
        Stamp, store and fan out one message from a logged-in connection.

        Returns:
            ``{success, id, timestamp}`` or ``{success: False, error, code}``
        """
        async with self.lock:
            try:
                message = self._broadcast_locked(conn, payload)
            except NexusError as e:
                logger.debug(f"Rejected message from {conn}: {e}")
                return Protocol.error_response(e.message, code=e.code.value)
        return {"success": True, "id": message.message_id, "timestamp": message.timestamp}

    async def disconnect(self, conn: RelayConnection) -> None:
        """Forget a connection; its user goes offline only if still bound to it."""
        async with self.lock:
            self._release_binding(conn)
            self.connections.pop(conn.connection_id, None)
            self.rate_limiter.remove(conn.connection_id)

    async def lookup_friend(self, conn: RelayConnection, friend_code: Any) -> Dict[str, Any]:
        """Resolve a friend code to a username and presence."""
        if not conn.logged_in:
            return Protocol.error_response("Not logged in", code=ErrorCode.E402_NOT_LOGGED_IN.value)
        if not isinstance(friend_code, str) or not friend_code.strip():
            return Protocol.error_response(
                "Friend code is required", code=ErrorCode.E002_INVALID_ARGUMENT.value
            )

        username = self.store.username_for_friend_code(friend_code.strip().upper())
        user = self.store.get_user(username) if username else None
        if user is None:
            return Protocol.error_response(
                "Unknown friend code", code=ErrorCode.E400_RELAY_ERROR.value
            )
        return {"success": True, "username": user.username, "online": user.online}

    def members(self) -> List[RelayConnection]:
        """Connections currently in the room."""
        return [
            conn
            for conn in self.connections.values()
            if conn.logged_in and not conn.closed
        ]

    # Locked helpers

    def _login_locked(
        self, conn: RelayConnection, username: Any, password: Any
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        if not validate_username(username) or not isinstance(password, str) or not password:
            return (
                Protocol.error_response(
                    "Username and password are required",
                    code=ErrorCode.E002_INVALID_ARGUMENT.value,
                ),
                None,
            )

        user = self.store.get_user(username)
        if user is None:
            user = User(username=username, password=password, friend_code=self._new_friend_code())
            self.store.add_user(user)
            notice = f"Welcome new user {username} to the server!"
            logger.info(f"Registered relay user {username} ({user.friend_code})")
        elif constant_time_equals(user.password, password):
            notice = f"{username} has joined the server."
        else:
            logger.warning(f"Failed login for {username} on connection {conn.connection_id}")
            error = AuthError()
            return Protocol.error_response(error.message, code=error.code.value), None

        self._release_binding(conn)

        stale = user.connection
        if stale is not None and stale is not conn:
            stale.username = None
            stale.enqueue(Protocol.create_event(RelayEvent.SIGNED_OUT, {"reason": REBOUND_NOTICE}))
            logger.info(f"{username} rebound from connection {stale.connection_id}")

        user.online = True
        user.connection = conn
        conn.username = username
        logger.info(f"{username} logged in on connection {conn.connection_id}")

        response = {
            "success": True,
            "username": username,
            "friendCode": user.friend_code,
            "history": [message.to_wire() for message in self.store.history()],
        }
        return response, notice

    def _broadcast_locked(self, conn: RelayConnection, payload: Any) -> Message:
        if not conn.logged_in:
            raise RelayError(ErrorCode.E402_NOT_LOGGED_IN, "Not logged in")
        if not isinstance(payload, dict):
            raise NetworkError(ErrorCode.E206_INVALID_MESSAGE, "Message payload must be an object")
        if not self.rate_limiter.check_message(conn.connection_id):
            raise NetworkError(ErrorCode.E208_RATE_LIMIT_EXCEEDED, "Rate limit exceeded")

        data = dict(payload)
        data.pop("timestamp", None)
        data["senderId"] = conn.username
        data["senderName"] = conn.username
        if not data.get("id"):
            data["id"] = generate_message_id()
        data.setdefault("type", MessageType.TEXT.value)

        message = Message.from_wire(data, require_timestamp=False)
        if message.is_system():
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE, "SYSTEM messages cannot be sent by clients"
            )
        if self.store.has_message(message.message_id):
            raise RelayError(
                ErrorCode.E403_DUPLICATE_MESSAGE,
                "Duplicate message id",
                {"id": message.message_id},
            )

        message.timestamp = self._next_timestamp()
        self.store.append_message(message)

        frame = Protocol.create_event(RelayEvent.NEW_MESSAGE, message.to_wire())
        for member in self.members():
            member.enqueue(frame)
        return message

    def _release_binding(self, conn: RelayConnection) -> None:
        if conn.username is None:
            return
        user = self.store.get_user(conn.username)
        if user is not None and user.connection is conn:
            user.online = False
            user.connection = None
            logger.info(f"{user.username} is now offline")
        conn.username = None

    def _announce(self, content: str) -> None:
        """Send a SYSTEM notice to the room. Notices are not kept in history."""
        frame = Protocol.create_event(RelayEvent.SYSTEM_MESSAGE, {"content": content})
        for member in self.members():
            member.enqueue(frame)

    def _new_friend_code(self) -> str:
        code = generate_friend_code()
        while self.store.friend_code_exists(code):
            code = generate_friend_code()
        return code

    def _next_timestamp(self) -> int:
        # History order is receipt order, so timestamps never go backwards
        timestamp = max(now_ms(), self._last_timestamp)
        self._last_timestamp = timestamp
        return timestamp

    # Connection handling

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve one client until it disconnects or violates the framing."""
        address = writer.get_extra_info("peername")
        connection_id = self._next_connection_id
        self._next_connection_id += 1

        conn = RelayConnection(connection_id, writer, self.send_queue_size, address)
        self.connections[connection_id] = conn
        conn.start()
        logger.debug(f"Connection {connection_id} from {address}")

        buffer = b""
        try:
            while self.running and not conn.closed:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    break

                buffer += data
                lines, buffer = Protocol.split_frames(buffer, self.max_frame_size)
                for line in lines:
                    await self._handle_frame(conn, line)
        except NetworkError as e:
            logger.warning(f"Closing connection {connection_id}: {e.message}")
        except (ConnectionError, OSError) as e:
            logger.debug(f"Connection {connection_id} dropped: {e}")
        except Exception as e:
            logger.error(f"Error handling connection {connection_id}: {e}", exc_info=True)
        finally:
            await self.disconnect(conn)
            await conn.close()
            logger.debug(f"Connection {connection_id} closed")

    async def _handle_frame(self, conn: RelayConnection, line: bytes) -> None:
        try:
            frame = Protocol.decode_frame(line)
        except NetworkError as e:
            logger.warning(f"Invalid frame from connection {conn.connection_id}: {e.message}")
            self._reply(conn, None, Protocol.error_response(e.message, code=e.code.value))
            return

        if frame["type"] != FrameType.REQUEST:
            logger.warning(f"Ignoring {frame['type']} frame from connection {conn.connection_id}")
            return

        request_id = frame.get("id")
        event = frame.get("event")
        data = frame["data"]

        if event == RelayEvent.LOGIN:
            # The response must precede the join notice on this connection
            async with self.lock:
                response, notice = self._login_locked(conn, data.get("username"), data.get("password"))
                self._reply(conn, request_id, response)
                if notice:
                    self._announce(notice)
            return

        if event == RelayEvent.SERVER_MESSAGE:
            response = await self.broadcast(conn, data)
        elif event == RelayEvent.LOOKUP_FRIEND:
            response = await self.lookup_friend(conn, data.get("friendCode"))
        elif event == RelayEvent.PING:
            response = {"success": True, "message": "pong"}
        else:
            response = Protocol.error_response(
                f"Unknown event: {event}", code=ErrorCode.E206_INVALID_MESSAGE.value
            )

        self._reply(conn, request_id, response)

    def _reply(self, conn: RelayConnection, request_id: Any, response: Dict[str, Any]) -> None:
        conn.enqueue(Protocol.create_response(request_id, response))


def _install_signal_handlers(server: RelayServer) -> None:
    def handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        server.running = False

    signal.signal(signal.SIGINT, handler)
    if platform.system() == "Windows":
        signal.signal(signal.SIGBREAK, handler)
    else:
        signal.signal(signal.SIGTERM, handler)


async def async_main():
    """Async main entry point for the relay server."""
    import argparse

    parser = argparse.ArgumentParser(description="Nexus Relay - authenticated chat room server")
    parser.add_argument("--host", type=str, default=None, help="Listen address")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: 3001)")
    parser.add_argument("--config", type=str, default=None, help="Path to config.toml")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args()

    try:
        config = Config(args.config)
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config, level=args.log_level)

    server = RelayServer(config=config, host=args.host, port=args.port)
    if not await server.start():
        sys.exit(1)

    _install_signal_handlers(server)
    await server.run()


def main():
    """Main entry point - runs async_main."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
