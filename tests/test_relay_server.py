"""
Nexus - Relay server tests.

Room operations are driven directly on writer-less RelayConnections whose
outbound frames stay queued; a final group exercises the real TCP path with
RelayClient.
"""

import asyncio

import pytest

from conftest import drain_frames, wait_until
from nexus.client import RelayClient
from nexus.constants import FRIEND_CODE_ALPHABET, ROOM_HISTORY_CAPACITY
from nexus.errors import AuthError, ErrorCode, RelayError
from nexus.message import Message
from nexus.protocol import Protocol, RelayEvent
from nexus.rate_limiter import RateLimiter
from nexus.server import REBOUND_NOTICE, RelayConnection, RelayServer


@pytest.fixture
def server():
    """Relay server with rate limiting disabled; never started."""
    return RelayServer(host="127.0.0.1", port=0, rate_limiter=RateLimiter(messages_per_minute=0))


def _attach(server: RelayServer, connection_id: int) -> RelayConnection:
    conn = RelayConnection(connection_id)
    server.connections[connection_id] = conn
    return conn


def _events(frames, event):
    return [f["data"] for f in frames if f["type"] == "event" and f["event"] == event]


def _notices(frames):
    return [data["content"] for data in _events(frames, RelayEvent.SYSTEM_MESSAGE)]


@pytest.mark.asyncio
class TestLogin:
    """Test registration and authentication."""

    async def test_first_login_registers(self, server):
        """Test that an unseen username is registered with a friend code."""
        conn = _attach(server, 1)

        response = await server.login(conn, "alice", "pw")

        assert response["success"] is True
        assert response["username"] == "alice"
        assert len(response["friendCode"]) == 6
        assert set(response["friendCode"]) <= set(FRIEND_CODE_ALPHABET)
        assert response["history"] == []
        assert conn.logged_in
        assert _notices(drain_frames(conn)) == ["Welcome new user alice to the server!"]

    async def test_returning_user_joins(self, server):
        """Test that the right password logs a known user in again."""
        first = _attach(server, 1)
        registered = await server.login(first, "alice", "pw")
        await server.disconnect(first)

        second = _attach(server, 2)
        response = await server.login(second, "alice", "pw")

        assert response["success"] is True
        assert response["friendCode"] == registered["friendCode"]
        assert _notices(drain_frames(second)) == ["alice has joined the server."]

    async def test_wrong_password(self, server):
        """Test that a wrong password fails without changing anything."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")
        drain_frames(alice)
        intruder = _attach(server, 2)

        response = await server.login(intruder, "alice", "wrong")

        assert response == {"success": False, "error": "Invalid password", "code": "E401"}
        assert not intruder.logged_in
        assert alice.logged_in
        assert server.store.get_user("alice").connection is alice
        assert drain_frames(alice) == []

    @pytest.mark.parametrize(
        "username,password",
        [("", "pw"), ("   ", "pw"), (" alice", "pw"), ("alice", ""), (None, "pw"), ("alice", 5)],
    )
    async def test_invalid_credentials(self, server, username, password):
        """Test that blank or malformed credentials are refused."""
        conn = _attach(server, 1)

        response = await server.login(conn, username, password)

        assert response["success"] is False
        assert response["code"] == ErrorCode.E002_INVALID_ARGUMENT.value
        assert server.store.users() == []

    async def test_friend_codes_are_unique(self, server):
        """Test that every registered user gets a distinct friend code."""
        codes = set()
        for i in range(50):
            response = await server.login(_attach(server, i), f"user{i}", "pw")
            codes.add(response["friendCode"])

        assert len(codes) == 50

    async def test_history_snapshot_on_login(self, server):
        """Test that login returns the room history oldest first."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")
        for i in range(3):
            await server.broadcast(alice, Message(sender_id="alice", content=str(i)).to_wire(False))

        bob = _attach(server, 2)
        response = await server.login(bob, "bob", "pw")

        assert [m["content"] for m in response["history"]] == ["0", "1", "2"]
        assert all(m["senderName"] == "alice" for m in response["history"])

    async def test_join_notice_reaches_room_but_not_history(self, server):
        """Test that SYSTEM notices are broadcast and never stored."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")
        drain_frames(alice)

        await server.login(_attach(server, 2), "bob", "pw")

        assert _notices(drain_frames(alice)) == ["Welcome new user bob to the server!"]
        assert server.store.history() == []


@pytest.mark.asyncio
class TestRebinding:
    """Test a second login of the same user."""

    async def test_second_login_rebinds(self, server):
        """Test that the newest connection owns the user and the old one leaves."""
        old = _attach(server, 1)
        await server.login(old, "alice", "pw")
        drain_frames(old)
        new = _attach(server, 2)

        await server.login(new, "alice", "pw")

        assert server.store.get_user("alice").connection is new
        assert not old.logged_in
        frames = drain_frames(old)
        assert _events(frames, RelayEvent.SIGNED_OUT) == [{"reason": REBOUND_NOTICE}]
        assert _notices(frames) == []
        assert server.members() == [new]

    async def test_stale_disconnect_keeps_user_online(self, server):
        """Test that the old connection closing does not take the user offline."""
        old = _attach(server, 1)
        await server.login(old, "alice", "pw")
        new = _attach(server, 2)
        await server.login(new, "alice", "pw")

        await server.disconnect(old)

        user = server.store.get_user("alice")
        assert user.online is True
        assert user.connection is new

    async def test_disconnect_goes_offline(self, server):
        """Test that the bound connection closing marks the user offline."""
        conn = _attach(server, 1)
        await server.login(conn, "alice", "pw")

        await server.disconnect(conn)

        assert server.store.get_user("alice").online is False
        assert 1 not in server.connections

    async def test_switching_user_on_one_connection(self, server):
        """Test that logging in as someone else releases the first user."""
        conn = _attach(server, 1)
        await server.login(conn, "alice", "pw")
        await server.login(conn, "bob", "pw")

        assert server.store.get_user("alice").online is False
        assert server.store.get_user("bob").connection is conn


@pytest.mark.asyncio
class TestBroadcast:
    """Test message submission and fan-out."""

    async def test_two_users_exchange_messages(self, server):
        """Test that both members get each message exactly once, including the sender."""
        alice = _attach(server, 1)
        bob = _attach(server, 2)
        await server.login(alice, "alice", "pw")
        await server.login(bob, "bob", "pw")
        drain_frames(alice)
        drain_frames(bob)

        hello = Message(sender_id="alice", content="hi bob")
        response = await server.broadcast(alice, hello.to_wire(include_timestamp=False))

        assert response["success"] is True
        assert response["id"] == hello.message_id
        for conn in (alice, bob):
            pushed = _events(drain_frames(conn), RelayEvent.NEW_MESSAGE)
            assert len(pushed) == 1
            assert pushed[0]["id"] == hello.message_id
            assert pushed[0]["content"] == "hi bob"
            assert pushed[0]["senderName"] == "alice"
            assert pushed[0]["timestamp"] == response["timestamp"]

    async def test_sender_identity_is_forced(self, server):
        """Test that clients cannot spoof sender fields or timestamps."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")

        await server.broadcast(
            alice,
            {"id": "m1", "senderId": "bob", "senderName": "bob", "content": "x", "timestamp": 1},
        )

        stored = server.store.history()[0]
        assert stored.sender_id == "alice"
        assert stored.sender_name == "alice"
        assert stored.timestamp > 1

    async def test_missing_id_is_assigned(self, server):
        """Test that the server fills in a missing message id."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")

        response = await server.broadcast(alice, {"content": "no id"})

        assert response["success"] is True
        assert response["id"]
        assert server.store.has_message(response["id"])

    async def test_history_keeps_last_hundred(self, server):
        """Test the ring buffer: 101 messages leave the last 100."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")
        for i in range(1, ROOM_HISTORY_CAPACITY + 2):
            response = await server.broadcast(alice, {"id": f"m{i}", "content": f"message {i}"})
            assert response["success"] is True

        history = server.store.history()
        assert len(history) == ROOM_HISTORY_CAPACITY
        assert history[0].message_id == "m2"
        assert history[-1].message_id == f"m{ROOM_HISTORY_CAPACITY + 1}"

        late = _attach(server, 2)
        snapshot = (await server.login(late, "bob", "pw"))["history"]
        assert [m["id"] for m in snapshot] == [f"m{i}" for i in range(2, ROOM_HISTORY_CAPACITY + 2)]

    async def test_default_server_accepts_full_history(self):
        """Test that a server built with defaults takes 101 messages in a row."""
        server = RelayServer()
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")

        for i in range(1, ROOM_HISTORY_CAPACITY + 2):
            response = await server.broadcast(alice, {"id": f"m{i}", "content": f"message {i}"})
            assert response["success"] is True

        assert [m.message_id for m in server.store.history()] == [
            f"m{i}" for i in range(2, ROOM_HISTORY_CAPACITY + 2)
        ]

    async def test_timestamps_never_decrease(self, server, monkeypatch):
        """Test that a clock going backwards does not reorder history."""
        clock = iter([5000, 4000, 6000])
        monkeypatch.setattr("nexus.server.now_ms", lambda: next(clock))
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")

        stamps = []
        for i in range(3):
            stamps.append((await server.broadcast(alice, {"id": f"m{i}", "content": "x"}))["timestamp"])

        assert stamps == [5000, 5000, 6000]

    async def test_not_logged_in(self, server):
        """Test that anonymous connections cannot post."""
        conn = _attach(server, 1)

        response = await server.broadcast(conn, {"content": "hello"})

        assert response["success"] is False
        assert response["code"] == ErrorCode.E402_NOT_LOGGED_IN.value
        assert server.store.history() == []

    async def test_system_messages_rejected(self, server):
        """Test that clients cannot inject SYSTEM messages."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")
        drain_frames(alice)

        response = await server.broadcast(alice, {"content": "fake notice", "type": "SYSTEM"})

        assert response["success"] is False
        assert response["code"] == ErrorCode.E206_INVALID_MESSAGE.value
        assert drain_frames(alice) == []

    async def test_duplicate_id_rejected(self, server):
        """Test that a resubmitted id is neither stored nor broadcast again."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")
        await server.broadcast(alice, {"id": "m1", "content": "once"})
        drain_frames(alice)

        response = await server.broadcast(alice, {"id": "m1", "content": "twice"})

        assert response["code"] == ErrorCode.E403_DUPLICATE_MESSAGE.value
        assert len(server.store.history()) == 1
        assert drain_frames(alice) == []

    @pytest.mark.parametrize("payload", [["list"], {"content": 5}, {"content": "x", "type": "VIDEO"}])
    async def test_invalid_payloads(self, server, payload):
        """Test that malformed submissions are refused."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")

        response = await server.broadcast(alice, payload)

        assert response["success"] is False
        assert response["code"] == ErrorCode.E206_INVALID_MESSAGE.value

    async def test_rate_limit(self):
        """Test that a flooding connection is refused after its burst."""
        server = RelayServer(rate_limiter=RateLimiter(messages_per_minute=60, burst=2))
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")

        results = [await server.broadcast(alice, {"content": str(i)}) for i in range(3)]

        assert [r["success"] for r in results] == [True, True, False]
        assert results[2]["code"] == ErrorCode.E208_RATE_LIMIT_EXCEEDED.value
        assert len(server.store.history()) == 2


@pytest.mark.asyncio
class TestFriendLookup:
    """Test friend code lookup."""

    async def test_lookup(self, server):
        """Test resolving a friend code to a username and presence."""
        alice = _attach(server, 1)
        code = (await server.login(alice, "alice", "pw"))["friendCode"]
        bob = _attach(server, 2)
        await server.login(bob, "bob", "pw")

        assert await server.lookup_friend(bob, code.lower()) == {
            "success": True,
            "username": "alice",
            "online": True,
        }

        await server.disconnect(alice)
        assert (await server.lookup_friend(bob, code))["online"] is False

    async def test_lookup_requires_login(self, server):
        """Test that anonymous connections cannot look up codes."""
        response = await server.lookup_friend(_attach(server, 1), "ABC123")

        assert response["code"] == ErrorCode.E402_NOT_LOGGED_IN.value

    async def test_unknown_code(self, server):
        """Test that an unknown code fails."""
        alice = _attach(server, 1)
        await server.login(alice, "alice", "pw")

        assert (await server.lookup_friend(alice, "ZZZZZZ"))["success"] is False


@pytest.mark.asyncio
class TestFrames:
    """Test request dispatch on decoded frames."""

    async def test_login_response_precedes_join_notice(self, server):
        """Test that a new member reads its login response before the notice."""
        conn = _attach(server, 1)
        line = Protocol.create_request(1, RelayEvent.LOGIN, {"username": "alice", "password": "pw"})

        await server._handle_frame(conn, line.rstrip(b"\n"))

        frames = drain_frames(conn)
        assert [f["type"] for f in frames] == ["response", "event"]
        assert frames[0]["id"] == 1

    async def test_unknown_event(self, server):
        """Test that unknown events are answered with an error."""
        conn = _attach(server, 1)

        await server._handle_frame(conn, Protocol.create_request(9, "dance").rstrip(b"\n"))

        frames = drain_frames(conn)
        assert frames[0]["id"] == 9
        assert frames[0]["data"]["code"] == ErrorCode.E206_INVALID_MESSAGE.value

    async def test_garbage_frame(self, server):
        """Test that an unparseable frame is answered and the connection kept."""
        conn = _attach(server, 1)

        await server._handle_frame(conn, b"{{{")

        frames = drain_frames(conn)
        assert frames[0]["data"]["success"] is False
        assert not conn.closed

    async def test_queue_overflow_closes_connection(self):
        """Test that a connection that cannot keep up is dropped."""
        conn = RelayConnection(1, queue_size=1)

        assert conn.enqueue(b"a\n") is True
        assert conn.enqueue(b"b\n") is False
        assert conn.closed


@pytest.mark.asyncio
class TestOverTcp:
    """Test the relay end to end with real sockets."""

    async def test_client_round_trip(self, server):
        """Test login, broadcast echo and lookup through RelayClient."""
        assert await server.start()
        alice = RelayClient("127.0.0.1", server.port)
        bob = RelayClient("127.0.0.1", server.port)
        try:
            assert await alice.connect()
            assert await bob.connect()
            assert await alice.ping()

            alice_seen = []
            bob_seen = []
            alice.on(RelayEvent.NEW_MESSAGE, alice_seen.append)
            bob.on(RelayEvent.NEW_MESSAGE, bob_seen.append)

            login = await alice.login("alice", "pw")
            await bob.login("bob", "pw")
            assert alice.friend_code == login["friendCode"]
            assert alice.logged_in

            await alice.send_message(Message(sender_id="alice", content="over tcp"))
            await wait_until(lambda: alice_seen and bob_seen)

            assert [m["content"] for m in alice_seen] == ["over tcp"]
            assert [m["content"] for m in bob_seen] == ["over tcp"]

            found = await bob.lookup_friend(login["friendCode"])
            assert found["username"] == "alice"
        finally:
            await alice.disconnect()
            await bob.disconnect()
            await server.stop()

    async def test_client_errors(self, server):
        """Test that refused logins and messages raise."""
        assert await server.start()
        client = RelayClient("127.0.0.1", server.port)
        try:
            assert await client.connect()
            with pytest.raises(RelayError):
                await client.send_message(Message(sender_id="x", content="anonymous"))

            client.username = "ghost"
            with pytest.raises(RelayError) as exc_info:
                await client.send_message(Message(sender_id="ghost", content="stale"))
            assert exc_info.value.details["code"] == ErrorCode.E402_NOT_LOGGED_IN.value
            assert client.username is None

            await client.login("alice", "pw")
            other = RelayClient("127.0.0.1", server.port)
            assert await other.connect()
            with pytest.raises(AuthError) as exc_info:
                await other.login("alice", "nope")
            assert exc_info.value.message == "Invalid password"
            await other.disconnect()
        finally:
            await client.disconnect()
            await server.stop()

    async def test_second_login_signs_out_client(self, server):
        """Test that a displaced client forgets its login but stays connected."""
        assert await server.start()
        first = RelayClient("127.0.0.1", server.port)
        second = RelayClient("127.0.0.1", server.port)
        signed_out = []
        first.on(RelayEvent.SIGNED_OUT, signed_out.append)
        try:
            assert await first.connect()
            assert await second.connect()
            await first.login("alice", "pw")

            await second.login("alice", "pw")
            await wait_until(lambda: signed_out)

            assert signed_out == [{"reason": REBOUND_NOTICE}]
            assert first.connected
            assert not first.logged_in
            assert first.friend_code is None
            assert second.logged_in

            await first.login("alice", "pw")
            assert first.logged_in
        finally:
            await first.disconnect()
            await second.disconnect()
            await server.stop()

    async def test_server_stop_notifies_client(self, server):
        """Test that the client reports a disconnect when the server goes away."""
        assert await server.start()
        client = RelayClient("127.0.0.1", server.port)
        lost = asyncio.Event()
        client.on("disconnected", lambda data: lost.set())
        assert await client.connect()
        await client.login("alice", "pw")

        await server.stop()
        await asyncio.wait_for(lost.wait(), 2.0)

        assert not client.logged_in
        await client.disconnect()

    async def test_connect_failure(self):
        """Test that connecting to a closed port returns False."""
        closed = RelayServer(host="127.0.0.1", port=0)
        assert await closed.start()
        port = closed.port
        await closed.stop()

        assert await RelayClient("127.0.0.1", port).connect() is False
