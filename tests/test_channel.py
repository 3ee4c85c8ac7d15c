"""
Nexus - Message channel tests.

Tests typed message exchange over a connected pair of FakeTransports.
"""

import json

import pytest

from conftest import wait_until
from nexus.channel import MessageChannel
from nexus.connection import ConnectionManager
from nexus.constants import SENDER_ME, SENDER_PEER
from nexus.errors import NotConnectedError, ProtocolMisuseError
from nexus.message import Message, MessageType


async def _connected_channels(network):
    host = ConnectionManager(stun_servers=[], transport_factory=network.factory)
    guest = ConnectionManager(stun_servers=[], transport_factory=network.factory)
    host_channel = MessageChannel(host)
    guest_channel = MessageChannel(guest)

    await host.begin_session("host")
    offer = await host.produce_local_envelope()
    await guest.begin_session("guest")
    await guest.accept_remote_envelope(offer)
    await host.accept_remote_envelope(await guest.produce_local_envelope())
    await wait_until(lambda: host.is_channel_open and guest.is_channel_open)
    return host_channel, guest_channel


@pytest.mark.asyncio
class TestMessageChannel:
    """Test MessageChannel send/receive."""

    async def test_message_arrives_once_as_peer(self, fake_network):
        """Test that a sent message is delivered once and attributed to the peer."""
        host_channel, guest_channel = await _connected_channels(fake_network)
        received = []
        guest_channel.on_receive(received.append)

        sent = Message(sender_id=SENDER_ME, content="hello")
        host_channel.send(sent)
        await wait_until(lambda: received)

        assert len(received) == 1
        assert received[0].content == "hello"
        assert received[0].message_id == sent.message_id
        assert received[0].timestamp == sent.timestamp
        assert received[0].sender_id == SENDER_PEER

    async def test_frame_is_single_json_envelope(self, fake_network):
        """Test the exact frame written to the data channel."""
        host_channel, _ = await _connected_channels(fake_network)

        host_channel.send(Message(sender_id=SENDER_ME, content="hi", message_id="m1", timestamp=5))

        frame = json.loads(fake_network.created[0].sent[-1])
        assert frame == {"id": "m1", "senderId": SENDER_ME, "content": "hi", "type": "TEXT", "timestamp": 5}

    async def test_system_messages_are_never_sent(self, fake_network):
        """Test that sending a SYSTEM notice is refused."""
        host_channel, _ = await _connected_channels(fake_network)

        with pytest.raises(ProtocolMisuseError):
            host_channel.send(Message.system("local only"))
        assert fake_network.created[0].sent == []

    async def test_send_without_channel(self, fake_network):
        """Test that sending before the channel opens raises NotConnectedError."""
        manager = ConnectionManager(stun_servers=[], transport_factory=fake_network.factory)
        channel = MessageChannel(manager)

        with pytest.raises(NotConnectedError):
            channel.send(Message(sender_id=SENDER_ME, content="too early"))

        await manager.begin_session("host")
        with pytest.raises(NotConnectedError):
            channel.send(Message(sender_id=SENDER_ME, content="still too early"))

    async def test_invalid_inbound_frames_are_dropped(self, fake_network):
        """Test that garbage, bad shapes and SYSTEM frames never reach receivers."""
        host_channel, guest_channel = await _connected_channels(fake_network)
        received = []
        guest_channel.on_receive(received.append)
        transport = fake_network.created[0]

        transport.send("not json")
        transport.send(json.dumps({"content": "no id"}))
        transport.send(json.dumps(Message.system("spoofed").to_wire()))
        transport.send(json.dumps(Message(sender_id=SENDER_ME, content="valid").to_wire()))
        await wait_until(lambda: received)

        assert [m.content for m in received] == ["valid"]

    async def test_ai_messages_pass_through(self, fake_network):
        """Test that AI messages are relayed like text."""
        host_channel, guest_channel = await _connected_channels(fake_network)
        received = []
        guest_channel.on_receive(received.append)

        host_channel.send(Message(sender_id="assistant", content="summary", type=MessageType.AI))
        await wait_until(lambda: received)

        assert received[0].type is MessageType.AI
