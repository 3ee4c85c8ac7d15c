"""
Pytest configuration and fixtures for Nexus tests.

Provides common fixtures, an in-memory transport network that stands in for
WebRTC, and helpers for reading frames queued on relay connections.
"""

import asyncio
import hashlib
import itertools
import re
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

import pytest

from nexus.errors import NotConnectedError
from nexus.protocol import Protocol
from nexus.signaling import SessionDescription
from nexus.transport import PeerTransport

_FAKE_ID = re.compile(r"^a=x-fake-id:(\S+)", re.MULTILINE)


class FakeNetwork:
    """Pairs FakeTransports by an id carried in their descriptions.

    Every event is delivered with ``call_soon`` so ordering matches a real
    transport reporting from the event loop.
    """

    def __init__(self):
        self.transports: Dict[str, "FakeTransport"] = {}
        self.created: List["FakeTransport"] = []
        self.auto_gather = True
        self._ids = itertools.count(1)

    def factory(self, stun_servers: List[str]) -> "FakeTransport":
        transport = FakeTransport(self, f"t{next(self._ids)}", stun_servers)
        self.transports[transport.transport_id] = transport
        self.created.append(transport)
        return transport

    def connect(self, host: "FakeTransport", guest: "FakeTransport") -> None:
        loop = asyncio.get_running_loop()
        for transport in (guest, host):
            loop.call_soon(transport._open)

    def fail(self, transport: "FakeTransport") -> None:
        transport._emit(transport.on_state_change, "failed")


class FakeTransport(PeerTransport):
    """PeerTransport double driven by FakeNetwork."""

    def __init__(self, network: FakeNetwork, transport_id: str, stun_servers: List[str]):
        super().__init__()
        self.network = network
        self.transport_id = transport_id
        self.stun_servers = stun_servers
        self.has_channel = False
        self.remote_id: Optional[str] = None
        self.sent: List[str] = []
        self._local: Optional[SessionDescription] = None
        self._open_flag = False
        self._closed = False

    def _sdp(self) -> str:
        digest = hashlib.sha256(self.transport_id.encode()).digest()
        fingerprint = ":".join(f"{b:02X}" for b in digest)
        return (
            "v=0\r\n"
            f"a=x-fake-id:{self.transport_id}\r\n"
            f"a=fingerprint:sha-256 {fingerprint}\r\n"
        )

    def create_data_channel(self, label: str = "chat") -> None:
        self.has_channel = True

    async def create_offer(self) -> None:
        self._local = SessionDescription(type="offer", sdp=self._sdp())
        self._schedule_gathering()

    async def create_answer(self) -> None:
        if self.remote_id is None:
            raise RuntimeError("No remote offer applied")
        self._local = SessionDescription(type="answer", sdp=self._sdp())
        self._schedule_gathering()

    async def set_remote_description(self, description: SessionDescription) -> None:
        match = _FAKE_ID.search(description.sdp)
        if match is None or match.group(1) not in self.network.transports:
            raise ValueError("Unknown remote description")
        self.remote_id = match.group(1)
        if description.type == "answer":
            self.network.connect(self, self.peer)

    def _schedule_gathering(self) -> None:
        if self.network.auto_gather:
            asyncio.get_running_loop().call_soon(self.complete_gathering)

    def complete_gathering(self) -> None:
        self._emit(self.on_gathering_complete)

    @property
    def peer(self) -> Optional["FakeTransport"]:
        return self.network.transports.get(self.remote_id) if self.remote_id else None

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._local

    @property
    def channel_open(self) -> bool:
        return self._open_flag and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: str) -> None:
        if not self.channel_open:
            raise NotConnectedError()
        self.sent.append(data)
        peer = self.peer
        if peer is not None and not peer.closed:
            asyncio.get_running_loop().call_soon(peer._deliver, data)

    async def close(self) -> None:
        if self._closed:
            return
        was_open = self._open_flag
        self._closed = True
        self._open_flag = False
        peer = self.peer
        if was_open and peer is not None and not peer.closed:
            asyncio.get_running_loop().call_soon(peer._remote_closed)

    def _open(self) -> None:
        if self._closed:
            return
        self._emit(self.on_state_change, "connecting")
        self._open_flag = True
        self._emit(self.on_state_change, "connected")
        self._emit(self.on_channel_open)

    def _deliver(self, data: str) -> None:
        if not self._closed:
            self._emit(self.on_message, data)

    def _remote_closed(self) -> None:
        self._open_flag = False
        self._emit(self.on_channel_close)
        self._emit(self.on_state_change, "closed")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


def drain_frames(conn) -> List[dict]:
    """Pop and decode every frame queued on a RelayConnection."""
    frames = []
    while not conn.queue.empty():
        frames.append(Protocol.decode_frame(conn.queue.get_nowait().rstrip(b"\n")))
    return frames


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="nexus_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def fake_network() -> FakeNetwork:
    """In-memory network for FakeTransports."""
    return FakeNetwork()


@pytest.fixture
def sample_wire_message() -> dict:
    """
    Provide a sample wire envelope.

    Returns:
        dict: Message as it appears on the wire
    """
    return {
        "id": "a1b2c3d4e5f60718",
        "senderId": "me",
        "content": "Hello, World!",
        "timestamp": 1735689600000,
        "type": "TEXT",
    }


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
