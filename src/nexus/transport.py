"""
Nexus - Peer transport abstraction and its aiortc implementation.

The connection manager never talks to a WebRTC stack directly. It drives a
``PeerTransport``, which exposes the handful of negotiation primitives a
manual copy/paste handshake needs and reports progress through callbacks:

- ``on_gathering_complete()``: no further local candidates will be found
- ``on_channel_open()`` / ``on_channel_close()``: data channel lifecycle
- ``on_message(text)``: one inbound data channel frame
- ``on_state_change(state)``: transport state (``connecting``, ``connected``,
  ``disconnected``, ``failed``, ``closed``)

``AiortcTransport`` implements it on top of aiortc. aiortc gathers every
candidate while the local description is applied and never trickles, so the
local description is complete as soon as gathering reports completion.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from .constants import DATA_CHANNEL_LABEL
from .errors import ErrorCode, NotConnectedError
from .signaling import SessionDescription

logger = logging.getLogger(__name__)


class PeerTransport(ABC):
    """Negotiation primitives for one direct connection."""

    def __init__(self):
        self.on_gathering_complete: Optional[Callable[[], None]] = None
        self.on_channel_open: Optional[Callable[[], None]] = None
        self.on_channel_close: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None
        self.on_state_change: Optional[Callable[[str], None]] = None

    @abstractmethod
    def create_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> None:
        """Open the data channel eagerly (host side, before the offer exists)."""

    @abstractmethod
    async def create_offer(self) -> None:
        """Create the offer, apply it locally and start candidate gathering."""

    @abstractmethod
    async def create_answer(self) -> None:
        """Create the answer for an applied remote offer and start gathering."""

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the remote peer's description."""

    @property
    @abstractmethod
    def local_description(self) -> Optional[SessionDescription]:
        """Current local description, complete once gathering has finished."""

    @property
    @abstractmethod
    def channel_open(self) -> bool:
        """Whether the data channel is open for sending."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether ``close`` has been called."""

    @abstractmethod
    def send(self, data: str) -> None:
        """Send one frame over the data channel."""

    @abstractmethod
    async def close(self) -> None:
        """Release the data channel and the connection. Idempotent."""

    def detach(self) -> None:
        """Drop all callbacks so late events from a released transport go nowhere."""
        self.on_gathering_complete = None
        self.on_channel_open = None
        self.on_channel_close = None
        self.on_message = None
        self.on_state_change = None

    def _emit(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Transport callback error: {e}", exc_info=True)


TransportFactory = Callable[[List[str]], PeerTransport]


class AiortcTransport(PeerTransport):
    """PeerTransport backed by an aiortc ``RTCPeerConnection``.

    Only STUN servers are configured; no TURN relay is attempted if direct
    connectivity fails.
    """

    def __init__(self, stun_servers: List[str]):
        super().__init__()
        ice_servers = [RTCIceServer(urls=url) for url in stun_servers]
        self.pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))
        self.channel: Optional[RTCDataChannel] = None
        self._gathering_reported = False
        self._closed = False

        @self.pc.on("icegatheringstatechange")
        def on_icegatheringstatechange() -> None:
            logger.debug(f"ICE gathering state: {self.pc.iceGatheringState}")
            if self.pc.iceGatheringState == "complete":
                self._report_gathering_complete()

        @self.pc.on("connectionstatechange")
        def on_connectionstatechange() -> None:
            logger.info(f"Peer connection state: {self.pc.connectionState}")
            self._emit(self.on_state_change, self.pc.connectionState)

        @self.pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel) -> None:
            logger.info(f"Remote data channel received: {channel.label}")
            self._bind_channel(channel)
            if channel.readyState == "open":
                self._emit(self.on_channel_open)

    def _bind_channel(self, channel: RTCDataChannel) -> None:
        self.channel = channel

        @channel.on("open")
        def on_open() -> None:
            logger.info(f"Data channel '{channel.label}' open")
            self._emit(self.on_channel_open)

        @channel.on("close")
        def on_close() -> None:
            logger.info(f"Data channel '{channel.label}' closed")
            self._emit(self.on_channel_close)

        @channel.on("message")
        def on_message(message) -> None:
            if isinstance(message, bytes):
                try:
                    message = message.decode("utf-8")
                except UnicodeDecodeError:
                    logger.warning("Dropping non UTF-8 binary frame")
                    return
            self._emit(self.on_message, message)

    def _report_gathering_complete(self) -> None:
        if self._gathering_reported:
            return
        self._gathering_reported = True
        self._emit(self.on_gathering_complete)

    def create_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> None:
        self._bind_channel(self.pc.createDataChannel(label))

    async def create_offer(self) -> None:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        if self.pc.iceGatheringState == "complete":
            self._report_gathering_complete()

    async def create_answer(self) -> None:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        if self.pc.iceGatheringState == "complete":
            self._report_gathering_complete()

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    @property
    def local_description(self) -> Optional[SessionDescription]:
        local = self.pc.localDescription
        if local is None:
            return None
        return SessionDescription(type=local.type, sdp=local.sdp)

    @property
    def channel_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: str) -> None:
        if not self.channel_open:
            raise NotConnectedError(ErrorCode.E204_NOT_CONNECTED, "Data channel is not open")
        self.channel.send(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.channel is not None:
            self.channel.close()
        await self.pc.close()
        logger.debug("Peer connection closed")
