"""
Nexus - Direct session negotiation.

``ConnectionManager`` owns at most one live peer session at a time and walks
it through the manual handshake:

Host::

    await manager.begin_session("host")
    offer_code = await manager.produce_local_envelope()   # give to the guest
    await manager.accept_remote_envelope(answer_code)     # pasted from the guest

Guest::

    await manager.begin_session("guest")
    await manager.accept_remote_envelope(offer_code)      # pasted from the host
    answer_code = await manager.produce_local_envelope()  # give to the host

Codes are only produced after candidate gathering completed, so a code
always carries every local candidate. Beginning a new session releases the
previous transport and channel before anything else happens. Nothing is
retried automatically.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

from .connection_fsm import ConnectionStatus, SessionEvent, SessionState, SessionStateMachine
from .constants import DEFAULT_STUN_SERVERS
from .crypto import generate_uid, session_fingerprint
from .errors import (
    ConnectionFailureError,
    ErrorCode,
    MalformedCodeError,
    NetworkError,
    NotConnectedError,
    ProtocolMisuseError,
)
from .signaling import EnvelopeKind, SessionDescription, SignalingCodec, SignalingEnvelope
from .transport import AiortcTransport, PeerTransport, TransportFactory

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Which side of the handshake this peer plays."""

    HOST = "host"
    GUEST = "guest"


@dataclass
class PeerSession:
    """State of one negotiation; handed back to callers as an opaque handle."""

    role: Role
    transport: PeerTransport
    fsm: SessionStateMachine
    session_id: str = field(default_factory=generate_uid)
    gathering_done: asyncio.Event = field(default_factory=asyncio.Event)
    remote_description: Optional[SessionDescription] = None
    active: bool = True
    loss_notified: bool = False

    @property
    def state(self) -> SessionState:
        return self.fsm.current_state

    @property
    def status(self) -> ConnectionStatus:
        return self.fsm.status


class ConnectionManager:
    """Negotiates and owns a single direct peer session."""

    def __init__(
        self,
        stun_servers: Optional[List[str]] = None,
        transport_factory: Optional[TransportFactory] = None,
        gathering_timeout: Optional[float] = None,
    ):
        """
        Initialize the manager.

        Args:
            stun_servers: STUN URLs used for candidate discovery only
            transport_factory: Builds a transport from the STUN list
                (default: AiortcTransport)
            gathering_timeout: Seconds to wait for candidate gathering;
                None or 0 waits indefinitely
        """
        self.stun_servers = list(DEFAULT_STUN_SERVERS if stun_servers is None else stun_servers)
        self.transport_factory: TransportFactory = transport_factory or AiortcTransport
        self.gathering_timeout = gathering_timeout or None

        self._session: Optional[PeerSession] = None
        self._lock = asyncio.Lock()

        # Callbacks
        self.on_status_change: Optional[Callable[[ConnectionStatus], None]] = None
        self.on_connected: Optional[Callable[[], None]] = None
        self.on_connection_lost: Optional[Callable[[str], None]] = None
        self.on_raw_message: Optional[Callable[[str], None]] = None

    @property
    def session(self) -> Optional[PeerSession]:
        return self._session

    @property
    def status(self) -> ConnectionStatus:
        if self._session is None:
            return ConnectionStatus.DISCONNECTED
        return self._session.status

    @property
    def state(self) -> SessionState:
        if self._session is None:
            return SessionState.DISCONNECTED
        return self._session.state

    @property
    def is_channel_open(self) -> bool:
        session = self._session
        return (
            session is not None
            and session.fsm.is_connected()
            and session.transport.channel_open
        )

    @property
    def session_fingerprint(self) -> str:
        """Short code both peers can compare out of band; empty until both descriptions exist."""
        session = self._session
        if session is None or session.remote_description is None:
            return ""
        local = session.transport.local_description
        if local is None:
            return ""
        return session_fingerprint(local.sdp, session.remote_description.sdp)

    async def begin_session(self, role: Union[Role, str]) -> PeerSession:
        """
        Tear down any existing session and open a new negotiation context.

        Args:
            role: ``"host"`` or ``"guest"`` (or a Role)

        Returns:
            The new session handle
        """
        role = Role(role)
        async with self._lock:
            await self._teardown_locked()

            transport = self.transport_factory(self.stun_servers)
            session = PeerSession(role=role, transport=transport, fsm=SessionStateMachine())
            session.fsm.on_state_change = lambda old, new: self._emit(
                self.on_status_change, session.fsm.status
            )

            transport.on_gathering_complete = lambda: self._handle_gathering_complete(session)
            transport.on_channel_open = lambda: self._handle_channel_open(session)
            transport.on_channel_close = lambda: self._handle_channel_close(session)
            transport.on_state_change = lambda state: self._handle_transport_state(session, state)
            transport.on_message = lambda text: self._handle_message(session, text)

            if role is Role.HOST:
                # The channel must exist before the offer is produced
                transport.create_data_channel()

            self._session = session
            logger.info(f"Began {role.value} session {session.session_id[:8]}")
            return session

    async def produce_local_envelope(self) -> str:
        """
        Produce the connection code for the local description.

        Starts gathering if needed (host) and suspends until gathering is
        complete.

        Returns:
            Encoded OFFER (host) or ANSWER (guest) envelope

        Raises:
            ProtocolMisuseError: No session, or a guest that has no offer yet
            ConnectionFailureError: The session ended, failed or timed out
        """
        session = self._require_session()
        self._require_live(session)

        if session.state == SessionState.DISCONNECTED:
            if session.role is Role.GUEST:
                raise ProtocolMisuseError(
                    message="A guest must accept the host's offer before producing an answer",
                    details={"role": session.role.value},
                )
            session.fsm.transition(SessionEvent.GATHERING_STARTED)
            try:
                await session.transport.create_offer()
            except Exception as e:
                self._fail(session, f"Failed to create offer: {e}")
                raise ConnectionFailureError(message=f"Failed to create offer: {e}") from e

        await self._wait_for_gathering(session)

        description = session.transport.local_description
        if description is None:
            self._fail(session, "Gathering finished without a local description")
            raise ConnectionFailureError(message="No local description available")

        kind = EnvelopeKind.OFFER if session.role is Role.HOST else EnvelopeKind.ANSWER
        code = SignalingCodec.encode(SignalingEnvelope(kind=kind, description=description))
        logger.info(f"Produced {kind.value} code ({len(code)} chars)")
        return code

    async def accept_remote_envelope(self, code: str) -> None:
        """
        Apply a connection code pasted from the other peer.

        Hosts accept answers once their offer is ready; guests accept one
        offer on a fresh session, which starts answer generation.

        Raises:
            MalformedCodeError: The code cannot be decoded or applied; no state change
            ProtocolMisuseError: Wrong role or stage; no state change
            ConnectionFailureError: The session ended while applying the code
        """
        envelope = SignalingCodec.decode(code)
        session = self._require_session()
        self._require_live(session)

        if session.role is Role.HOST:
            if envelope.kind is not EnvelopeKind.ANSWER:
                raise ProtocolMisuseError(
                    message="Hosts only accept answers",
                    details={"kind": envelope.kind.value},
                )
            if session.state != SessionState.OFFER_READY:
                raise ProtocolMisuseError(
                    message="No offer is waiting for an answer",
                    details={"state": session.state.name},
                )

            await self._apply_remote(session, envelope.description)
            session.fsm.transition(SessionEvent.REMOTE_APPLIED)
            if session.transport.channel_open:
                self._handle_channel_open(session)
            return

        if envelope.kind is not EnvelopeKind.OFFER:
            raise ProtocolMisuseError(
                message="Guests only accept offers",
                details={"kind": envelope.kind.value},
            )
        if session.state != SessionState.DISCONNECTED or session.remote_description is not None:
            raise ProtocolMisuseError(
                message="An offer has already been accepted for this session",
                details={"state": session.state.name},
            )

        await self._apply_remote(session, envelope.description)
        session.fsm.transition(SessionEvent.GATHERING_STARTED)
        try:
            await session.transport.create_answer()
        except Exception as e:
            self._fail(session, f"Failed to create answer: {e}")
            raise ConnectionFailureError(message=f"Failed to create answer: {e}") from e

    async def teardown(self) -> None:
        """Release the channel and transport and reset to DISCONNECTED. Idempotent."""
        async with self._lock:
            await self._teardown_locked()

    def send_raw(self, data: str) -> None:
        """
        Hand one serialized frame to the open data channel.

        Raises:
            NotConnectedError: The channel is not open
            NetworkError: The transport refused the frame
        """
        session = self._session
        if not self.is_channel_open:
            raise NotConnectedError(
                details={"state": session.state.name if session else SessionState.DISCONNECTED.name}
            )
        try:
            session.transport.send(data)
        except NotConnectedError:
            raise
        except Exception as e:
            logger.warning(f"Data channel send failed: {e}")
            raise NetworkError(ErrorCode.E205_SEND_FAILED, f"Send failed: {e}") from e

    # Internal helpers

    def _require_session(self) -> PeerSession:
        if self._session is None:
            raise ProtocolMisuseError(message="No session; call begin_session first")
        return self._session

    def _require_live(self, session: PeerSession) -> None:
        if session.fsm.is_terminal():
            raise ConnectionFailureError(
                ErrorCode.E203_CONNECTION_CLOSED,
                "Session has ended; begin a new session",
                {"state": session.state.name, "error": session.fsm.error_message},
            )

    def _is_current(self, session: PeerSession) -> bool:
        return session.active and session is self._session

    async def _apply_remote(self, session: PeerSession, description: SessionDescription) -> None:
        try:
            await session.transport.set_remote_description(description)
        except Exception as e:
            logger.warning(f"Remote description rejected by transport: {e}")
            raise MalformedCodeError(
                message="Connection code could not be applied",
                details={"reason": str(e)},
            ) from e

        if not self._is_current(session):
            raise ConnectionFailureError(
                ErrorCode.E203_CONNECTION_CLOSED, "Session closed while applying the code"
            )
        session.remote_description = description

    async def _wait_for_gathering(self, session: PeerSession) -> None:
        try:
            if self.gathering_timeout:
                await asyncio.wait_for(session.gathering_done.wait(), self.gathering_timeout)
            else:
                await session.gathering_done.wait()
        except asyncio.TimeoutError:
            self._fail(session, "Candidate gathering timed out")
            raise ConnectionFailureError(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                "Candidate gathering timed out",
                {"timeout": self.gathering_timeout},
            ) from None

        if not self._is_current(session) or session.state == SessionState.ERROR:
            raise ConnectionFailureError(
                ErrorCode.E203_CONNECTION_CLOSED,
                "Session ended before gathering completed",
                {"error": session.fsm.error_message},
            )

    async def _teardown_locked(self) -> None:
        session = self._session
        if session is None:
            return

        self._session = None
        session.active = False
        session.gathering_done.set()
        session.transport.detach()

        if session.state != SessionState.DISCONNECTED:
            session.fsm.transition(SessionEvent.CLOSE_REQUESTED)

        try:
            await session.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport: {e}")

        logger.info(f"Session {session.session_id[:8]} torn down")

    def _handle_gathering_complete(self, session: PeerSession) -> None:
        if not self._is_current(session):
            return
        event = (
            SessionEvent.OFFER_GATHERED if session.role is Role.HOST else SessionEvent.ANSWER_GATHERED
        )
        session.fsm.transition(event)
        session.gathering_done.set()

    def _handle_channel_open(self, session: PeerSession) -> None:
        if not self._is_current(session):
            return
        if session.fsm.transition(SessionEvent.CHANNEL_OPEN):
            self._emit(self.on_connected)

    def _handle_channel_close(self, session: PeerSession) -> None:
        if self._is_current(session):
            self._lose(session, failed=False, reason="Data channel closed")

    def _handle_transport_state(self, session: PeerSession, state: str) -> None:
        if not self._is_current(session):
            return
        if state == "connecting":
            if session.state == SessionState.ANSWER_READY:
                session.fsm.transition(SessionEvent.TRANSPORT_CONNECTING)
        elif state == "failed":
            self._lose(session, failed=True, reason="Connection failed")
        elif state in ("disconnected", "closed"):
            self._lose(session, failed=False, reason="Connection lost")

    def _handle_message(self, session: PeerSession, data: str) -> None:
        if self._is_current(session):
            self._emit(self.on_raw_message, data)

    def _fail(self, session: PeerSession, reason: str) -> None:
        self._lose(session, failed=True, reason=reason)

    def _lose(self, session: PeerSession, failed: bool, reason: str) -> None:
        if session.fsm.is_terminal():
            return

        if failed:
            session.fsm.transition(SessionEvent.TRANSPORT_FAILED, reason)
        elif session.state != SessionState.DISCONNECTED:
            session.fsm.transition(SessionEvent.CONNECTION_LOST)
        session.gathering_done.set()

        logger.warning(f"Session {session.session_id[:8]}: {reason}")
        if not session.loss_notified:
            session.loss_notified = True
            self._emit(self.on_connection_lost, reason)

    def _emit(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Connection callback error: {e}", exc_info=True)
