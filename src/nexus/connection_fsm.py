"""
Nexus - Session State Machine for direct peer sessions.

This module implements a formal finite state machine for the lifecycle of one
manually negotiated direct session. It validates transitions, records a short
transition history and fires callbacks on state changes.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from .constants import STATE_HISTORY_LIMIT

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Negotiation states of a direct session."""

    DISCONNECTED = auto()  # No negotiation in progress
    GATHERING = auto()  # Local description created, candidates being gathered
    OFFER_READY = auto()  # Host: offer code available, waiting for the answer
    ANSWER_READY = auto()  # Guest: answer code available, waiting for the host
    CONNECTING = auto()  # Both descriptions applied, transport connecting
    CONNECTED = auto()  # Data channel open
    ERROR = auto()  # Transport failure or timeout


class SessionEvent(Enum):
    """Events that trigger state transitions."""

    GATHERING_STARTED = auto()
    OFFER_GATHERED = auto()
    ANSWER_GATHERED = auto()
    REMOTE_APPLIED = auto()
    TRANSPORT_CONNECTING = auto()
    CHANNEL_OPEN = auto()
    TRANSPORT_FAILED = auto()
    CONNECTION_LOST = auto()
    CLOSE_REQUESTED = auto()


class ConnectionStatus(str, Enum):
    """Coarse status exposed to the user interface."""

    DISCONNECTED = "DISCONNECTED"
    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


STATUS_BY_STATE: Dict[SessionState, ConnectionStatus] = {
    SessionState.DISCONNECTED: ConnectionStatus.DISCONNECTED,
    SessionState.GATHERING: ConnectionStatus.PENDING,
    SessionState.OFFER_READY: ConnectionStatus.PENDING,
    SessionState.ANSWER_READY: ConnectionStatus.PENDING,
    SessionState.CONNECTING: ConnectionStatus.PENDING,
    SessionState.CONNECTED: ConnectionStatus.CONNECTED,
    SessionState.ERROR: ConnectionStatus.ERROR,
}


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


# Teardown and failure are reachable from every live state
_EXIT_TRANSITIONS: Dict[SessionEvent, SessionState] = {
    SessionEvent.TRANSPORT_FAILED: SessionState.ERROR,
    SessionEvent.CONNECTION_LOST: SessionState.DISCONNECTED,
    SessionEvent.CLOSE_REQUESTED: SessionState.DISCONNECTED,
}


class SessionStateMachine:
    """
    Finite state machine for one direct session.

    DISCONNECTED and ERROR are terminal for a session: a fresh machine is
    created for every new session.
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
        SessionState.DISCONNECTED: {
            SessionEvent.GATHERING_STARTED: SessionState.GATHERING,
        },
        SessionState.GATHERING: {
            SessionEvent.OFFER_GATHERED: SessionState.OFFER_READY,
            SessionEvent.ANSWER_GATHERED: SessionState.ANSWER_READY,
            **_EXIT_TRANSITIONS,
        },
        SessionState.OFFER_READY: {
            SessionEvent.REMOTE_APPLIED: SessionState.CONNECTING,
            **_EXIT_TRANSITIONS,
        },
        SessionState.ANSWER_READY: {
            SessionEvent.TRANSPORT_CONNECTING: SessionState.CONNECTING,
            SessionEvent.CHANNEL_OPEN: SessionState.CONNECTED,
            **_EXIT_TRANSITIONS,
        },
        SessionState.CONNECTING: {
            SessionEvent.CHANNEL_OPEN: SessionState.CONNECTED,
            **_EXIT_TRANSITIONS,
        },
        SessionState.CONNECTED: dict(_EXIT_TRANSITIONS),
        SessionState.ERROR: {
            SessionEvent.CLOSE_REQUESTED: SessionState.DISCONNECTED,
        },
    }

    def __init__(self, initial_state: SessionState = SessionState.DISCONNECTED):
        self.current_state = initial_state
        self.previous_state: Optional[SessionState] = None
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = STATE_HISTORY_LIMIT

        # Callbacks
        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None

        logger.debug(f"Session state machine initialized in state: {self.current_state.name}")

    def transition(self, event: SessionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition
            error_msg: Error message if event is TRANSPORT_FAILED

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(
                f"Invalid transition: {self.current_state.name} + "
                f"{event.name} (no valid target state)"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if event == SessionEvent.TRANSPORT_FAILED:
            self.error_message = error_msg or "Unknown error"
        elif new_state == SessionState.CONNECTED:
            self.error_message = None

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.info(f"Session state: {old_state.name} -> {new_state.name} (event: {event.name})")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}", exc_info=True)

        return True

    def is_valid_transition(self, from_state: SessionState, event: SessionEvent) -> bool:
        """Check if a transition is valid."""
        return event in self.TRANSITIONS.get(from_state, {})

    @property
    def status(self) -> ConnectionStatus:
        """Coarse status for the current state."""
        return STATUS_BY_STATE[self.current_state]

    def is_connected(self) -> bool:
        return self.current_state == SessionState.CONNECTED

    def is_terminal(self) -> bool:
        """DISCONNECTED after activity, or ERROR."""
        return self.current_state == SessionState.ERROR or (
            self.current_state == SessionState.DISCONNECTED and bool(self.transition_history)
        )

    def __repr__(self) -> str:
        return f"SessionStateMachine(state={self.current_state.name})"
