"""
SparkChat - Connection status state machine.

The transport owns the actual connection and its retry policy; the session
only reacts to what the transport reports. This machine turns those
reports into the four user-visible statuses:

    disconnected -> connecting -> connected
    connecting/connected -> error -> connecting (transport reconnect)

Invalid transitions are logged and ignored rather than raised, because
transport events can arrive late or out of order.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .constants import STATE_HISTORY_SIZE

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """User-visible connection status."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ConnectionEvent(Enum):
    """Events that trigger status transitions."""

    CONNECT_REQUESTED = auto()  # Session asked the transport to connect
    CONNECTED = auto()  # Transport reported onConnect
    ERROR_OCCURRED = auto()  # Transport reported onError
    OFFLINE = auto()  # Transport reported onOffline
    RECONNECTING = auto()  # Transport reported onReconnecting
    CLOSE_REQUESTED = auto()  # Session tore the connection down


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: ConnectionStatus
    event: ConnectionEvent
    to_state: ConnectionStatus
    timestamp: float = field(default_factory=time.time)


class ConnectionStateMachine:
    """
    Finite state machine for the broker connection lifecycle.

    Enforces valid transitions, tracks transition history, and notifies a
    callback on every status change.
    """

    TRANSITIONS: Dict[ConnectionStatus, Dict[ConnectionEvent, ConnectionStatus]] = {
        ConnectionStatus.DISCONNECTED: {
            ConnectionEvent.CONNECT_REQUESTED: ConnectionStatus.CONNECTING,
            ConnectionEvent.RECONNECTING: ConnectionStatus.CONNECTING,
            ConnectionEvent.CONNECTED: ConnectionStatus.CONNECTED,
            ConnectionEvent.ERROR_OCCURRED: ConnectionStatus.ERROR,
        },
        ConnectionStatus.CONNECTING: {
            ConnectionEvent.CONNECTED: ConnectionStatus.CONNECTED,
            ConnectionEvent.ERROR_OCCURRED: ConnectionStatus.ERROR,
            ConnectionEvent.OFFLINE: ConnectionStatus.DISCONNECTED,
            ConnectionEvent.CLOSE_REQUESTED: ConnectionStatus.DISCONNECTED,
        },
        ConnectionStatus.CONNECTED: {
            ConnectionEvent.ERROR_OCCURRED: ConnectionStatus.ERROR,
            ConnectionEvent.OFFLINE: ConnectionStatus.DISCONNECTED,
            ConnectionEvent.RECONNECTING: ConnectionStatus.CONNECTING,
            ConnectionEvent.CLOSE_REQUESTED: ConnectionStatus.DISCONNECTED,
        },
        ConnectionStatus.ERROR: {
            ConnectionEvent.RECONNECTING: ConnectionStatus.CONNECTING,
            ConnectionEvent.CONNECT_REQUESTED: ConnectionStatus.CONNECTING,
            ConnectionEvent.CONNECTED: ConnectionStatus.CONNECTED,
            ConnectionEvent.OFFLINE: ConnectionStatus.DISCONNECTED,
            ConnectionEvent.CLOSE_REQUESTED: ConnectionStatus.DISCONNECTED,
        },
    }

    def __init__(self, initial_state: ConnectionStatus = ConnectionStatus.DISCONNECTED):
        """
        Initialize state machine.

        Args:
            initial_state: Initial status (default: DISCONNECTED)
        """
        self.current_state = initial_state
        self.previous_state: Optional[ConnectionStatus] = None
        self.state_entry_time = time.time()
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = STATE_HISTORY_SIZE

        self.on_state_change: Optional[Callable[[ConnectionStatus, ConnectionStatus], None]] = None

        logger.debug(f"State machine initialized in state: {self.current_state.name}")

    def transition(self, event: ConnectionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition
            error_msg: Error message if event is ERROR_OCCURRED

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.debug(
                f"Ignored transition: {self.current_state.name} + {event.name} "
                f"(no valid target state)"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if event == ConnectionEvent.ERROR_OCCURRED:
            self.error_message = error_msg or "Unknown error"
        elif new_state == ConnectionStatus.CONNECTED:
            self.error_message = None

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.info(f"Connection status: {old_state.value} -> {new_state.value} (event: {event.name})")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}", exc_info=True)

        return True

    def is_valid_transition(self, from_state: ConnectionStatus, event: ConnectionEvent) -> bool:
        """Check if a transition is valid."""
        return from_state in self.TRANSITIONS and event in self.TRANSITIONS[from_state]

    def get_state(self) -> ConnectionStatus:
        """Get current status."""
        return self.current_state

    def get_time_in_state(self) -> float:
        """Get time spent in current status (seconds)."""
        return time.time() - self.state_entry_time

    def is_connected(self) -> bool:
        """Check if currently connected."""
        return self.current_state == ConnectionStatus.CONNECTED

    def is_error(self) -> bool:
        """Check if currently in error status."""
        return self.current_state == ConnectionStatus.ERROR

    def reset(self, state: ConnectionStatus = ConnectionStatus.DISCONNECTED) -> None:
        """
        Reset state machine without notifying.

        Args:
            state: Status to reset to (default: DISCONNECTED)
        """
        old_state = self.current_state
        self.current_state = state
        self.previous_state = old_state
        self.state_entry_time = time.time()
        self.error_message = None
        logger.debug(f"State machine reset: {old_state.name} -> {state.name}")

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """Get recent transition history."""
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get state machine statistics.

        Returns:
            Dictionary with statistics
        """
        event_counts: Dict[str, int] = {}
        for transition in self.transition_history:
            event_counts[transition.event.name] = event_counts.get(transition.event.name, 0) + 1

        return {
            "current_state": self.current_state.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "error_message": self.error_message,
            "total_transitions": len(self.transition_history),
            "event_counts": event_counts,
        }

    def __repr__(self) -> str:
        return (
            f"ConnectionStateMachine(state={self.current_state.value}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
