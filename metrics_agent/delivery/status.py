"""
Metrics Agent - Connection Status

Broker connection state machine. The current status is replaced atomically
so the paho network thread can write it while the collection loop reads it.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class ConnectionState(str, Enum):
    """Broker connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CONNECTION_LOST = "connection_lost"
    ERROR = "error"


# ERROR is reachable from every state and is not listed here.
ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.CONNECTION_LOST,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTION_LOST: {ConnectionState.CONNECTING},
    ConnectionState.ERROR: {ConnectionState.CONNECTING},
}


@dataclass(frozen=True)
class ConnectionStatus:
    """Immutable view of the connection state."""
    state: ConnectionState
    message: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def describe(self) -> str:
        label = self.state.value.replace("_", " ").capitalize()
        return f"{label}: {self.message}" if self.message else label

    def to_dict(self) -> dict:
        return {"state": self.state.value, "message": self.message}


StatusListener = Callable[[ConnectionStatus, ConnectionStatus], None]


class StatusHolder:
    """Lock-guarded holder for the current ConnectionStatus."""

    def __init__(self):
        self._lock = threading.Lock()
        self._status = ConnectionStatus(ConnectionState.DISCONNECTED)
        self._listeners: List[StatusListener] = []

    @property
    def current(self) -> ConnectionStatus:
        with self._lock:
            return self._status

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def transition(self, state: ConnectionState, message: Optional[str] = None) -> bool:
        """Move to a new state. Returns False if the transition is not allowed."""
        with self._lock:
            previous = self._status
            if state != ConnectionState.ERROR and state not in ALLOWED_TRANSITIONS[previous.state]:
                logger.debug(
                    "Ignoring connection transition",
                    current=previous.state.value,
                    requested=state.value,
                )
                return False
            self._status = ConnectionStatus(state, message)
            current = self._status

        logger.info(
            "Connection status changed",
            previous=previous.state.value,
            state=current.state.value,
            message=message,
        )
        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception as e:
                logger.exception("Status listener failed", error=str(e))
        return True
