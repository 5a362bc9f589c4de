"""
Session states and events.
"""

from __future__ import annotations
from enum import Enum, auto
from dataclasses import dataclass


class SessionState(Enum):
    """Session lifecycle states."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    CONNECTED = auto()
    ERROR = auto()


# Transitions the state machine is allowed to make. Anything may fall back
# to DISCONNECTED (disconnect / connection lost).
ALLOWED_TRANSITIONS = {
    SessionState.DISCONNECTED: {SessionState.CONNECTING},
    SessionState.ERROR: {SessionState.CONNECTING, SessionState.DISCONNECTED},
    SessionState.CONNECTING: {SessionState.AUTHENTICATING, SessionState.ERROR, SessionState.DISCONNECTED},
    SessionState.AUTHENTICATING: {SessionState.CONNECTED, SessionState.ERROR, SessionState.DISCONNECTED},
    SessionState.CONNECTED: {SessionState.DISCONNECTED},
}


@dataclass
class SessionEvent:
    """Base class for session events."""
    pass


@dataclass
class StateChanged(SessionEvent):
    """Session state changed."""
    old_state: SessionState
    new_state: SessionState
    message: str = ""
