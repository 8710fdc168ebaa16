"""Streaming session models — session states and decoded ticks."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LOGGED_IN = "logged_in"
    SUBSCRIBED = "subscribed"
    CLOSING = "closing"


# Allowed edges of the session state machine
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset({SessionState.CONNECTING, SessionState.CLOSING}),
    SessionState.CONNECTING: frozenset(
        {SessionState.CONNECTED, SessionState.DISCONNECTED, SessionState.CLOSING}
    ),
    SessionState.CONNECTED: frozenset(
        {SessionState.LOGGED_IN, SessionState.DISCONNECTED, SessionState.CLOSING}
    ),
    SessionState.LOGGED_IN: frozenset(
        {SessionState.SUBSCRIBED, SessionState.DISCONNECTED, SessionState.CLOSING}
    ),
    SessionState.SUBSCRIBED: frozenset({SessionState.DISCONNECTED, SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.DISCONNECTED}),
}

# States in which the session holds an open transport
OPEN_STATES = frozenset(
    {SessionState.CONNECTED, SessionState.LOGGED_IN, SessionState.SUBSCRIBED}
)
AUTHENTICATED_STATES = frozenset({SessionState.LOGGED_IN, SessionState.SUBSCRIBED})


@dataclass(frozen=True)
class TickUpdate:
    """One real-time trade print for an instrument."""

    code: str
    price: float
    change: Optional[float] = None
    change_percent: Optional[float] = None
    volume: Optional[int] = None  # cumulative for the day
    trade_volume: Optional[int] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    time: str = ""
    kind: str = "00"
