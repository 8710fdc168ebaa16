"""Broker data models — typed representations of Kiwoom REST API objects."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar."""

    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int


@dataclass(frozen=True)
class InstrumentSnapshot:
    """Point-in-time view of one instrument.

    ``history`` holds recent bars ordered oldest → newest.  It is empty for
    snapshots that come from ranking scans or streaming ticks.
    """

    code: str
    name: str
    price: float
    change_percent: float
    volume: int
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    history: tuple[Candle, ...] = field(default_factory=tuple)

    @property
    def trading_value(self) -> float:
        """Notional traded so far today (price × volume)."""
        return self.price * self.volume


@dataclass(frozen=True)
class OrderRequest:
    """A cash-equity order request payload."""

    code: str
    quantity: int
    price: float
    side: str  # "buy" or "sell"
    order_kind: str = "market"  # "market" or "limit"


@dataclass(frozen=True)
class OrderResult:
    """Outcome of submitting an order."""

    filled: bool
    order_no: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class AccessToken:
    """A Kiwoom OAuth access token."""

    token: str
    expires_at: str = ""
