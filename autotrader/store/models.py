"""Store records — candidates, held positions, and execution log entries."""

from dataclasses import dataclass, replace
from datetime import datetime


@dataclass(frozen=True)
class DetectedCandidate:
    """An instrument a buy rule flagged."""

    code: str
    name: str
    price: float
    change_percent: float
    volume: int
    strategy: str
    detected_at: datetime


@dataclass(frozen=True)
class HeldPosition:
    """A currently held quantity of one instrument."""

    code: str
    name: str
    quantity: int
    avg_price: float
    current_price: float
    bought_at: datetime
    strategy: str

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive, got {self.quantity}")

    @property
    def profit(self) -> float:
        """Unrealized profit in currency."""
        return (self.current_price - self.avg_price) * self.quantity

    @property
    def profit_rate(self) -> float:
        """Unrealized profit in percent of average cost."""
        if self.avg_price <= 0:
            return 0.0
        return (self.current_price - self.avg_price) / self.avg_price * 100.0

    def with_price(self, price: float) -> "HeldPosition":
        return replace(self, current_price=price)

    def add_fill(self, quantity: int, price: float) -> "HeldPosition":
        """Average a further buy fill into the position."""
        total = self.quantity + quantity
        avg = (self.avg_price * self.quantity + price * quantity) / total
        return replace(self, quantity=total, avg_price=avg, current_price=price)


LOG_BUY = "buy"
LOG_SELL = "sell"
LOG_INFO = "info"


@dataclass(frozen=True)
class ExecutionLogEntry:
    """One line of the user-facing execution log."""

    time: datetime
    category: str  # "buy", "sell" or "info"
    message: str
