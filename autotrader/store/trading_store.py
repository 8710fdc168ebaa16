"""In-process position and log store.

Holds the engine's shared mutable state: held positions, recently detected
candidates, and the bounded execution log.  Each collection is guarded by
its own lock; readers get copies of immutable records.
"""

import logging
import threading
from collections import OrderedDict, deque
from datetime import datetime
from typing import Optional

from autotrader.store.models import (
    DetectedCandidate,
    ExecutionLogEntry,
    HeldPosition,
)

logger = logging.getLogger("autotrader")

MAX_DETECTED = 100
MAX_LOG_ENTRIES = 100


class TradingStore:
    """Positions keyed by code, candidates deduplicated by code, FIFO log."""

    def __init__(
        self,
        max_detected: int = MAX_DETECTED,
        max_log_entries: int = MAX_LOG_ENTRIES,
    ) -> None:
        self._max_detected = max_detected
        self._positions: "OrderedDict[str, HeldPosition]" = OrderedDict()
        self._detected: "OrderedDict[str, DetectedCandidate]" = OrderedDict()
        self._log: deque[ExecutionLogEntry] = deque(maxlen=max_log_entries)
        self._positions_lock = threading.Lock()
        self._detected_lock = threading.Lock()
        self._log_lock = threading.Lock()

    # ── Positions ────────────────────────────────────────────────────────

    def upsert_position(self, position: HeldPosition) -> None:
        """Insert or replace the position for ``position.code``."""
        with self._positions_lock:
            self._positions[position.code] = position

    def record_buy_fill(
        self,
        code: str,
        name: str,
        quantity: int,
        price: float,
        strategy: str,
        bought_at: datetime,
    ) -> HeldPosition:
        """Create the position, or average the fill into an existing one."""
        with self._positions_lock:
            existing = self._positions.get(code)
            if existing is None:
                position = HeldPosition(
                    code=code,
                    name=name,
                    quantity=quantity,
                    avg_price=price,
                    current_price=price,
                    bought_at=bought_at,
                    strategy=strategy,
                )
            else:
                position = existing.add_fill(quantity, price)
            self._positions[code] = position
            return position

    def remove_position(self, code: str) -> Optional[HeldPosition]:
        with self._positions_lock:
            return self._positions.pop(code, None)

    def get_position(self, code: str) -> Optional[HeldPosition]:
        with self._positions_lock:
            return self._positions.get(code)

    def update_price(self, code: str, price: float) -> Optional[HeldPosition]:
        """Refresh a held position's current price; ignores unknown codes."""
        if price <= 0:
            return None
        with self._positions_lock:
            position = self._positions.get(code)
            if position is None:
                return None
            position = position.with_price(price)
            self._positions[code] = position
            return position

    def positions(self) -> list[HeldPosition]:
        with self._positions_lock:
            return list(self._positions.values())

    def position_count(self) -> int:
        with self._positions_lock:
            return len(self._positions)

    def held_codes(self) -> list[str]:
        with self._positions_lock:
            return list(self._positions.keys())

    # ── Detected candidates ──────────────────────────────────────────────

    def add_detected(self, candidate: DetectedCandidate) -> None:
        """Record a candidate; a newer entry for the same code replaces the old one."""
        with self._detected_lock:
            self._detected.pop(candidate.code, None)
            self._detected[candidate.code] = candidate
            while len(self._detected) > self._max_detected:
                self._detected.popitem(last=False)

    def detected(self) -> list[DetectedCandidate]:
        """Candidates, newest first."""
        with self._detected_lock:
            return list(reversed(self._detected.values()))

    # ── Execution log ────────────────────────────────────────────────────

    def append_log(
        self,
        category: str,
        message: str,
        time: Optional[datetime] = None,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            time=time or datetime.now(),
            category=category,
            message=message,
        )
        with self._log_lock:
            self._log.append(entry)
        return entry

    def logs(self) -> list[ExecutionLogEntry]:
        """Log entries, oldest first."""
        with self._log_lock:
            return list(self._log)

    def clear_logs(self) -> None:
        with self._log_lock:
            self._log.clear()
