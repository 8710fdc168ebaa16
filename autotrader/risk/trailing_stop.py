"""Trailing stop — locks in part of an open gain.

Rules:
  - Arms once the profit rate reaches ``activation_pct``.
  - Once armed, triggers when the profit rate falls ``distance_pct`` points
    below the best profit rate seen.
"""


class TrailingStop:
    """Tracks the peak profit rate of a single position.

    Args:
        activation_pct: Profit rate (percent) that arms the stop.
        distance_pct: Give-back from the peak (percentage points) that
            triggers an exit.
    """

    def __init__(self, activation_pct: float, distance_pct: float) -> None:
        if distance_pct <= 0:
            raise ValueError(f"distance_pct must be positive, got {distance_pct}")
        self.activation_pct = activation_pct
        self.distance_pct = distance_pct
        self.peak_rate: float | None = None

    @property
    def armed(self) -> bool:
        return self.peak_rate is not None

    def update(self, profit_rate: float) -> bool:
        """Feed the latest profit rate; return ``True`` when the stop is hit."""
        if self.peak_rate is None:
            if profit_rate >= self.activation_pct:
                self.peak_rate = profit_rate
            return False

        if profit_rate > self.peak_rate:
            self.peak_rate = profit_rate
            return False

        return self.peak_rate - profit_rate >= self.distance_pct
