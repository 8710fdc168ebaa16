"""Technical indicators — MA, standard deviation, RSI, band position. Pure functions, no I/O.

Every function works on a plain oldest → newest sequence of floats and
returns a neutral sentinel instead of raising when the window is too short,
so rule evaluators can treat "not enough data" as "rule not satisfied".
"""

import math
from typing import Optional, Sequence


def moving_average(series: Sequence[float], period: int) -> float:
    """Arithmetic mean of the last *period* values.

    Returns ``0`` when fewer than *period* samples exist (or *period* is not
    positive).
    """
    if period <= 0 or len(series) < period:
        return 0.0
    recent = series[-period:]
    return sum(recent) / period


def standard_deviation(series: Sequence[float], mean: float, period: int) -> float:
    """Population standard deviation of the last *period* values around *mean*.

    Returns ``0`` when fewer than *period* samples exist.
    """
    if period <= 0 or len(series) < period:
        return 0.0
    recent = series[-period:]
    variance = sum((x - mean) ** 2 for x in recent) / period
    return math.sqrt(variance)


# ── RSI ──────────────────────────────────────────────────────────────────


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """Relative Strength Index of the most recent close.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = SMA of the first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RSI = 100 - 100 / (1 + avg_gain / avg_loss)

    Returns ``50`` (neutral) with fewer than ``period + 1`` closes and
    ``100`` when the average loss is zero.
    """
    if period <= 0 or len(closes) < period + 1:
        return 50.0

    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


# ── Bollinger Bands ──────────────────────────────────────────────────────


def bollinger_bands(
    closes: Sequence[float],
    period: int = 20,
    width: float = 2.0,
) -> Optional[tuple[float, float, float]]:
    """Return ``(upper, middle, lower)`` for the most recent window.

    Middle = SMA(close, *period*)
    Upper  = middle + *width* × σ
    Lower  = middle − *width* × σ

    ``None`` when fewer than *period* closes exist.
    """
    if period <= 0 or len(closes) < period:
        return None
    middle = moving_average(closes, period)
    sigma = standard_deviation(closes, middle, period)
    return middle + width * sigma, middle, middle - width * sigma


def band_position(
    price: float,
    closes: Sequence[float],
    period: int = 20,
    width: float = 2.0,
) -> Optional[float]:
    """Where *price* sits inside the band: 0 at the lower band, 1 at the upper.

    ``None`` when the window is insufficient or the band has zero width.
    """
    bands = bollinger_bands(closes, period, width)
    if bands is None:
        return None
    upper, _, lower = bands
    if upper == lower:
        return None
    return (price - lower) / (upper - lower)


# ── Price / volume helpers ───────────────────────────────────────────────


def average_volume(volumes: Sequence[float], period: int = 5) -> float:
    """Mean of the last *period* volumes; ``0`` when insufficient."""
    return moving_average(volumes, period)


def recent_low(lows: Sequence[float], period: int = 5) -> float:
    """Lowest of the last *period* lows; ``0`` when insufficient."""
    if period <= 0 or len(lows) < period:
        return 0.0
    return min(lows[-period:])


def previous_high(highs: Sequence[float]) -> float:
    """Highest high excluding the newest bar; ``0`` with fewer than 2 bars."""
    if len(highs) < 2:
        return 0.0
    return max(highs[:-1])


def rise_percent(price: float, reference: float) -> float:
    """Percent move of *price* above *reference*; ``0`` for a non-positive reference."""
    if reference <= 0:
        return 0.0
    return (price - reference) / reference * 100.0
