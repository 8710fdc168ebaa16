"""Buy-rule evaluators and first-match dispatch.

Each evaluator is a pure predicate ``(snapshot, rule_config, now) -> bool``.
``StrategyKind`` declares the kinds in priority order; ``select_buy_strategy``
walks that order and returns the first kind whose rule is satisfied.
"""

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from autotrader.broker.models import InstrumentSnapshot
from autotrader.models.strategy_config import (
    BandConfig,
    BasicBuyConfig,
    BreakoutConfig,
    EarlyRiseConfig,
    ScalpConfig,
    StrategyConfig,
)
from autotrader.strategy import indicators

# Bars averaged when comparing the latest bar's volume
_VOLUME_WINDOW = 5
_BREAKOUT_MIN_BARS = 20
_RSI_PERIOD = 14


class StrategyKind(Enum):
    """Buy strategy kinds.  Declaration order is evaluation priority."""

    BASIC_BUY = "basic_buy"
    EARLY_RISE = "early_rise"
    BAND = "band"
    SCALP = "scalp"
    BREAKOUT = "breakout"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def needs_history(self) -> bool:
        """Whether the rule can only pass with candle history."""
        return self in (StrategyKind.BAND, StrategyKind.SCALP, StrategyKind.BREAKOUT)


_LABELS = {
    StrategyKind.BASIC_BUY: "기본매수",
    StrategyKind.EARLY_RISE: "장시작급등주",
    StrategyKind.BAND: "볼린저밴드",
    StrategyKind.SCALP: "스캘핑매수",
    StrategyKind.BREAKOUT: "돌파매수",
}


def _volume_expanding(snapshot: InstrumentSnapshot, multiplier: float) -> bool:
    """Latest bar volume ≥ *multiplier* × average of the last few bars."""
    volumes = [c.volume for c in snapshot.history]
    if len(volumes) < _VOLUME_WINDOW:
        return False
    avg = indicators.average_volume(volumes, _VOLUME_WINDOW)
    return volumes[-1] >= avg * multiplier


# ── Evaluators ───────────────────────────────────────────────────────────


def check_basic_buy(
    snapshot: InstrumentSnapshot,
    rule: Optional[BasicBuyConfig],
    now: Optional[datetime] = None,
) -> bool:
    """Change rate inside ``[min, max]`` and enough traded value."""
    if rule is None or not rule.enabled:
        return False
    if not rule.min_change_percent <= snapshot.change_percent <= rule.max_change_percent:
        return False
    if snapshot.trading_value < rule.min_trading_value:
        return False
    if rule.volume_growth_multiplier:
        return _volume_expanding(snapshot, rule.volume_growth_multiplier)
    return True


def check_early_rise(
    snapshot: InstrumentSnapshot,
    rule: Optional[EarlyRiseConfig],
    now: Optional[datetime] = None,
) -> bool:
    """Inside the opening window (inclusive) and already up enough."""
    if rule is None or not rule.enabled:
        return False
    now = now or datetime.now()
    minute_of_day = now.hour * 60 + now.minute
    if minute_of_day < rule.start_minutes or minute_of_day > rule.end_minutes:
        return False
    if snapshot.change_percent < rule.min_change_percent:
        return False
    if (
        rule.max_change_percent is not None
        and snapshot.change_percent > rule.max_change_percent
    ):
        return False
    if rule.volume_growth_multiplier:
        return _volume_expanding(snapshot, rule.volume_growth_multiplier)
    return True


def check_band(
    snapshot: InstrumentSnapshot,
    rule: Optional[BandConfig],
    now: Optional[datetime] = None,
) -> bool:
    """Price in the bottom slice of the Bollinger band."""
    if rule is None or not rule.enabled:
        return False
    closes = [c.close for c in snapshot.history]
    position = indicators.band_position(snapshot.price, closes, rule.period, rule.width)
    if position is None or position >= rule.max_band_position:
        return False
    if rule.rsi_max is not None:
        if len(closes) < _RSI_PERIOD + 1:
            return False
        return indicators.rsi(closes, _RSI_PERIOD) <= rule.rsi_max
    return True


def check_scalp(
    snapshot: InstrumentSnapshot,
    rule: Optional[ScalpConfig],
    now: Optional[datetime] = None,
) -> bool:
    """Bounced far enough off the recent low, optionally on rising volume."""
    if rule is None or not rule.enabled:
        return False
    lows = [c.low for c in snapshot.history]
    low = indicators.recent_low(lows, rule.low_lookback)
    if low <= 0:
        return False
    if indicators.rise_percent(snapshot.price, low) < rule.min_rise_from_low:
        return False
    if rule.volume_multiplier:
        return _volume_expanding(snapshot, rule.volume_multiplier)
    return True


def check_breakout(
    snapshot: InstrumentSnapshot,
    rule: Optional[BreakoutConfig],
    now: Optional[datetime] = None,
) -> bool:
    """Cleared the prior high by ``breakout_rate`` percent on heavy volume."""
    if rule is None or not rule.enabled:
        return False
    if len(snapshot.history) < _BREAKOUT_MIN_BARS:
        return False
    prior_high = indicators.previous_high([c.high for c in snapshot.history])
    if prior_high <= 0:
        return False
    if indicators.rise_percent(snapshot.price, prior_high) < rule.breakout_rate:
        return False
    return _volume_expanding(snapshot, rule.volume_multiplier)


# ── Dispatch ─────────────────────────────────────────────────────────────

_EVALUATORS: dict[StrategyKind, Callable[..., bool]] = {
    StrategyKind.BASIC_BUY: check_basic_buy,
    StrategyKind.EARLY_RISE: check_early_rise,
    StrategyKind.BAND: check_band,
    StrategyKind.SCALP: check_scalp,
    StrategyKind.BREAKOUT: check_breakout,
}


def rule_for(config: StrategyConfig, kind: StrategyKind):
    """Return the rule section of *config* that drives *kind*."""
    return getattr(config, kind.value)


def enabled_kinds(config: StrategyConfig) -> list[StrategyKind]:
    """Kinds with a present, enabled rule, in priority order."""
    kinds = []
    for kind in StrategyKind:
        rule = rule_for(config, kind)
        if rule is not None and rule.enabled:
            kinds.append(kind)
    return kinds


def requires_history(config: Optional[StrategyConfig]) -> bool:
    """Whether any enabled rule reads candle history."""
    if config is None:
        return False
    for kind in enabled_kinds(config):
        if kind.needs_history:
            return True
        if getattr(rule_for(config, kind), "volume_growth_multiplier", None):
            return True
    return False


def select_buy_strategy(
    snapshot: InstrumentSnapshot,
    config: Optional[StrategyConfig],
    now: Optional[datetime] = None,
) -> Optional[StrategyKind]:
    """Return the first kind (in priority order) that deems *snapshot* buyable."""
    if config is None:
        return None
    for kind in StrategyKind:
        if _EVALUATORS[kind](snapshot, rule_for(config, kind), now):
            return kind
    return None
