"""Sell rules for held positions — pure, no I/O.

Evaluated in a fixed order: take-profit, stop-loss, then the optional
trailing stop.  Both fixed thresholds are inclusive.
"""

from enum import Enum
from typing import Optional

from autotrader.models.strategy_config import SellConfig
from autotrader.risk.trailing_stop import TrailingStop
from autotrader.store.models import HeldPosition


class SellReason(Enum):
    TAKE_PROFIT = "익절"
    STOP_LOSS = "손절"
    TRAILING_STOP = "트레일링스탑"


def make_trailing_stop(config: SellConfig) -> Optional[TrailingStop]:
    """Build a trailing stop when both trailing settings are present."""
    if config.trailing_activation_pct is None or not config.trailing_distance_pct:
        return None
    return TrailingStop(config.trailing_activation_pct, config.trailing_distance_pct)


def check_sell_signal(
    position: HeldPosition,
    config: SellConfig,
    trailing: Optional[TrailingStop] = None,
) -> Optional[SellReason]:
    """Return why *position* should be sold now, or ``None`` to keep holding."""
    rate = round(position.profit_rate, 6)

    if rate >= config.take_profit_pct:
        return SellReason.TAKE_PROFIT
    if rate <= config.stop_loss_pct:
        return SellReason.STOP_LOSS
    if trailing is not None and trailing.update(rate):
        return SellReason.TRAILING_STOP
    return None
