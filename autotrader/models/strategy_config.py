"""Strategy configuration dataclasses.

One frozen record per buy-rule kind plus the ``StrategyConfig`` aggregate
the engine runs with.  The persisted settings document uses the Korean keys
the trading desk's settings screen writes (``기본매수``, ``장시작급등주`` ...);
``from_settings`` / ``to_settings`` translate between the two.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Optional


def _coerce(value: Any, default: Any) -> Any:
    """Cast a settings value to the type of the field's default."""
    if value is None or value == "":
        return default
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "y", "yes")
        return bool(value)
    if isinstance(default, int):
        return int(float(value))
    # float fields and optional (None-default) thresholds
    return float(value)


class _SettingsMixin:
    """Maps dataclass fields to the Korean keys of the settings document."""

    SETTINGS_KEYS: ClassVar[dict[str, str]] = {}

    @classmethod
    def from_settings(cls, data: Optional[dict]):
        """Build the record from a settings section; ``None`` when absent."""
        if not data:
            return None
        kwargs = {}
        for f in fields(cls):
            key = cls.SETTINGS_KEYS.get(f.name)
            if key is None or key not in data:
                continue
            kwargs[f.name] = _coerce(data[key], f.default)
        return cls(**kwargs)

    def to_settings(self) -> dict:
        """Serialise back to the Korean-keyed section."""
        return {
            key: getattr(self, name)
            for name, key in self.SETTINGS_KEYS.items()
        }


# ── Per-rule configs ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class BasicBuyConfig(_SettingsMixin):
    """Change-rate range plus minimum traded value."""

    SETTINGS_KEYS: ClassVar[dict[str, str]] = {
        "enabled": "사용",
        "min_change_percent": "최소등락률",
        "max_change_percent": "최대등락률",
        "min_trading_value": "최소거래대금",
        "volume_growth_multiplier": "거래량증가율기준",
    }

    enabled: bool = True
    min_change_percent: float = 0.0
    max_change_percent: float = 30.0
    min_trading_value: float = 0.0
    volume_growth_multiplier: Optional[float] = None


@dataclass(frozen=True)
class EarlyRiseConfig(_SettingsMixin):
    """Opening-minutes surge: time-of-day window plus minimum change."""

    SETTINGS_KEYS: ClassVar[dict[str, str]] = {
        "enabled": "사용",
        "start_hour": "시작시간_시",
        "start_minute": "시작시간_분",
        "end_hour": "종료시간_시",
        "end_minute": "종료시간_분",
        "min_change_percent": "최소등락률",
        "max_change_percent": "최대등락률",
        "volume_growth_multiplier": "거래량증가율기준",
    }

    enabled: bool = True
    start_hour: int = 9
    start_minute: int = 0
    end_hour: int = 9
    end_minute: int = 5
    min_change_percent: float = 0.0
    max_change_percent: Optional[float] = None
    volume_growth_multiplier: Optional[float] = None

    @property
    def start_minutes(self) -> int:
        return self.start_hour * 60 + self.start_minute

    @property
    def end_minutes(self) -> int:
        return self.end_hour * 60 + self.end_minute


@dataclass(frozen=True)
class BandConfig(_SettingsMixin):
    """Buy near the lower Bollinger band."""

    SETTINGS_KEYS: ClassVar[dict[str, str]] = {
        "enabled": "사용",
        "period": "기간",
        "width": "승수",
        "max_band_position": "하단비율",
        "rsi_max": "RSI상한",
    }

    enabled: bool = True
    period: int = 20
    width: float = 2.0
    max_band_position: float = 0.2
    rsi_max: Optional[float] = None


@dataclass(frozen=True)
class ScalpConfig(_SettingsMixin):
    """Buy the bounce off a recent low."""

    SETTINGS_KEYS: ClassVar[dict[str, str]] = {
        "enabled": "사용",
        "min_rise_from_low": "저점후최소상승률",
        "volume_multiplier": "저점후거래량증가기준",
        "low_lookback": "저점기간",
    }

    enabled: bool = True
    min_rise_from_low: float = 1.0
    volume_multiplier: Optional[float] = None
    low_lookback: int = 5


@dataclass(frozen=True)
class BreakoutConfig(_SettingsMixin):
    """Buy a break above the prior high on expanding volume."""

    SETTINGS_KEYS: ClassVar[dict[str, str]] = {
        "enabled": "사용",
        "breakout_rate": "돌파기준율",
        "volume_multiplier": "거래량돌파배율",
    }

    enabled: bool = True
    breakout_rate: float = 0.5
    volume_multiplier: float = 1.5


# ── Sell settings ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SellConfig(_SettingsMixin):
    """Exit thresholds in percent of average cost.

    ``take_profit_pct`` / ``stop_loss_pct`` are inclusive.  The trailing stop
    is off unless both trailing fields are set.
    """

    SETTINGS_KEYS: ClassVar[dict[str, str]] = {
        "take_profit_pct": "익절률",
        "stop_loss_pct": "손절률",
        "trailing_activation_pct": "트레일링시작률",
        "trailing_distance_pct": "트레일링폭",
    }

    take_profit_pct: float = 2.0
    stop_loss_pct: float = -1.0
    trailing_activation_pct: Optional[float] = None
    trailing_distance_pct: Optional[float] = None


# ── Aggregate ────────────────────────────────────────────────────────────

_RULE_SECTIONS: dict[str, str] = {
    "basic_buy": "기본매수",
    "early_rise": "장시작급등주",
    "band": "볼린저밴드",
    "scalp": "스캘핑매수",
    "breakout": "돌파매수",
}


@dataclass(frozen=True)
class StrategyConfig:
    """Everything one orchestration cycle reads.

    A rule section left as ``None`` disables that strategy kind.
    """

    basic_buy: Optional[BasicBuyConfig] = None
    early_rise: Optional[EarlyRiseConfig] = None
    band: Optional[BandConfig] = None
    scalp: Optional[ScalpConfig] = None
    breakout: Optional[BreakoutConfig] = None
    sell: SellConfig = field(default_factory=SellConfig)
    max_concurrent_stocks: int = 5
    max_daily_trades: int = 0  # 0 = unlimited
    trading_amount_per_stock: float = 1_000_000.0
    commission_rate: float = 0.015  # percent per side

    @classmethod
    def from_settings(cls, data: dict) -> "StrategyConfig":
        """Build from the persisted settings document."""
        defaults = cls()
        return cls(
            basic_buy=BasicBuyConfig.from_settings(data.get("기본매수")),
            early_rise=EarlyRiseConfig.from_settings(data.get("장시작급등주")),
            band=BandConfig.from_settings(data.get("볼린저밴드")),
            scalp=ScalpConfig.from_settings(data.get("스캘핑매수")),
            breakout=BreakoutConfig.from_settings(data.get("돌파매수")),
            sell=SellConfig.from_settings(data.get("매도설정")) or SellConfig(),
            max_concurrent_stocks=int(
                data.get("maxConcurrentStocks", defaults.max_concurrent_stocks)
            ),
            max_daily_trades=int(data.get("maxDailyTrades", defaults.max_daily_trades)),
            trading_amount_per_stock=float(
                data.get("tradingAmountPerStock", defaults.trading_amount_per_stock)
            ),
            commission_rate=float(data.get("commissionRate", defaults.commission_rate)),
        )

    def to_settings(self) -> dict:
        """Serialise to the persisted settings document."""
        doc: dict[str, Any] = {
            "maxConcurrentStocks": self.max_concurrent_stocks,
            "maxDailyTrades": self.max_daily_trades,
            "tradingAmountPerStock": self.trading_amount_per_stock,
            "commissionRate": self.commission_rate,
            "매도설정": self.sell.to_settings(),
        }
        for attr, section in _RULE_SECTIONS.items():
            rule = getattr(self, attr)
            if rule is not None:
                doc[section] = rule.to_settings()
        return doc
