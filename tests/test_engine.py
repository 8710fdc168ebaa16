"""Tests for the trading engine orchestration.

Verifies the buy-scan and sell-check cycles end to end: fetch candidates →
evaluate rules → size → order → store.  Uses a mock broker to avoid real
Kiwoom calls.
"""

import asyncio
from datetime import datetime

import pytest

from autotrader.broker.models import Candle, InstrumentSnapshot, OrderResult
from autotrader.config import Config
from autotrader.engine import TradingEngine
from autotrader.models.strategy_config import (
    BasicBuyConfig,
    EarlyRiseConfig,
    ScalpConfig,
    SellConfig,
    StrategyConfig,
)
from autotrader.store.models import LOG_BUY, LOG_INFO, LOG_SELL
from autotrader.store.trading_store import TradingStore


# ── Helpers ──────────────────────────────────────────────────────────────

_NOW = datetime(2024, 3, 4, 9, 3)


def _make_config(**overrides) -> Config:
    """Build a Config with sensible test defaults."""
    defaults = dict(
        kiwoom_app_key="app-key",
        kiwoom_secret_key="secret-key",
        kiwoom_environment="mock",
        market_segment="000",
        candidate_scan_limit=30,
        buy_scan_interval_seconds=3600.0,
        sell_check_interval_seconds=3600.0,
        reconnect_attempts=5,
        reconnect_delay_seconds=3.0,
        login_timeout_seconds=10.0,
        candle_history_count=30,
        market_timezone="Asia/Seoul",
        settings_path="trading_settings.json",
        log_level="WARNING",
    )
    defaults.update(overrides)
    return Config(**defaults)


def _snapshot(code: str, price: float = 10_000.0, change: float = 5.0) -> InstrumentSnapshot:
    return InstrumentSnapshot(
        code=code,
        name=f"종목{code}",
        price=price,
        change_percent=change,
        volume=100_000,
    )


def _strategy(**overrides) -> StrategyConfig:
    defaults = dict(
        basic_buy=BasicBuyConfig(min_change_percent=3.0, max_change_percent=10.0),
        max_concurrent_stocks=5,
        trading_amount_per_stock=1_000_000.0,
    )
    defaults.update(overrides)
    return StrategyConfig(**defaults)


# ── Mock broker ──────────────────────────────────────────────────────────


class MockBroker:
    """Duck-typed KiwoomClient replacement for engine tests."""

    def __init__(self, candidates: list[InstrumentSnapshot] | None = None) -> None:
        self.candidates = candidates or []
        self.prices: dict[str, float] = {}
        self.candles: dict[str, list[Candle]] = {}
        self.reject_codes: set[str] = set()
        self.fail_codes: set[str] = set()
        self.orders: list[tuple] = []
        self.order_delay = 0.0
        self.scan_calls = 0

    async def fetch_candidate_instruments(self, market_segment="000", limit=30):
        self.scan_calls += 1
        return self.candidates[:limit]

    async def fetch_current_price(self, code):
        if code not in self.prices:
            raise RuntimeError(f"no quote for {code}")
        return _snapshot(code, price=self.prices[code])

    async def fetch_candles(self, code, count=30):
        if code not in self.candles:
            raise RuntimeError(f"no candles for {code}")
        return self.candles[code][-count:]

    async def submit_order(self, code, quantity, price, side, order_kind="market"):
        self.orders.append((side, code, quantity))
        if self.order_delay:
            await asyncio.sleep(self.order_delay)
        if code in self.fail_codes:
            raise RuntimeError("broker unreachable")
        if code in self.reject_codes:
            return OrderResult(filled=False, error="주문가능금액 부족")
        return OrderResult(filled=True, order_no=f"{len(self.orders):07d}")


class FakeSession:
    def __init__(self, logged_in: bool = True) -> None:
        self.is_logged_in = logged_in
        self.registered: list[list[str]] = []

    async def register(self, codes):
        self.registered.append(list(codes))
        return True

    def status(self):
        return {"state": "subscribed"}


def _make_engine(broker, store=None, session=None, **config_overrides) -> TradingEngine:
    return TradingEngine(
        config=_make_config(**config_overrides),
        broker=broker,
        store=store or TradingStore(),
        session=session,
        clock=lambda: _NOW,
    )


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_resets_counters(self):
        engine = _make_engine(MockBroker([_snapshot("000001")]))
        engine.start(_strategy())
        await engine.scan_candidates_once()
        assert engine.status()["total_trades"] == 1

        engine.stop()
        await engine.join()
        engine.start(_strategy())
        status = engine.status()
        assert status["running"] is True
        assert status["total_trades"] == 0
        assert status["started_at"] == _NOW.isoformat()
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_start_while_running_is_noop(self):
        engine = _make_engine(MockBroker())
        assert engine.start(_strategy()) is True
        assert engine.start(_strategy()) is False
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        store = TradingStore()
        engine = _make_engine(MockBroker(), store=store)
        engine.start(_strategy())
        assert engine.stop() is True
        assert engine.stop() is False
        await engine.join()
        assert engine.running is False
        assert [e.category for e in store.logs()] == [LOG_INFO, LOG_INFO]

    @pytest.mark.asyncio
    async def test_restart_during_inflight_buy(self):
        """Stop → start while a buy is in flight: one loop, one order."""
        store = TradingStore()
        broker = MockBroker([_snapshot("000001")])
        broker.order_delay = 0.1
        engine = _make_engine(broker, store=store, buy_scan_interval_seconds=0.01)

        engine.start(_strategy())
        await asyncio.sleep(0.03)
        assert broker.orders == [("buy", "000001", 100)]
        engine.stop()
        assert engine.start(_strategy()) is True

        await asyncio.sleep(0.25)
        live = [
            t for t in asyncio.all_tasks()
            if t.get_name() == "buy-scan" and not t.done()
        ]
        assert len(live) == 1
        assert broker.orders == [("buy", "000001", 100)]
        assert store.get_position("000001").quantity == 100

        engine.stop()
        await engine.join()
        assert not [
            t for t in asyncio.all_tasks()
            if t.get_name() in ("buy-scan", "sell-check") and not t.done()
        ]

    @pytest.mark.asyncio
    async def test_restart_ends_previous_scan(self):
        broker = MockBroker([_snapshot("000001"), _snapshot("000002")])
        broker.order_delay = 0.05
        engine = _make_engine(broker)
        engine.start(_strategy())

        scan = asyncio.create_task(engine.scan_candidates_once())
        await asyncio.sleep(0.01)
        engine.stop()
        engine.start(_strategy())

        result = await scan
        assert result["bought"] == ["000001"]
        assert broker.orders == [("buy", "000001", 100)]
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_concurrent_scans_buy_a_code_once(self):
        store = TradingStore()
        broker = MockBroker([_snapshot("000001")])
        broker.order_delay = 0.03
        engine = _make_engine(broker, store=store)
        engine.start(_strategy())

        first, second = await asyncio.gather(
            engine.scan_candidates_once(), engine.scan_candidates_once(),
        )
        assert first["bought"] + second["bought"] == ["000001"]
        assert broker.orders == [("buy", "000001", 100)]
        assert store.get_position("000001").quantity == 100
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_not_running_skips(self):
        engine = _make_engine(MockBroker([_snapshot("000001")]))
        result = await engine.scan_candidates_once()
        assert result == {"action": "skipped", "reason": "not_running"}
        assert (await engine.check_sells_once())["action"] == "skipped"

    @pytest.mark.asyncio
    async def test_loops_run_on_schedule(self):
        broker = MockBroker([_snapshot("000001")])
        engine = _make_engine(
            broker, buy_scan_interval_seconds=0.01, sell_check_interval_seconds=0.01,
        )
        engine.start(_strategy())
        await asyncio.sleep(0.08)
        engine.stop()
        await engine.join()
        assert broker.scan_calls >= 2

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self):
        broker = MockBroker()

        async def _broken(*args, **kwargs):
            raise RuntimeError("ranking down")

        broker.fetch_candidate_instruments = _broken
        engine = _make_engine(broker, buy_scan_interval_seconds=0.01)
        engine.start(_strategy())
        await asyncio.sleep(0.05)
        assert engine.running is True
        engine.stop()
        await engine.join()


# ── Buy scan ─────────────────────────────────────────────────────────────


class TestBuyScan:
    @pytest.mark.asyncio
    async def test_buys_eligible_candidate(self):
        store = TradingStore()
        broker = MockBroker([_snapshot("005930", price=70_100)])
        engine = _make_engine(broker, store=store)
        engine.start(_strategy())

        result = await engine.scan_candidates_once(now=_NOW)

        assert result["bought"] == ["005930"]
        assert broker.orders == [("buy", "005930", 14)]
        pos = store.get_position("005930")
        assert pos.quantity == 14
        assert pos.strategy == "기본매수"
        assert store.detected()[0].code == "005930"
        assert store.logs()[-1].category == LOG_BUY
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_capacity_limit(self):
        """At most max_concurrent_stocks positions after a scan."""
        store = TradingStore()
        broker = MockBroker([_snapshot(f"{i:06d}") for i in range(1, 11)])
        engine = _make_engine(broker, store=store)
        engine.start(_strategy(max_concurrent_stocks=3))

        await engine.scan_candidates_once()
        assert store.position_count() == 3
        assert store.held_codes() == ["000001", "000002", "000003"]

        result = await engine.scan_candidates_once()
        assert result == {"action": "skipped", "reason": "at_capacity"}
        assert store.position_count() == 3
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_skips_held_codes(self):
        store = TradingStore()
        store.record_buy_fill("000001", "종목000001", 5, 10_000, "기본매수", _NOW)
        broker = MockBroker([_snapshot("000001"), _snapshot("000002")])
        engine = _make_engine(broker, store=store)
        engine.start(_strategy())

        result = await engine.scan_candidates_once()
        assert result["bought"] == ["000002"]
        assert store.get_position("000001").quantity == 5
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_ineligible_candidates_ignored(self):
        store = TradingStore()
        broker = MockBroker([_snapshot("000001", change=1.0), _snapshot("000002", change=15.0)])
        engine = _make_engine(broker, store=store)
        engine.start(_strategy())

        result = await engine.scan_candidates_once()
        assert result["detected"] == []
        assert broker.orders == []
        assert store.detected() == []
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_price_above_amount_skipped(self):
        store = TradingStore()
        broker = MockBroker([_snapshot("000001", price=2_000_000)])
        engine = _make_engine(broker, store=store)
        engine.start(_strategy())

        result = await engine.scan_candidates_once()
        assert result["detected"] == ["000001"]
        assert result["bought"] == []
        assert broker.orders == []
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_rejected_buy_creates_nothing(self):
        store = TradingStore()
        broker = MockBroker([_snapshot("000001")])
        broker.reject_codes.add("000001")
        engine = _make_engine(broker, store=store)
        engine.start(_strategy())

        await engine.scan_candidates_once()
        assert store.position_count() == 0
        last = store.logs()[-1]
        assert last.category == LOG_INFO
        assert "주문가능금액 부족" in last.message
        assert engine.status()["failed_trades"] == 1
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_broker_exception_on_buy(self):
        store = TradingStore()
        broker = MockBroker([_snapshot("000001"), _snapshot("000002")])
        broker.fail_codes.add("000001")
        engine = _make_engine(broker, store=store)
        engine.start(_strategy())

        result = await engine.scan_candidates_once()
        assert result["bought"] == ["000002"]
        assert store.get_position("000001") is None
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_daily_buy_limit(self):
        store = TradingStore()
        broker = MockBroker([_snapshot(f"{i:06d}") for i in range(1, 6)])
        engine = _make_engine(broker, store=store)
        engine.start(_strategy(max_daily_trades=2))

        result = await engine.scan_candidates_once()
        assert result["bought"] == ["000001", "000002"]
        assert len(result["detected"]) == 5

        next_day = datetime(2024, 3, 5, 9, 3)
        result = await engine.scan_candidates_once(now=next_day)
        assert result["bought"] == ["000003", "000004"]
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_early_rise_window(self):
        """Opening window 09:00–09:05, min change 5%: 09:03 buys, 09:10 doesn't."""
        cfg = _strategy(
            basic_buy=None,
            early_rise=EarlyRiseConfig(
                start_hour=9, start_minute=0, end_hour=9, end_minute=5,
                min_change_percent=5.0,
            ),
        )
        late_store = TradingStore()
        late = _make_engine(MockBroker([_snapshot("000001", change=6.0)]), store=late_store)
        late.start(cfg)
        await late.scan_candidates_once(now=datetime(2024, 3, 4, 9, 10))
        assert late_store.position_count() == 0
        late.stop()
        await late.join()

        store = TradingStore()
        engine = _make_engine(MockBroker([_snapshot("000001", change=6.0)]), store=store)
        engine.start(cfg)
        await engine.scan_candidates_once(now=datetime(2024, 3, 4, 9, 3))
        assert store.get_position("000001").strategy == "장시작급등주"
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_history_fetched_for_history_rules(self):
        store = TradingStore()
        broker = MockBroker([_snapshot("000001", price=98.5), _snapshot("000002", price=98.5)])
        broker.candles["000001"] = [
            Candle(f"t{i}", 100, 100, low, 100, 1000)
            for i, low in enumerate([99, 98, 97, 98, 99])
        ]
        # "000002" has no candles: fetch fails, snapshot stays history-less
        engine = _make_engine(broker, store=store)
        engine.start(_strategy(basic_buy=None, scalp=ScalpConfig(min_rise_from_low=1.0)))

        result = await engine.scan_candidates_once()
        assert result["bought"] == ["000001"]
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_registers_bought_code_with_session(self):
        session = FakeSession(logged_in=True)
        engine = _make_engine(MockBroker([_snapshot("000001")]), session=session)
        engine.start(_strategy())
        await engine.scan_candidates_once()
        assert session.registered == [["000001"]]
        engine.stop()
        await engine.join()


# ── Sell check ───────────────────────────────────────────────────────────


class TestSellCheck:
    async def _engine_with_position(self, price: float, sell: SellConfig = SellConfig()):
        store = TradingStore()
        store.record_buy_fill("005930", "삼성전자", 10, 10_000, "기본매수", _NOW)
        broker = MockBroker()
        broker.prices["005930"] = price
        engine = _make_engine(broker, store=store)
        engine.start(_strategy(sell=sell))
        return engine, broker, store

    @pytest.mark.asyncio
    async def test_take_profit_sells(self):
        engine, broker, store = await self._engine_with_position(10_200)
        result = await engine.check_sells_once()
        assert result["sold"] == ["005930"]
        assert store.get_position("005930") is None
        assert broker.orders == [("sell", "005930", 10)]
        last = store.logs()[-1]
        assert last.category == LOG_SELL
        assert "+2.00%" in last.message
        assert engine.status()["total_profit"] > 0
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_below_take_profit_holds(self):
        engine, broker, store = await self._engine_with_position(10_199)
        result = await engine.check_sells_once()
        assert result["action"] == "held"
        assert store.get_position("005930") is not None
        assert broker.orders == []
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_stop_loss_sells(self):
        engine, broker, store = await self._engine_with_position(9_900)
        result = await engine.check_sells_once()
        assert result["sold"] == ["005930"]
        assert "손절" in store.logs()[-1].message
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_failed_sell_keeps_position(self):
        engine, broker, store = await self._engine_with_position(9_900)
        broker.reject_codes.add("005930")
        result = await engine.check_sells_once()
        assert result["sold"] == []
        assert store.get_position("005930") is not None
        assert store.logs()[-1].category == LOG_INFO
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_trailing_stop_across_cycles(self):
        sell = SellConfig(
            take_profit_pct=5.0, trailing_activation_pct=1.0, trailing_distance_pct=0.5,
        )
        engine, broker, store = await self._engine_with_position(10_150, sell)
        assert (await engine.check_sells_once())["action"] == "held"
        broker.prices["005930"] = 10_090
        result = await engine.check_sells_once()
        assert result["sold"] == ["005930"]
        assert "트레일링스탑" in store.logs()[-1].message
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_sells_dispatched_concurrently_without_duplicates(self):
        store = TradingStore()
        for code in ("000001", "000002"):
            store.record_buy_fill(code, code, 1, 10_000, "기본매수", _NOW)
            store.update_price(code, 10_300)
        broker = MockBroker()
        broker.order_delay = 0.05
        session = FakeSession(logged_in=True)  # ticks own the prices; no polling
        engine = _make_engine(broker, store=store, session=session)
        engine.start(_strategy())

        first = asyncio.create_task(engine.check_sells_once())
        await asyncio.sleep(0.01)
        second = await engine.check_sells_once()
        assert second["action"] == "held"
        assert sorted(broker.orders) == [("sell", "000001", 1), ("sell", "000002", 1)]

        result = await first
        assert sorted(result["sold"]) == ["000001", "000002"]
        assert store.position_count() == 0
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_price_refresh_failure_is_tolerated(self):
        store = TradingStore()
        store.record_buy_fill("000001", "x", 1, 10_000, "기본매수", _NOW)
        engine = _make_engine(MockBroker(), store=store)
        engine.start(_strategy())
        result = await engine.check_sells_once()
        assert result["action"] == "held"
        engine.stop()
        await engine.join()

    @pytest.mark.asyncio
    async def test_stop_lets_inflight_sell_finish(self):
        engine, broker, store = await self._engine_with_position(10_300)
        broker.order_delay = 0.03
        task = asyncio.create_task(engine.check_sells_once())
        await asyncio.sleep(0.01)
        engine.stop()
        result = await task
        assert result["sold"] == ["005930"]
        assert store.get_position("005930") is None
        await engine.join()
