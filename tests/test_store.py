"""Tests for autotrader.store — positions, detected candidates, execution log."""

import threading
from datetime import datetime, timedelta

import pytest

from autotrader.store.models import (
    LOG_BUY,
    LOG_INFO,
    DetectedCandidate,
    HeldPosition,
)
from autotrader.store.trading_store import TradingStore

_T0 = datetime(2024, 3, 4, 9, 0)


def _candidate(code: str, price: float = 1000.0, minute: int = 0) -> DetectedCandidate:
    return DetectedCandidate(
        code=code,
        name=f"종목{code}",
        price=price,
        change_percent=5.0,
        volume=1000,
        strategy="기본매수",
        detected_at=_T0 + timedelta(minutes=minute),
    )


# ── Records ──────────────────────────────────────────────────────────────


class TestHeldPosition:
    def test_profit_and_rate(self):
        pos = HeldPosition("005930", "삼성전자", 10, 70_000, 71_400, _T0, "기본매수")
        assert pos.profit == pytest.approx(14_000)
        assert pos.profit_rate == pytest.approx(2.0)

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValueError, match="quantity"):
            HeldPosition("005930", "삼성전자", 0, 70_000, 70_000, _T0, "기본매수")

    def test_add_fill_averages_cost(self):
        pos = HeldPosition("005930", "삼성전자", 10, 100.0, 100.0, _T0, "기본매수")
        merged = pos.add_fill(10, 110.0)
        assert merged.quantity == 20
        assert merged.avg_price == pytest.approx(105.0)


# ── Positions ────────────────────────────────────────────────────────────


class TestPositions:
    def test_record_buy_fill_creates_position(self):
        store = TradingStore()
        store.record_buy_fill("005930", "삼성전자", 14, 70_000, "기본매수", _T0)
        pos = store.get_position("005930")
        assert pos.quantity == 14
        assert pos.current_price == 70_000
        assert store.position_count() == 1

    def test_upsert_position_replaces_by_code(self):
        store = TradingStore()
        first = HeldPosition("005930", "삼성전자", 10, 70_000, 70_000, _T0, "기본매수")
        second = HeldPosition("005930", "삼성전자", 3, 72_000, 72_500, _T0, "밴드매매")
        store.upsert_position(first)
        store.upsert_position(
            HeldPosition("000660", "SK하이닉스", 1, 150_000, 150_000, _T0, "기본매수")
        )
        store.upsert_position(second)

        assert store.position_count() == 2
        assert store.get_position("005930") == second
        assert store.held_codes() == ["005930", "000660"]

    def test_one_position_per_code(self):
        store = TradingStore()
        store.record_buy_fill("005930", "삼성전자", 10, 100.0, "기본매수", _T0)
        store.record_buy_fill("005930", "삼성전자", 10, 110.0, "기본매수", _T0)
        assert store.position_count() == 1
        assert store.get_position("005930").quantity == 20

    def test_remove_position(self):
        store = TradingStore()
        store.record_buy_fill("005930", "삼성전자", 10, 100.0, "기본매수", _T0)
        removed = store.remove_position("005930")
        assert removed.code == "005930"
        assert store.get_position("005930") is None
        assert store.remove_position("005930") is None

    def test_update_price(self):
        store = TradingStore()
        store.record_buy_fill("005930", "삼성전자", 10, 100.0, "기본매수", _T0)
        updated = store.update_price("005930", 102.0)
        assert updated.profit_rate == pytest.approx(2.0)
        assert store.get_position("005930").current_price == 102.0

    def test_update_price_ignores_unknown_and_invalid(self):
        store = TradingStore()
        store.record_buy_fill("005930", "삼성전자", 10, 100.0, "기본매수", _T0)
        assert store.update_price("000660", 50.0) is None
        assert store.update_price("005930", 0) is None
        assert store.get_position("005930").current_price == 100.0

    def test_positions_keep_insertion_order(self):
        store = TradingStore()
        for code in ("000001", "000002", "000003"):
            store.record_buy_fill(code, code, 1, 100.0, "기본매수", _T0)
        assert store.held_codes() == ["000001", "000002", "000003"]

    def test_snapshot_is_a_copy(self):
        store = TradingStore()
        store.record_buy_fill("005930", "삼성전자", 10, 100.0, "기본매수", _T0)
        snapshot = store.positions()
        store.remove_position("005930")
        assert len(snapshot) == 1


# ── Detected candidates ──────────────────────────────────────────────────


class TestDetected:
    def test_newest_first(self):
        store = TradingStore()
        store.add_detected(_candidate("000001", minute=0))
        store.add_detected(_candidate("000002", minute=1))
        assert [c.code for c in store.detected()] == ["000002", "000001"]

    def test_same_code_replaces(self):
        store = TradingStore()
        store.add_detected(_candidate("000001", price=1000, minute=0))
        store.add_detected(_candidate("000002", minute=1))
        store.add_detected(_candidate("000001", price=1200, minute=2))
        detected = store.detected()
        assert [c.code for c in detected] == ["000001", "000002"]
        assert detected[0].price == 1200

    def test_bounded_to_most_recent(self):
        store = TradingStore(max_detected=100)
        for i in range(120):
            store.add_detected(_candidate(f"{i:06d}", minute=i))
        detected = store.detected()
        assert len(detected) == 100
        assert detected[0].code == "000119"
        assert detected[-1].code == "000020"


# ── Execution log ────────────────────────────────────────────────────────


class TestExecutionLog:
    def test_fifo_eviction_keeps_last_100(self):
        store = TradingStore()
        for i in range(105):
            store.append_log(LOG_INFO, f"entry {i}", _T0 + timedelta(seconds=i))
        logs = store.logs()
        assert len(logs) == 100
        assert logs[0].message == "entry 5"
        assert logs[-1].message == "entry 104"
        assert [e.time for e in logs] == sorted(e.time for e in logs)

    def test_entry_fields(self):
        store = TradingStore()
        entry = store.append_log(LOG_BUY, "bought", _T0)
        assert entry.category == LOG_BUY
        assert store.logs() == [entry]

    def test_clear(self):
        store = TradingStore()
        store.append_log(LOG_INFO, "x")
        store.clear_logs()
        assert store.logs() == []

    def test_concurrent_appends(self):
        store = TradingStore(max_log_entries=1000)

        def _writer(tag: str):
            for i in range(100):
                store.append_log(LOG_INFO, f"{tag}-{i}")

        threads = [threading.Thread(target=_writer, args=(t,)) for t in "abcd"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.logs()) == 400
