"""AutoTrader — Trading engine (orchestration loops).

Connects candidate scanning, strategy rules, sell rules and the broker into
two concurrently scheduled loops:

- buy scan: fetch ranked candidates, evaluate the buy rules, size and submit
  market buys while capacity remains;
- sell check: refresh held prices and submit sells for positions that hit
  take-profit, stop-loss or the trailing stop.

Both loops share one ``TradingStore``.  The active ``StrategyConfig`` is read
once at the top of each iteration; ``update_config`` swaps the reference.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from autotrader.broker.kiwoom_client import KiwoomClient
from autotrader.broker.models import InstrumentSnapshot
from autotrader.config import Config
from autotrader.models.strategy_config import StrategyConfig
from autotrader.risk.exit_rules import SellReason, check_sell_signal, make_trailing_stop
from autotrader.risk.position_sizer import calculate_quantity
from autotrader.risk.trailing_stop import TrailingStop
from autotrader.store.models import (
    LOG_BUY,
    LOG_INFO,
    LOG_SELL,
    DetectedCandidate,
    HeldPosition,
)
from autotrader.store.trading_store import TradingStore
from autotrader.strategy.evaluators import (
    StrategyKind,
    requires_history,
    select_buy_strategy,
)
from autotrader.stream.session import StreamingSession

logger = logging.getLogger("autotrader")


class TradingEngine:
    """Runs the buy-scan and sell-check loops against one store.

    Args:
        config: Application configuration (cadences, scan limits, timezone).
        broker: A ``KiwoomClient`` (or compatible duck-type / mock).
        store: Shared position / candidate / log store.
        session: Optional streaming session.  While it is logged in, held
            prices come from ticks and newly bought codes are registered.
        clock: Returns the current market-local time.  Defaults to
            ``datetime.now`` in ``config.market_timezone``.
    """

    def __init__(
        self,
        config: Config,
        broker: KiwoomClient,
        store: TradingStore,
        session: Optional[StreamingSession] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._store = store
        self._session = session
        if clock is None:
            tz = ZoneInfo(config.market_timezone)
            clock = lambda: datetime.now(tz)  # noqa: E731
        self._clock = clock

        self._strategy_config: Optional[StrategyConfig] = None
        self._running: bool = False
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: list[asyncio.Task] = []
        self._pending_buys: set[str] = set()
        self._pending_sells: set[str] = set()
        self._trailing: dict[str, TrailingStop] = {}

        self._started_at: Optional[datetime] = None
        self._total_trades = 0
        self._successful_trades = 0
        self._failed_trades = 0
        self._total_profit = 0.0
        self._daily_buys = 0
        self._daily_date: Optional[date] = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def strategy_config(self) -> Optional[StrategyConfig]:
        return self._strategy_config

    def start(self, strategy_config: StrategyConfig) -> bool:
        """Reset counters and schedule both loops.

        Must be called from inside the running event loop.  Returns
        ``False`` (and changes nothing) when already running.
        """
        if self._running:
            logger.info("Engine already running — start ignored.")
            return False

        self._strategy_config = strategy_config
        self._total_trades = 0
        self._successful_trades = 0
        self._failed_trades = 0
        self._total_profit = 0.0
        self._started_at = self._clock()
        self._running = True
        # Each run owns its event; loops from an earlier run exit on theirs.
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._tasks = [t for t in self._tasks if not t.done()] + [
            asyncio.create_task(self._buy_loop(stop_event), name="buy-scan"),
            asyncio.create_task(self._sell_loop(stop_event), name="sell-check"),
        ]
        self._store.append_log(LOG_INFO, "자동매매를 시작합니다.", self._started_at)
        logger.info(
            "Engine started (buy every %.1fs, sell check every %.1fs).",
            self._config.buy_scan_interval_seconds,
            self._config.sell_check_interval_seconds,
        )
        return True

    def stop(self) -> bool:
        """Signal both loops to stop after their current iteration.

        In-flight orders are not cancelled.  Idempotent: returns ``False``
        when the engine was not running.
        """
        if not self._running:
            return False
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        self._store.append_log(LOG_INFO, "자동매매를 중지합니다.", self._clock())
        logger.info("Engine stop requested.")
        return True

    async def join(self) -> None:
        """Wait for every loop started so far to finish."""
        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def update_config(self, strategy_config: StrategyConfig) -> None:
        """Swap the active strategy config; picked up by the next iteration."""
        previous = self._strategy_config
        self._strategy_config = strategy_config
        if previous is None or previous.sell != strategy_config.sell:
            self._trailing.clear()
        logger.info("Strategy config updated.")

    def status(self) -> dict:
        """Counters and run state for status displays."""
        cfg = self._strategy_config
        return {
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "total_trades": self._total_trades,
            "successful_trades": self._successful_trades,
            "failed_trades": self._failed_trades,
            "total_profit": round(self._total_profit, 2),
            "daily_buys": self._daily_buys,
            "held_positions": self._store.position_count(),
            "max_concurrent_stocks": cfg.max_concurrent_stocks if cfg else None,
            "session": self._session.status() if self._session else None,
        }

    # ── Loops ────────────────────────────────────────────────────────────

    @staticmethod
    async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` as soon as stop is requested."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _buy_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            if await self._wait(stop_event, self._config.buy_scan_interval_seconds):
                break
            try:
                result = await self.scan_candidates_once()
                logger.debug("Buy scan: %s", result)
            except Exception as exc:
                logger.error("Buy scan error: %s", exc)

    async def _sell_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            if await self._wait(stop_event, self._config.sell_check_interval_seconds):
                break
            try:
                result = await self.check_sells_once()
                logger.debug("Sell check: %s", result)
            except Exception as exc:
                logger.error("Sell check error: %s", exc)

    # ── Buy scan ─────────────────────────────────────────────────────────

    async def scan_candidates_once(self, now: Optional[datetime] = None) -> dict:
        """Run one buy-scan iteration.

        Returns a dict describing what happened:

        - ``{"action": "skipped", "reason": "..."}``
        - ``{"action": "scanned", "candidates": n, "detected": [...], "bought": [...]}``
        """
        cfg = self._strategy_config
        stop_event = self._stop_event
        if not self._running or cfg is None or stop_event is None:
            return {"action": "skipped", "reason": "not_running"}

        if now is None:
            now = self._clock()
        self._roll_daily_counter(now)

        if self._occupied_slots() >= cfg.max_concurrent_stocks:
            return {"action": "skipped", "reason": "at_capacity"}

        candidates = await self._broker.fetch_candidate_instruments(
            self._config.market_segment, self._config.candidate_scan_limit,
        )
        need_history = requires_history(cfg)
        detected: list[str] = []
        bought: list[str] = []

        for snapshot in candidates:
            if stop_event.is_set():
                break
            if self._occupied_slots() >= cfg.max_concurrent_stocks:
                break
            if snapshot.price <= 0 or snapshot.code in self._pending_buys:
                continue
            if self._store.get_position(snapshot.code):
                continue

            if need_history:
                snapshot = await self._with_history(snapshot)

            kind = select_buy_strategy(snapshot, cfg, now)
            if kind is None:
                continue

            self._store.add_detected(
                DetectedCandidate(
                    code=snapshot.code,
                    name=snapshot.name,
                    price=snapshot.price,
                    change_percent=snapshot.change_percent,
                    volume=snapshot.volume,
                    strategy=kind.label,
                    detected_at=now,
                )
            )
            detected.append(snapshot.code)

            if cfg.max_daily_trades and (
                self._daily_buys + len(self._pending_buys) >= cfg.max_daily_trades
            ):
                logger.info(
                    "Daily buy limit (%d) reached — not buying %s.",
                    cfg.max_daily_trades, snapshot.code,
                )
                continue

            # Re-checked after the awaits above; another scan may have claimed the code.
            if stop_event.is_set() or self._occupied_slots() >= cfg.max_concurrent_stocks:
                break
            if snapshot.code in self._pending_buys or self._store.get_position(snapshot.code):
                continue
            self._pending_buys.add(snapshot.code)
            try:
                if await self._buy(snapshot, kind, cfg, now):
                    bought.append(snapshot.code)
            finally:
                self._pending_buys.discard(snapshot.code)

        return {
            "action": "scanned",
            "candidates": len(candidates),
            "detected": detected,
            "bought": bought,
        }

    async def _with_history(self, snapshot: InstrumentSnapshot) -> InstrumentSnapshot:
        try:
            candles = await self._broker.fetch_candles(
                snapshot.code, self._config.candle_history_count,
            )
        except Exception as exc:
            logger.warning("Candle fetch failed for %s: %s", snapshot.code, exc)
            return snapshot
        return InstrumentSnapshot(
            code=snapshot.code,
            name=snapshot.name,
            price=snapshot.price,
            change_percent=snapshot.change_percent,
            volume=snapshot.volume,
            open=snapshot.open,
            high=snapshot.high,
            low=snapshot.low,
            history=tuple(candles),
        )

    def _occupied_slots(self) -> int:
        """Held positions plus buys still awaiting a broker answer."""
        return self._store.position_count() + len(self._pending_buys)

    def _roll_daily_counter(self, now: datetime) -> None:
        today = now.date()
        if self._daily_date != today:
            self._daily_date = today
            self._daily_buys = 0

    async def _buy(
        self,
        snapshot: InstrumentSnapshot,
        kind: StrategyKind,
        cfg: StrategyConfig,
        now: datetime,
    ) -> bool:
        label = f"{snapshot.name}({snapshot.code})"
        quantity = calculate_quantity(cfg.trading_amount_per_stock, snapshot.price)
        if quantity <= 0:
            logger.info(
                "Skipping %s — price %.0f exceeds amount per stock %.0f.",
                snapshot.code, snapshot.price, cfg.trading_amount_per_stock,
            )
            return False

        self._total_trades += 1
        try:
            result = await self._broker.submit_order(
                snapshot.code, quantity, snapshot.price, "buy", "market",
            )
        except Exception as exc:
            self._failed_trades += 1
            logger.warning("Buy order for %s failed: %s", snapshot.code, exc)
            self._store.append_log(LOG_INFO, f"{label} 매수 실패: {exc}", now)
            return False

        if not result.filled:
            self._failed_trades += 1
            self._store.append_log(
                LOG_INFO, f"{label} 매수 거부: {result.error or '미체결'}", now,
            )
            return False

        self._successful_trades += 1
        self._daily_buys += 1
        self._store.record_buy_fill(
            code=snapshot.code,
            name=snapshot.name,
            quantity=quantity,
            price=snapshot.price,
            strategy=kind.label,
            bought_at=now,
        )
        trailing = make_trailing_stop(cfg.sell)
        if trailing is not None:
            self._trailing[snapshot.code] = trailing
        self._store.append_log(
            LOG_BUY,
            f"[{kind.label}] {label} {quantity}주 매수 @ {snapshot.price:,.0f}원",
            now,
        )
        logger.info(
            "BUY %s x%d @ %.0f (%s)", snapshot.code, quantity, snapshot.price, kind.value,
        )

        if self._session is not None and self._session.is_logged_in:
            try:
                await self._session.register([snapshot.code])
            except Exception as exc:
                logger.warning("Real-time registration for %s failed: %s", snapshot.code, exc)
        return True

    # ── Sell check ───────────────────────────────────────────────────────

    async def check_sells_once(self) -> dict:
        """Run one sell-check iteration.

        Returns ``{"action": "skipped" | "held" | "sold", ...}``.
        """
        cfg = self._strategy_config
        if not self._running or cfg is None:
            return {"action": "skipped", "reason": "not_running"}

        if self._session is None or not self._session.is_logged_in:
            await self._refresh_prices()

        flagged: list[tuple[HeldPosition, SellReason]] = []
        for position in self._store.positions():
            if position.code in self._pending_sells:
                continue
            trailing = self._trailing.get(position.code)
            if trailing is None:
                trailing = make_trailing_stop(cfg.sell)
                if trailing is not None:
                    self._trailing[position.code] = trailing
            reason = check_sell_signal(position, cfg.sell, trailing)
            if reason is not None:
                flagged.append((position, reason))

        if not flagged:
            return {"action": "held", "positions": self._store.position_count()}

        for position, _ in flagged:
            self._pending_sells.add(position.code)
        outcomes = await asyncio.gather(
            *(self._sell(position, reason, cfg) for position, reason in flagged)
        )
        sold = [p.code for (p, _), ok in zip(flagged, outcomes) if ok]
        return {
            "action": "sold",
            "flagged": [p.code for p, _ in flagged],
            "sold": sold,
        }

    async def _refresh_prices(self) -> None:
        for code in self._store.held_codes():
            try:
                snapshot = await self._broker.fetch_current_price(code)
            except Exception as exc:
                logger.warning("Price refresh failed for %s: %s", code, exc)
                continue
            self._store.update_price(code, snapshot.price)

    async def _sell(
        self,
        position: HeldPosition,
        reason: SellReason,
        cfg: StrategyConfig,
    ) -> bool:
        label = f"{position.name}({position.code})"
        rate = position.profit_rate
        now = self._clock()
        self._total_trades += 1
        try:
            try:
                result = await self._broker.submit_order(
                    position.code, position.quantity, position.current_price,
                    "sell", "market",
                )
            except Exception as exc:
                self._failed_trades += 1
                logger.warning("Sell order for %s failed: %s", position.code, exc)
                self._store.append_log(LOG_INFO, f"{label} 매도 실패: {exc}", now)
                return False

            if not result.filled:
                self._failed_trades += 1
                self._store.append_log(
                    LOG_INFO, f"{label} 매도 거부: {result.error or '미체결'}", now,
                )
                return False

            self._successful_trades += 1
            self._store.remove_position(position.code)
            self._trailing.pop(position.code, None)
            self._total_profit += self._realized_profit(position, cfg)
            self._store.append_log(
                LOG_SELL,
                f"[{reason.value}] {label} {position.quantity}주 매도 "
                f"@ {position.current_price:,.0f}원 ({rate:+.2f}%)",
                now,
            )
            logger.info(
                "SELL %s x%d @ %.0f (%s, %+.2f%%)",
                position.code, position.quantity, position.current_price,
                reason.name, rate,
            )
            return True
        finally:
            self._pending_sells.discard(position.code)

    @staticmethod
    def _realized_profit(position: HeldPosition, cfg: StrategyConfig) -> float:
        """Profit net of commission on both legs."""
        cost = position.avg_price * position.quantity
        proceeds = position.current_price * position.quantity
        commission = (cost + proceeds) * cfg.commission_rate / 100.0
        return proceeds - cost - commission
