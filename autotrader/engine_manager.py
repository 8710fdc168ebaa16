"""EngineManager — owns the session, store and engine for one trading desk.

This is the surface the excluded HTTP / UI layer talks to.  It constructs
its collaborators once (no module-level singletons), wires streaming ticks
into the store, and exposes start / stop / status and snapshot reads.
"""

import logging
from typing import Callable, Optional

from autotrader.broker.kiwoom_client import KiwoomClient
from autotrader.config import Config
from autotrader.engine import TradingEngine
from autotrader.models.strategy_config import StrategyConfig
from autotrader.repos.settings_repo import SettingsRepo
from autotrader.store.models import DetectedCandidate, ExecutionLogEntry, HeldPosition
from autotrader.store.trading_store import TradingStore
from autotrader.stream.models import TickUpdate
from autotrader.stream.session import StreamingSession
from autotrader.stream.subscribers import Subscription

logger = logging.getLogger("autotrader.engine_manager")


class EngineManager:
    """Lifecycle manager for the trading engine and its streaming session.

    Args:
        config:   Global ``Config`` loaded from ``.env``.
        broker:   Shared ``KiwoomClient`` instance.
        settings: Repository for the persisted strategy settings.
        session:  Streaming session; built from ``config`` when omitted.
        store:    Shared store; a fresh one when omitted.
        engine:   Trading engine; built from the above when omitted.
    """

    def __init__(
        self,
        config: Config,
        broker: KiwoomClient,
        settings: Optional[SettingsRepo] = None,
        session: Optional[StreamingSession] = None,
        store: Optional[TradingStore] = None,
        engine: Optional[TradingEngine] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._settings = settings
        self._store = store or TradingStore()
        self._session = session or StreamingSession(
            max_reconnect_attempts=config.reconnect_attempts,
            reconnect_delay=config.reconnect_delay_seconds,
            login_timeout=config.login_timeout_seconds,
            token_provider=self._stream_token,
        )
        self._engine = engine or TradingEngine(
            config=config,
            broker=broker,
            store=self._store,
            session=self._session,
        )
        self._price_feed = self._session.on_tick(self._apply_tick)

    @property
    def store(self) -> TradingStore:
        return self._store

    @property
    def session(self) -> StreamingSession:
        return self._session

    @property
    def engine(self) -> TradingEngine:
        return self._engine

    def _apply_tick(self, tick: TickUpdate) -> None:
        self._store.update_price(tick.code, tick.price)

    # ── Engine control ───────────────────────────────────────────────────

    async def start_engine(self, cfg: Optional[StrategyConfig] = None) -> bool:
        """Start trading with *cfg*, or the persisted settings when omitted.

        Raises ``ValueError`` when neither is available.  Returns ``False``
        when the engine was already running.
        """
        if cfg is None and self._settings is not None:
            cfg = self._settings.load()
        if cfg is None:
            raise ValueError("No strategy settings — save settings before starting.")

        started = self._engine.start(cfg)
        if started and self._store.held_codes() and self._session.is_logged_in:
            await self._session.register(self._store.held_codes())
        return started

    async def stop_engine(self) -> bool:
        """Stop trading.  Idempotent; in-flight orders are left to finish."""
        stopped = self._engine.stop()
        if stopped:
            logger.info("Engine stopped via manager.")
        return stopped

    def update_strategy_config(self, cfg: StrategyConfig, persist: bool = True) -> None:
        """Apply *cfg* to the running engine and optionally persist it."""
        if persist and self._settings is not None:
            self._settings.save(cfg)
        self._engine.update_config(cfg)

    def get_engine_status(self) -> dict:
        return self._engine.status()

    # ── Snapshots ────────────────────────────────────────────────────────

    def get_detected_candidates(self) -> list[DetectedCandidate]:
        return self._store.detected()

    def get_held_positions(self) -> list[HeldPosition]:
        return self._store.positions()

    def get_execution_log(self) -> list[ExecutionLogEntry]:
        return self._store.logs()

    # ── Streaming ────────────────────────────────────────────────────────

    def on_tick(self, callback: Callable[[TickUpdate], None]) -> Subscription:
        """Subscribe to real-time ticks; cancel the returned token to stop."""
        return self._session.on_tick(callback)

    async def _stream_token(self) -> str:
        token = await self._broker.get_access_token()
        return token.token

    async def connect_stream(self) -> None:
        """Log the streaming session in with a fresh REST access token."""
        await self._session.connect(self._config.socket_url, await self._stream_token())
        held = self._store.held_codes()
        if held:
            await self._session.register(held)

    async def register_instruments(self, codes: list[str]) -> bool:
        return await self._session.register(codes)

    async def shutdown(self) -> None:
        """Stop the engine, wait for its loops and close the session."""
        self._engine.stop()
        await self._engine.join()
        await self._session.disconnect()
        logger.info("EngineManager shut down.")
