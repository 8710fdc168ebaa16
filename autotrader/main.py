"""AutoTrader — application entry point.

Runs the trading engine headless: logs the streaming session in, starts the
buy / sell loops with the persisted strategy settings, and shuts everything
down on Ctrl-C.
"""

import argparse
import asyncio
import logging
import signal
import time
from typing import Optional

from autotrader.broker.kiwoom_client import KiwoomClient
from autotrader.config import Config, load_config
from autotrader.engine_manager import EngineManager
from autotrader.repos.settings_repo import SettingsRepo
from autotrader.stream.session import StreamError

logger = logging.getLogger("autotrader")


def warn_if_live(environment: str) -> bool:
    """Log a prominent warning when trading against the live API.

    Returns ``True`` if *environment* is ``"live"``.
    """
    if environment == "live":
        logger.warning(
            "LIVE TRADING MODE — Real money at risk! Starting in 5 seconds..."
        )
        return True
    return False


def build_manager(config: Config, settings_path: Optional[str] = None) -> EngineManager:
    """Construct the broker, settings repository and manager for *config*."""
    broker = KiwoomClient(config)
    settings = SettingsRepo(settings_path or config.settings_path)
    return EngineManager(config=config, broker=broker, settings=settings)


async def run(manager: EngineManager, stream: bool = True) -> None:
    """Run until SIGINT, then shut the manager down."""
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        loop.call_soon_threadsafe(stop_requested.set)

    signal.signal(signal.SIGINT, handle_shutdown)

    if stream:
        try:
            await manager.connect_stream()
        except StreamError as exc:
            logger.error("Streaming unavailable, falling back to price polling: %s", exc)

    try:
        await manager.start_engine()
    except ValueError as exc:
        logger.error("%s", exc)
        await manager.shutdown()
        return

    await stop_requested.wait()
    await manager.shutdown()
    status = manager.get_engine_status()
    logger.info(
        "AutoTrader stopped. Trades: %d (ok %d, failed %d), realized P/L: %.0f",
        status["total_trades"],
        status["successful_trades"],
        status["failed_trades"],
        status["total_profit"],
    )


def _run_cli() -> None:
    """Parse CLI arguments and run the engine."""
    parser = argparse.ArgumentParser(description="AutoTrader equity trading bot")
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    parser.add_argument(
        "--settings",
        help="Strategy settings JSON (default: SETTINGS_PATH or trading_settings.json)",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Skip the real-time session and poll prices over REST",
    )
    args = parser.parse_args()

    config = load_config(args.env_file)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if warn_if_live(config.kiwoom_environment):
        time.sleep(5)

    manager = build_manager(config, args.settings)
    logger.info("Starting AutoTrader against the %s API.", config.kiwoom_environment)
    asyncio.run(run(manager, stream=not args.no_stream))


if __name__ == "__main__":
    _run_cli()
