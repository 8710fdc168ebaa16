"""AutoTrader — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "KIWOOM_APP_KEY",
    "KIWOOM_SECRET_KEY",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    kiwoom_app_key: str
    kiwoom_secret_key: str
    kiwoom_environment: str  # "mock" or "live"
    market_segment: str
    candidate_scan_limit: int
    buy_scan_interval_seconds: float
    sell_check_interval_seconds: float
    reconnect_attempts: int
    reconnect_delay_seconds: float
    login_timeout_seconds: float
    candle_history_count: int
    market_timezone: str
    settings_path: str
    log_level: str

    @property
    def base_url(self) -> str:
        """Return the Kiwoom REST API base URL based on environment."""
        if self.kiwoom_environment == "live":
            return "https://api.kiwoom.com"
        return "https://mockapi.kiwoom.com"

    @property
    def socket_url(self) -> str:
        """Return the Kiwoom real-time WebSocket URL based on environment."""
        if self.kiwoom_environment == "live":
            return "wss://api.kiwoom.com:10000/api/dostk/websocket"
        return "wss://mockapi.kiwoom.com:10000/api/dostk/websocket"


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    environment = os.environ.get("KIWOOM_ENVIRONMENT", "mock")
    if environment not in ("mock", "live"):
        raise ValueError(
            f"KIWOOM_ENVIRONMENT must be 'mock' or 'live', got '{environment}'"
        )

    return Config(
        kiwoom_app_key=os.environ["KIWOOM_APP_KEY"],
        kiwoom_secret_key=os.environ["KIWOOM_SECRET_KEY"],
        kiwoom_environment=environment,
        market_segment=os.environ.get("MARKET_SEGMENT", "000"),
        candidate_scan_limit=int(os.environ.get("CANDIDATE_SCAN_LIMIT", "30")),
        buy_scan_interval_seconds=float(
            os.environ.get("BUY_SCAN_INTERVAL_SECONDS", "3")
        ),
        sell_check_interval_seconds=float(
            os.environ.get("SELL_CHECK_INTERVAL_SECONDS", "2")
        ),
        reconnect_attempts=int(os.environ.get("RECONNECT_ATTEMPTS", "5")),
        reconnect_delay_seconds=float(
            os.environ.get("RECONNECT_DELAY_SECONDS", "3")
        ),
        login_timeout_seconds=float(os.environ.get("LOGIN_TIMEOUT_SECONDS", "10")),
        candle_history_count=int(os.environ.get("CANDLE_HISTORY_COUNT", "30")),
        market_timezone=os.environ.get("MARKET_TIMEZONE", "Asia/Seoul"),
        settings_path=os.environ.get("SETTINGS_PATH", "trading_settings.json"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )
