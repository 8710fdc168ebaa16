"""Settings repository — JSON persistence for the strategy settings document."""

import json
import logging
import pathlib
from typing import Optional

from autotrader.models.strategy_config import StrategyConfig

logger = logging.getLogger("autotrader")


class SettingsRepo:
    """Loads and saves ``StrategyConfig`` as the Korean-keyed settings document.

    Args:
        path: Path to the JSON settings file.
    """

    def __init__(self, path: str | pathlib.Path) -> None:
        self._path = pathlib.Path(path)

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def load(self) -> Optional[StrategyConfig]:
        """Return the stored config, or ``None`` when nothing usable is stored."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to read settings from %s: %s", self._path, exc)
            return None
        if not isinstance(data, dict):
            logger.error("Settings file %s does not hold a JSON object.", self._path)
            return None
        try:
            return StrategyConfig.from_settings(data)
        except (TypeError, ValueError) as exc:
            logger.error("Invalid settings in %s: %s", self._path, exc)
            return None

    def save(self, config: StrategyConfig) -> None:
        """Write *config*, replacing the previous document."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps(config.to_settings(), ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )
        tmp.replace(self._path)
        logger.info("Strategy settings saved to %s", self._path)
