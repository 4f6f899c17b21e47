"""Engine configuration for MotorsportRSS."""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

DEFAULT_DATA_DIR = Path.home() / ".motorsportrss"
USER_AGENT = "MotorsportRSS Reader 1.0"

HOME_ENV = "MOTORSPORTRSS_HOME"
LOG_LEVEL_ENV = "MOTORSPORTRSS_LOG_LEVEL"


@dataclass
class EngineConfig:
    """Settings passed explicitly into the feed engine."""

    data_dir: Path = DEFAULT_DATA_DIR
    max_retry_attempts: int = 3
    retry_base_delay: float = 1.0
    request_timeout: float = 15.0
    user_agent: str = USER_AGENT
    stale_after: timedelta = timedelta(minutes=30)

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache" / "feeds"

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @classmethod
    def from_env(cls, data_dir: Optional[Path] = None) -> "EngineConfig":
        """Build a config, honouring MOTORSPORTRSS_HOME when no directory is given."""
        if data_dir is None:
            env_home = os.environ.get(HOME_ENV)
            data_dir = Path(env_home).expanduser() if env_home else DEFAULT_DATA_DIR
        return cls(data_dir=data_dir)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the command-line front end.

    Args:
        level: Level name; defaults to MOTORSPORTRSS_LOG_LEVEL or WARNING
    """
    level_name = (level or os.environ.get(LOG_LEVEL_ENV, "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
