"""Configuration management for the GlobalLeaderboards SDK."""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "QueueSettings",
    "RealtimeSettings",
    "setup_logging",
    "DEFAULT_API_URL",
    "DEFAULT_WS_URL",
    "MAX_QUEUE_SIZE",
    "MAX_BATCH_SIZE",
    "QUEUE_TTL_HOURS",
]

logger = logging.getLogger(__name__)

APP_NAME = "GlobalLeaderboards"
APP_AUTHOR = "GlobalLeaderboards"

# API endpoints
DEFAULT_API_URL = "https://api.globalleaderboards.net"
DEFAULT_WS_URL = "wss://api.globalleaderboards.net"

# Offline queue limits
MAX_QUEUE_SIZE = 1000
MAX_BATCH_SIZE = 100  # server-side cap on /v1/scores/bulk
QUEUE_TTL_HOURS = 24
DEFAULT_DRAIN_INTERVAL = 60  # seconds

# Realtime defaults
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 1.0  # seconds
DEFAULT_PING_INTERVAL = 30.0  # seconds
DEFAULT_SSE_MAX_RETRIES = 3
DEFAULT_SSE_MAX_DELAY = 30.0  # seconds


@dataclass
class QueueSettings:
    """Offline queue configuration."""

    enabled: bool = True
    max_size: int = MAX_QUEUE_SIZE
    ttl_hours: float = QUEUE_TTL_HOURS
    batch_size: int = MAX_BATCH_SIZE
    drain_interval_seconds: int = DEFAULT_DRAIN_INTERVAL


@dataclass
class RealtimeSettings:
    """WebSocket and SSE connection settings."""

    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    ping_interval: float = DEFAULT_PING_INTERVAL
    sse_max_retries: int = DEFAULT_SSE_MAX_RETRIES
    sse_max_delay: float = DEFAULT_SSE_MAX_DELAY
    sse_top_n: int = 10
    connectivity_check_interval: int = 5  # seconds


@dataclass
class Config:
    """Main configuration object.

    The API key is deliberately not part of this object; it lives in the
    system keychain or is passed to the client directly.
    """

    api_url: str = DEFAULT_API_URL
    ws_url: str = DEFAULT_WS_URL
    default_leaderboard_id: Optional[str] = None
    timeout: int = 30  # seconds
    auto_retry: bool = True
    max_retries: int = 3
    queue: QueueSettings = field(default_factory=QueueSettings)
    realtime: RealtimeSettings = field(default_factory=RealtimeSettings)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite queue store)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config from file, or return defaults."""
        config_file = path or cls.get_config_file()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                return cls._from_dict(data)
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary, ignoring unknown keys."""
        queue_data = data.pop("queue", {})
        realtime_data = data.pop("realtime", {})

        # Older configs called the default leaderboard "app_id"
        if "app_id" in data and "default_leaderboard_id" not in data:
            data["default_leaderboard_id"] = data.pop("app_id") or None

        return cls(
            queue=_build(QueueSettings, queue_data),
            realtime=_build(RealtimeSettings, realtime_data),
            **{
                k: v
                for k, v in data.items()
                if k in cls.__dataclass_fields__ and k not in ("queue", "realtime")
            },
        )

    def save(self, path: Optional[Path] = None) -> None:
        """Save config to file."""
        config_file = path or self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")

    @property
    def queue_ttl_ms(self) -> int:
        return int(self.queue.ttl_hours * 60 * 60 * 1000)


def _build(settings_cls, data: dict):
    """Instantiate a settings dataclass from a partial dict."""
    if not data:
        return settings_cls()
    known = {k: v for k, v in data.items() if k in settings_cls.__dataclass_fields__}
    return settings_cls(**known)


def setup_logging(debug: bool = False, log_file: Optional[Path] = None) -> None:
    """Configure logging for applications embedding the SDK."""
    if log_file is None:
        log_dir = Config.get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "globalleaderboards.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
