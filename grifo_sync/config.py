"""Configuration management for Grifo Sync."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "SyncSettings",
    "setup_logging",
    "DEFAULT_API_URL",
    "MAX_QUEUE_SIZE",
]

logger = logging.getLogger(__name__)

APP_NAME = "Grifo Sync"
APP_AUTHOR = "Grifo"

# API endpoints
DEFAULT_API_URL = "http://127.0.0.1:3000/api"
API_URL_ENV = "GRIFO_API_URL"

# Sync settings
DEFAULT_SYNC_INTERVAL = 300  # seconds
DEFAULT_BATCH_SIZE = 5
MAX_BATCH_SIZE = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_REQUEST_TIMEOUT = 15  # seconds, per attempt
MAX_QUEUE_SIZE = 5000  # unsynced inspections kept on the device


@dataclass
class SyncSettings:
    """Sync configuration."""

    interval_seconds: int = DEFAULT_SYNC_INTERVAL
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay: float = 0.2  # seconds
    max_delay: float = 5.0  # seconds
    factor: float = 2.0
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    connection_attempts: int = 3
    connection_retry_delay: float = 2.0  # seconds
    min_interval_seconds: int = 0  # 0 disables the debounce
    compress: bool = True  # Use gzip compression
    max_queue_size: int = MAX_QUEUE_SIZE


@dataclass
class Config:
    """Main configuration object."""

    api_url: str = DEFAULT_API_URL
    empresa_id: Optional[str] = None
    vistoriador_id: Optional[str] = None
    token: Optional[str] = None
    sync: SyncSettings = field(default_factory=SyncSettings)
    show_alerts: bool = True
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite queue, etc.)."""
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
        config = cls()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                config = cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")

        env_api_url = os.getenv(API_URL_ENV)
        if env_api_url:
            config.api_url = env_api_url
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        data = dict(data)
        sync_data = data.pop("sync", {})
        sync_fields = SyncSettings.__dataclass_fields__

        return cls(
            sync=SyncSettings(
                **{k: v for k, v in sync_data.items() if k in sync_fields}
            ),
            **{
                k: v
                for k, v in data.items()
                if k in cls.__dataclass_fields__ and k != "sync"
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

    def update_from_server(self, server_config: dict) -> None:
        """Update local sync settings from a server response.

        Server returns:
            sync.sync_interval_seconds -> local interval_seconds
            sync.batch_size -> local batch_size
            sync.max_retries -> local max_retries
        """
        sync = server_config.get("sync", {})
        if "sync_interval_seconds" in sync:
            self.sync.interval_seconds = max(60, sync["sync_interval_seconds"])
        if "batch_size" in sync:
            self.sync.batch_size = max(1, min(sync["batch_size"], MAX_BATCH_SIZE))
        if "max_retries" in sync:
            self.sync.max_retries = max(0, sync["max_retries"])


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "grifo-sync.log"

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
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
