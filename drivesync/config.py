"""Configuration management for drivesync.

Settings are read from environment variables first and fall back to a JSON
file in the user's config directory (``~/.config/drivesync/config.json``).
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .utils import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_WORKERS,
    DEFAULT_REQUEST_TIMEOUT,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://www.googleapis.com"


class Config:
    """Configuration for the drivesync client."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration.

        Args:
            config_dir: Configuration directory. Defaults to
                DRIVESYNC_CONFIG_DIR or ~/.config/drivesync
        """
        if config_dir is None:
            env_dir = os.environ.get("DRIVESYNC_CONFIG_DIR")
            config_dir = (
                Path(env_dir) if env_dir else Path.home() / ".config" / "drivesync"
            )
        self.config_dir = config_dir
        self._data: Optional[dict[str, Any]] = None

    def get_config_path(self) -> Path:
        """Return the path of the JSON config file."""
        return self.config_dir / "config.json"

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data

        path = self.get_config_path()
        data: dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning(f"Ignoring malformed config file {path}")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to read config file {path}: {e}")
        self._data = data
        return data

    def _save(self, data: dict[str, Any]) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        path = self.get_config_path()
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        # Tokens are credentials
        path.chmod(0o600)
        self._data = data

    @property
    def token(self) -> Optional[str]:
        """Access token from DRIVESYNC_TOKEN or the config file."""
        return os.environ.get("DRIVESYNC_TOKEN") or self._load().get("token")

    @property
    def api_url(self) -> str:
        """Base URL of the Drive API."""
        return (
            os.environ.get("DRIVESYNC_API_URL")
            or self._load().get("api_url")
            or DEFAULT_API_URL
        )

    @property
    def state_dir(self) -> Path:
        """Directory holding persisted sync state."""
        value = self._load().get("state_dir")
        return Path(value) if value else self.config_dir / "sync_state"

    @property
    def max_workers(self) -> int:
        """Number of parallel transfer workers."""
        return int(self._load().get("max_workers", DEFAULT_MAX_WORKERS))

    @property
    def max_attempts(self) -> int:
        """Attempts per action before a transient error becomes permanent."""
        return int(self._load().get("max_attempts", DEFAULT_MAX_ATTEMPTS))

    @property
    def request_timeout(self) -> float:
        """Timeout in seconds for each network request."""
        return float(self._load().get("request_timeout", DEFAULT_REQUEST_TIMEOUT))

    def is_configured(self) -> bool:
        """Check whether an access token is available."""
        return bool(self.token)

    def save_token(self, token: str) -> None:
        """Persist an access token in the config file."""
        data = dict(self._load())
        data["token"] = token
        self._save(data)


config = Config()
