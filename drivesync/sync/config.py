"""Loading sync pairs from a JSON configuration file."""

import json
import logging
from pathlib import Path
from typing import Any

from ..exceptions import DriveConfigError
from .pair import SyncPair

logger = logging.getLogger(__name__)


class SyncConfigError(DriveConfigError):
    """Raised when a sync configuration file is invalid."""


def load_sync_pairs_from_json(config_path: Path) -> list[SyncPair]:
    """Load sync pairs from a JSON file.

    The file contains a list of pair objects::

        [
            {
                "local": "/home/user/Documents",
                "remoteFolderId": "1AbCdEf",
                "ignore": ["*.log"],
                "excludeDotFiles": true,
                "useLocalTrash": true,
                "conflictPolicy": "newest"
            }
        ]

    Args:
        config_path: Path to the JSON file

    Returns:
        List of SyncPair objects

    Raises:
        SyncConfigError: If the file cannot be read or a pair is invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            data: Any = json.load(f)
    except FileNotFoundError as e:
        raise SyncConfigError(f"Config file not found: {config_path}") from e
    except json.JSONDecodeError as e:
        raise SyncConfigError(f"Invalid JSON in {config_path}: {e}") from e
    except OSError as e:
        raise SyncConfigError(f"Cannot read config file {config_path}: {e}") from e

    if not isinstance(data, list):
        raise SyncConfigError(f"{config_path} must contain a list of sync pairs")
    if not data:
        raise SyncConfigError(f"{config_path} does not define any sync pair")

    pairs: list[SyncPair] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise SyncConfigError(f"Sync pair at index {index} must be an object")
        try:
            pairs.append(SyncPair.from_dict(item))
        except ValueError as e:
            raise SyncConfigError(f"Invalid sync pair at index {index}: {e}") from e

    keys = [pair.key for pair in pairs]
    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        raise SyncConfigError(f"Duplicate sync pair(s): {', '.join(duplicates)}")

    logger.debug(f"Loaded {len(pairs)} sync pair(s) from {config_path}")
    return pairs
