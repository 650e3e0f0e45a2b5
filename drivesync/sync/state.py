"""Persistent sync state.

The state of a sync root is the snapshot both sides agreed on after the
previous cycle: for every path, the local and remote metadata recorded when
the path was last synchronized. It is stored as a single versioned JSON
record per sync root, written atomically (temp file + rename).

To survive crashes in the middle of a cycle, every confirmed transfer is
also appended to a per-root journal. Loading replays the journal on top of
the snapshot; a successful commit folds it in and truncates it.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..exceptions import StateStoreError
from .scanner import TrackedItem

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


@dataclass(frozen=True)
class SyncedItem:
    """The agreed local/remote snapshot of one path."""

    local: TrackedItem
    remote: TrackedItem

    @property
    def relative_path(self) -> str:
        return self.local.relative_path

    @property
    def is_dir(self) -> bool:
        return self.local.is_dir

    def to_dict(self) -> dict[str, Any]:
        return {"local": self.local.to_dict(), "remote": self.remote.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncedItem":
        return cls(
            local=TrackedItem.from_dict(data["local"]),
            remote=TrackedItem.from_dict(data["remote"]),
        )


@dataclass
class SyncState:
    """Last synchronized state of a sync root."""

    local_path: str
    """Local directory path that was synced"""

    remote_folder_id: str
    """Remote folder ID that was synced"""

    items: dict[str, SyncedItem] = field(default_factory=dict)
    """Agreed snapshot per relative path"""

    last_sync: Optional[str] = None
    """ISO timestamp of last successful commit"""

    schema_version: int = SCHEMA_VERSION

    def get(self, path: str) -> Optional[SyncedItem]:
        return self.items.get(path)

    def copy(self) -> "SyncState":
        return SyncState(
            local_path=self.local_path,
            remote_folder_id=self.remote_folder_id,
            items=dict(self.items),
            last_sync=self.last_sync,
            schema_version=self.schema_version,
        )

    def apply(self, path: str, item: Optional[SyncedItem]) -> None:
        """Set or (with None) remove the entry of a path."""
        if item is None:
            self.items.pop(path, None)
        else:
            self.items[path] = item

    def to_dict(self) -> dict[str, Any]:
        """Convert state to dictionary for JSON serialization."""
        return {
            "schema_version": self.schema_version,
            "local_path": self.local_path,
            "remote_folder_id": self.remote_folder_id,
            "last_sync": self.last_sync,
            "items": {path: self.items[path].to_dict() for path in sorted(self.items)},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncState":
        """Create SyncState from dictionary, migrating older schemas.

        Raises:
            StateStoreError: If the record is malformed or from a newer schema
        """
        version = data.get("schema_version", 1)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise StateStoreError(f"Unsupported state schema version: {version!r}")
        try:
            # Version 1 records predate item kinds; TrackedItem defaults to files
            items = {
                path: SyncedItem.from_dict(entry)
                for path, entry in data.get("items", {}).items()
            }
            return cls(
                local_path=data["local_path"],
                remote_folder_id=data["remote_folder_id"],
                items=items,
                last_sync=data.get("last_sync"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StateStoreError(f"Malformed sync state: {e}") from e


class StateStore:
    """Persists the sync state of one sync root.

    The store is keyed by a hash of the local path and remote folder ID so
    that several sync roots can share a state directory. Incremental updates
    from concurrent transfer workers are serialized by an internal lock.
    """

    def __init__(self, state_dir: Path, local_path: Path, remote_folder_id: str):
        """Initialize the state store.

        Args:
            state_dir: Directory to store state files
            local_path: Local directory of the sync root
            remote_folder_id: Remote folder ID of the sync root
        """
        self.state_dir = state_dir
        self.local_path = str(local_path.resolve())
        self.remote_folder_id = remote_folder_id
        self._lock = threading.Lock()

        key = self._get_state_key(self.local_path, remote_folder_id)
        self.snapshot_file = state_dir / f"{key}.json"
        self.journal_file = state_dir / f"{key}.journal"

    @staticmethod
    def _get_state_key(local_path: str, remote_folder_id: str) -> str:
        """Generate a unique key for a sync root."""
        combined = f"{local_path}:{remote_folder_id}"
        return hashlib.sha256(combined.encode()).hexdigest()[:16]

    def empty_state(self) -> SyncState:
        return SyncState(local_path=self.local_path, remote_folder_id=self.remote_folder_id)

    def load(self) -> SyncState:
        """Load the sync state, replaying any journaled records.

        Never fails: a missing store yields an empty state, and a corrupt or
        unreadable snapshot is logged and treated as empty, which forces a
        full reconciliation.

        Returns:
            The last synchronized state
        """
        with self._lock:
            state = self._load_snapshot()
            replayed = self._replay_journal(state)
        if replayed:
            logger.info(
                f"Recovered {replayed} record(s) from interrupted sync journal"
            )
        logger.debug(f"Loaded sync state with {len(state.items)} item(s)")
        return state

    def _load_snapshot(self) -> SyncState:
        if not self.snapshot_file.exists():
            logger.debug(f"No sync state found at {self.snapshot_file}")
            return self.empty_state()

        try:
            with open(self.snapshot_file, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise StateStoreError("State file does not contain an object")
            return SyncState.from_dict(data)
        except (OSError, json.JSONDecodeError, StateStoreError) as e:
            logger.warning(
                f"Failed to load sync state from {self.snapshot_file}, "
                f"starting from empty state: {e}"
            )
            return self.empty_state()

    def _replay_journal(self, state: SyncState) -> int:
        if not self.journal_file.exists():
            return 0

        replayed = 0
        try:
            with open(self.journal_file, encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.warning(f"Failed to read sync journal {self.journal_file}: {e}")
            return 0

        for line_num, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                item_data = record["item"]
                item = SyncedItem.from_dict(item_data) if item_data else None
                state.apply(record["path"], item)
                replayed += 1
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                # A torn trailing line is expected after a crash mid-write
                logger.warning(
                    f"Skipping unreadable journal record {line_num} in "
                    f"{self.journal_file}: {e}"
                )
        return replayed

    def commit(self, state: SyncState) -> None:
        """Durably replace the snapshot and truncate the journal.

        Args:
            state: The state to persist

        Raises:
            StateStoreError: If the snapshot cannot be written
        """
        state.last_sync = datetime.now(timezone.utc).isoformat()
        payload = json.dumps(state.to_dict(), indent=2)

        with self._lock:
            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    dir=self.state_dir, prefix=self.snapshot_file.name, suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(payload)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_name, self.snapshot_file)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
                self.journal_file.unlink(missing_ok=True)
            except OSError as e:
                raise StateStoreError(f"Failed to save sync state: {e}") from e

        logger.debug(
            f"Saved sync state with {len(state.items)} item(s) to {self.snapshot_file}"
        )

    def record_item(self, path: str, item: Optional[SyncedItem]) -> None:
        """Journal the new agreed state of one path.

        Args:
            path: Relative path
            item: New snapshot, or None when the path no longer exists

        Raises:
            StateStoreError: If the journal cannot be written
        """
        line = json.dumps({"path": path, "item": item.to_dict() if item else None})
        with self._lock:
            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                with open(self.journal_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise StateStoreError(f"Failed to record {path}: {e}") from e

    def clear(self) -> bool:
        """Remove the stored state.

        Returns:
            True if state was cleared, False if no state existed
        """
        with self._lock:
            existed = self.snapshot_file.exists() or self.journal_file.exists()
            self.snapshot_file.unlink(missing_ok=True)
            self.journal_file.unlink(missing_ok=True)
        if existed:
            logger.debug(f"Cleared sync state at {self.snapshot_file}")
        return existed
