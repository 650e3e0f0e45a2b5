"""Local and remote scanning for sync operations."""

import logging
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..api import DriveClient
from ..exceptions import DriveAPIError, DriveAuthenticationError, ScanError
from ..file_entries_manager import FileEntriesManager
from ..models import FileEntry
from ..utils import calculate_md5, mtimes_equal
from .ignore import ExclusionPolicy

logger = logging.getLogger(__name__)


class ItemKind(str, Enum):
    """Kind of a tracked item."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class TrackedItem:
    """Metadata snapshot of one file or directory on one side."""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    kind: ItemKind

    size: int = 0
    """File size in bytes (0 for directories)"""

    mtime: float = 0.0
    """Last modification time (Unix timestamp)"""

    content_hash: Optional[str] = None
    """MD5 hex digest of the content (files only)"""

    remote_id: Optional[str] = None
    """Remote entry ID (remote items and synced snapshots only)"""

    revision: Optional[str] = None
    """Remote revision marker"""

    creation_time: Optional[float] = None
    """Creation time (Unix timestamp) if available"""

    deleted: bool = False

    @property
    def is_dir(self) -> bool:
        return self.kind == ItemKind.DIRECTORY

    @property
    def name(self) -> str:
        return self.relative_path.rsplit("/", 1)[-1]

    @property
    def parent_path(self) -> str:
        """Relative path of the parent directory ("" for the sync root)."""
        return self.relative_path.rsplit("/", 1)[0] if "/" in self.relative_path else ""

    def with_path(self, relative_path: str) -> "TrackedItem":
        return replace(self, relative_path=relative_path)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for JSON serialization."""
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackedItem":
        """Create a TrackedItem from a dictionary.

        Raises:
            KeyError: If 'relative_path' is missing
            ValueError: If 'kind' is not a valid ItemKind
        """
        return cls(
            relative_path=data["relative_path"],
            kind=ItemKind(data.get("kind", ItemKind.FILE.value)),
            size=int(data.get("size", 0)),
            mtime=float(data.get("mtime", 0.0)),
            content_hash=data.get("content_hash"),
            remote_id=data.get("remote_id"),
            revision=data.get("revision"),
            creation_time=data.get("creation_time"),
            deleted=bool(data.get("deleted", False)),
        )

    @classmethod
    def from_path(
        cls,
        file_path: Path,
        base_path: Path,
        known: Optional["TrackedItem"] = None,
    ) -> "TrackedItem":
        """Create a TrackedItem from a local path.

        Args:
            file_path: Absolute path to the file or directory
            base_path: Base path for calculating relative paths
            known: Previously recorded item; its hash is reused when size and
                mtime are unchanged

        Returns:
            TrackedItem instance
        """
        stat = file_path.stat()
        relative_path = file_path.relative_to(base_path).as_posix()
        stat_any: Any = stat  # st_birthtime is platform-specific
        creation_time = getattr(stat_any, "st_birthtime", None)

        if file_path.is_dir():
            return cls(
                relative_path=relative_path,
                kind=ItemKind.DIRECTORY,
                mtime=stat.st_mtime,
                creation_time=creation_time,
            )

        if (
            known is not None
            and not known.is_dir
            and known.content_hash
            and known.size == stat.st_size
            and mtimes_equal(known.mtime, stat.st_mtime)
        ):
            content_hash = known.content_hash
        else:
            content_hash = calculate_md5(file_path)

        return cls(
            relative_path=relative_path,
            kind=ItemKind.FILE,
            size=stat.st_size,
            mtime=stat.st_mtime,
            content_hash=content_hash,
            creation_time=creation_time,
        )

    @classmethod
    def from_entry(cls, entry: FileEntry, relative_path: str) -> "TrackedItem":
        """Create a TrackedItem from a remote file entry."""
        return cls(
            relative_path=relative_path,
            kind=ItemKind.DIRECTORY if entry.is_folder else ItemKind.FILE,
            size=entry.size,
            mtime=entry.modified_time,
            content_hash=entry.md5_checksum,
            remote_id=entry.id,
            revision=entry.version,
            creation_time=entry.created_time,
            deleted=entry.trashed,
        )


class DirectoryScanner:
    """Scans a local directory tree.

    Examples:
        >>> scanner = DirectoryScanner(ExclusionPolicy(patterns=["*.tmp"]))
        >>> items = scanner.scan_local(Path("/sync/folder"))
        >>> list(items)  # sorted relative paths
        ['docs', 'docs/a.txt', 'notes.txt']
    """

    def __init__(self, policy: Optional[ExclusionPolicy] = None):
        self.policy = policy or ExclusionPolicy()

    def scan_local(
        self,
        root: Path,
        prior: Optional[dict[str, TrackedItem]] = None,
    ) -> dict[str, TrackedItem]:
        """Recursively scan a local directory.

        Args:
            root: Root directory of the sync pair
            prior: Last synced local items, used to skip re-hashing
                unchanged files

        Returns:
            Mapping of relative path to TrackedItem, ordered by path

        Raises:
            ScanError: If the root or any directory below it cannot be read
        """
        if not root.is_dir():
            raise ScanError(f"Local directory is not accessible: {root}")

        start = time.time()
        self.policy.load_from_directory(root)
        items: list[TrackedItem] = []
        self._scan_directory(root, root, prior or {}, items)

        result = {item.relative_path: item for item in sorted(items, key=_path_key)}
        logger.debug(
            f"Local scan of {root} took {time.time() - start:.2f}s "
            f"for {len(result)} item(s)"
        )
        return result

    def _scan_directory(
        self,
        directory: Path,
        base_path: Path,
        prior: dict[str, TrackedItem],
        items: list[TrackedItem],
    ) -> None:
        try:
            children = list(directory.iterdir())
        except OSError as e:
            # Omitting a directory would look like a deletion
            raise ScanError(f"Cannot read directory {directory}: {e}") from e

        for child in children:
            if child.is_symlink():
                logger.debug(f"Skipping symlink: {child}")
                continue
            relative_path = child.relative_to(base_path).as_posix()
            is_dir = child.is_dir()
            if self.policy.is_excluded(relative_path, is_dir=is_dir):
                logger.debug(f"Ignoring (excluded): {relative_path}")
                continue

            try:
                item = TrackedItem.from_path(child, base_path, prior.get(relative_path))
            except FileNotFoundError:
                # Removed while scanning
                continue
            except OSError as e:
                raise ScanError(f"Cannot read {child}: {e}") from e

            items.append(item)
            if item.is_dir:
                self._scan_directory(child, base_path, prior, items)


class RemoteScanner:
    """Builds the remote snapshot of a sync root from the Drive listing."""

    def __init__(
        self,
        client: DriveClient,
        policy: Optional[ExclusionPolicy] = None,
    ):
        self.client = client
        self.policy = policy or ExclusionPolicy()

    def scan_remote(self, folder_id: str) -> dict[str, TrackedItem]:
        """Scan a remote folder recursively, following every listing page.

        Args:
            folder_id: ID of the remote root folder

        Returns:
            Mapping of relative path to TrackedItem, ordered by path

        Raises:
            ScanError: If the listing cannot be completed or is malformed
            DriveAuthenticationError: If the access token is rejected
        """
        start = time.time()
        manager = FileEntriesManager(self.client)
        try:
            entries_with_paths = manager.get_all_recursive(folder_id=folder_id)
        except DriveAuthenticationError:
            raise
        except DriveAPIError as e:
            raise ScanError(f"Remote scan of folder {folder_id} failed: {e}") from e

        candidates: dict[str, list[FileEntry]] = {}
        skipped_prefixes: list[str] = []
        for entry, rel_path in entries_with_paths:
            if any(rel_path.startswith(prefix + "/") for prefix in skipped_prefixes):
                continue
            if entry.trashed:
                continue
            if "/" in entry.name:
                logger.warning(f"Skipping remote entry with '/' in name: {rel_path}")
                skipped_prefixes.append(rel_path)
                continue
            if entry.is_native_document:
                logger.debug(f"Skipping native document: {rel_path}")
                continue
            if self.policy.is_excluded(rel_path, is_dir=entry.is_folder):
                logger.debug(f"Ignoring (excluded): {rel_path}")
                continue
            candidates.setdefault(rel_path, []).append(entry)

        items: list[TrackedItem] = []
        for rel_path, entries in candidates.items():
            entry = _pick_duplicate(rel_path, entries)
            items.append(TrackedItem.from_entry(entry, rel_path))

        result = {item.relative_path: item for item in sorted(items, key=_path_key)}
        logger.debug(
            f"Remote scan of {folder_id} took {time.time() - start:.2f}s "
            f"for {len(result)} item(s)"
        )
        return result


def _pick_duplicate(rel_path: str, entries: list[FileEntry]) -> FileEntry:
    """Choose one entry when Drive holds several with the same name.

    Folders win over files, then the most recently modified entry, then the
    smallest ID, so the choice is stable across cycles.
    """
    if len(entries) > 1:
        logger.warning(
            f"{len(entries)} remote entries share the path {rel_path}; "
            "only one is synchronized"
        )
    return sorted(
        entries, key=lambda e: (not e.is_folder, -e.modified_time, e.id)
    )[0]


def _path_key(item: TrackedItem) -> str:
    return item.relative_path
