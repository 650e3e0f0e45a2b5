"""Primitive local and remote operations used by the transfer executor."""

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Optional

import send2trash

from ..api import DriveClient
from ..exceptions import DriveNotFoundError, TransferError, TransferIntegrityError
from ..models import FileEntry
from ..utils import calculate_md5, mtimes_equal
from .ignore import TEMP_FILE_SUFFIX, ExclusionPolicy
from .scanner import TrackedItem

logger = logging.getLogger(__name__)


class SyncOperations:
    """Unified local/remote operations with a common interface.

    Every method either completes fully or raises; partial downloads never
    replace existing files.
    """

    def __init__(
        self,
        client: DriveClient,
        local_root: Path,
        use_local_trash: bool = True,
        policy: Optional[ExclusionPolicy] = None,
    ):
        """Initialize sync operations.

        Args:
            client: Drive API client
            local_root: Local directory of the sync root
            use_local_trash: Move deleted local files to the system trash
                instead of removing them permanently
            policy: Exclusion policy; excluded files may remain inside a
                directory that is deleted
        """
        self.client = client
        self.local_root = local_root
        self.use_local_trash = use_local_trash
        self.policy = policy or ExclusionPolicy()

    # =========================
    # Local filesystem
    # =========================

    def local_path(self, relative_path: str) -> Path:
        """Resolve a relative path below the local root.

        Raises:
            TransferError: If the path would escape the local root
        """
        parts = relative_path.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise TransferError(f"Unsafe path: {relative_path!r}", path=relative_path)
        return self.local_root.joinpath(*parts)

    def stat_local(self, relative_path: str) -> TrackedItem:
        """Read the current metadata of a local item (hashing files)."""
        return TrackedItem.from_path(self.local_path(relative_path), self.local_root)

    def check_unchanged(self, relative_path: str, expected: Optional[TrackedItem]) -> None:
        """Ensure a local item still matches what the scan saw.

        Raises:
            TransferError: If the item was created, modified or removed
                after the scan (permanent; the next cycle picks it up)
        """
        path = self.local_path(relative_path)
        if expected is None:
            if path.exists():
                raise TransferError(
                    f"{relative_path} appeared locally during sync", path=relative_path
                )
            return
        try:
            stat = path.stat()
        except FileNotFoundError:
            raise TransferError(
                f"{relative_path} was removed locally during sync", path=relative_path
            ) from None
        if expected.is_dir:
            return
        if stat.st_size != expected.size or not mtimes_equal(stat.st_mtime, expected.mtime):
            raise TransferError(
                f"{relative_path} was modified locally during sync", path=relative_path
            )

    def create_local_dir(self, relative_path: str) -> TrackedItem:
        path = self.local_path(relative_path)
        path.mkdir(parents=True, exist_ok=True)
        return TrackedItem.from_path(path, self.local_root)

    def rename_local(self, relative_path: str, new_relative_path: str) -> TrackedItem:
        """Rename a local item, refusing to overwrite an existing one."""
        source = self.local_path(relative_path)
        target = self.local_path(new_relative_path)
        if target.exists():
            raise FileExistsError(f"Rename target exists: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        source.rename(target)
        return TrackedItem.from_path(target, self.local_root)

    def delete_local(self, local_item: TrackedItem) -> None:
        """Delete a local file or directory.

        An item that is already gone counts as deleted. A directory is only
        deleted once everything left inside it is excluded from sync.

        Args:
            local_item: Local item to delete (as seen by the scan)
        """
        path = self.local_path(local_item.relative_path)
        if not path.exists() and not path.is_symlink():
            logger.debug(f"{local_item.relative_path} was already deleted locally")
            return
        self.check_unchanged(local_item.relative_path, local_item)

        if local_item.is_dir:
            for child in path.iterdir():
                child_path = child.relative_to(self.local_root).as_posix()
                if not self.policy.is_excluded(child_path, is_dir=child.is_dir()):
                    raise TransferError(
                        f"{local_item.relative_path} is not empty ({child_path})",
                        path=local_item.relative_path,
                    )

        if self.use_local_trash:
            send2trash.send2trash(str(path))
        elif local_item.is_dir:
            # Contents were deleted first; only excluded files can remain
            shutil.rmtree(path)
        else:
            path.unlink()

    # =========================
    # Remote
    # =========================

    def create_remote_folder(self, name: str, parent_id: str) -> FileEntry:
        return self.client.create_folder(name=name, parent_id=parent_id)

    def rename_remote(self, remote_item: TrackedItem, new_name: str) -> FileEntry:
        if not remote_item.remote_id:
            raise TransferError(
                f"{remote_item.relative_path} has no remote ID",
                path=remote_item.relative_path,
            )
        return self.client.rename_file(remote_item.remote_id, new_name)

    def delete_remote(self, remote_item: TrackedItem) -> None:
        """Move a remote item to the trash.

        An item that is already gone counts as deleted.
        """
        if not remote_item.remote_id:
            raise TransferError(
                f"{remote_item.relative_path} has no remote ID",
                path=remote_item.relative_path,
            )
        try:
            self.client.trash_file(remote_item.remote_id)
        except DriveNotFoundError:
            logger.debug(f"{remote_item.relative_path} was already deleted remotely")

    def upload_file(
        self,
        relative_path: str,
        parent_id: str,
        expected_remote: Optional[TrackedItem] = None,
    ) -> tuple[TrackedItem, TrackedItem]:
        """Upload a whole local file and verify the stored content.

        Args:
            relative_path: Relative path of the local file
            parent_id: Remote folder that receives the file
            expected_remote: Remote file the scan saw at this path; its
                content is replaced, unless it changed since the scan
                (None creates a new remote file)

        Returns:
            Tuple of (local item, remote item) after the upload

        Raises:
            TransferIntegrityError: If the remote size/hash does not match
            TransferError: If the remote file changed during the sync
        """
        file_id = None
        if expected_remote is not None and expected_remote.remote_id:
            file_id = expected_remote.remote_id
            current = self.client.get_file(file_id)
            if current.md5_checksum != expected_remote.content_hash or not mtimes_equal(
                current.modified_time, expected_remote.mtime
            ):
                raise TransferError(
                    f"{relative_path} was modified remotely during sync",
                    path=relative_path,
                )

        local_item = self.stat_local(relative_path)
        entry = self.client.upload_file(
            file_path=self.local_path(relative_path),
            name=local_item.name,
            parent_id=parent_id,
            file_id=file_id,
            modified_time=local_item.mtime,
        )
        if entry.size != local_item.size or entry.md5_checksum != local_item.content_hash:
            raise TransferIntegrityError(
                f"Uploaded {relative_path} does not match local content "
                f"({entry.size} bytes, md5 {entry.md5_checksum})",
                path=relative_path,
            )
        return local_item, TrackedItem.from_entry(entry, relative_path)

    def download_file(
        self,
        remote_item: TrackedItem,
        expected_local: Optional[TrackedItem],
    ) -> TrackedItem:
        """Download a whole remote file and move it into place.

        The content is written to a temporary file next to the destination,
        verified against the remote size and md5, and then atomically renamed
        over the destination.

        Args:
            remote_item: Remote file to download
            expected_local: Local item the scan saw at this path (None if the
                path was free); the download is refused if it changed since

        Returns:
            The local item after the download

        Raises:
            TransferIntegrityError: If the downloaded content does not match
            TransferError: If the local file changed during the sync
        """
        relative_path = remote_item.relative_path
        if not remote_item.remote_id:
            raise TransferError(f"{relative_path} has no remote ID", path=relative_path)

        destination = self.local_path(relative_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_path = destination.with_name(
            f".{destination.name}.{uuid.uuid4().hex[:8]}{TEMP_FILE_SUFFIX}"
        )

        try:
            self.client.download_file(remote_item.remote_id, temp_path)
            size = temp_path.stat().st_size
            if size != remote_item.size:
                raise TransferIntegrityError(
                    f"Downloaded {relative_path} has {size} bytes, "
                    f"expected {remote_item.size}",
                    path=relative_path,
                )
            digest = calculate_md5(temp_path)
            if remote_item.content_hash and digest != remote_item.content_hash:
                raise TransferIntegrityError(
                    f"Downloaded {relative_path} has md5 {digest}, "
                    f"expected {remote_item.content_hash}",
                    path=relative_path,
                )
            os.utime(temp_path, (remote_item.mtime, remote_item.mtime))
            self.check_unchanged(relative_path, expected_local)
            os.replace(temp_path, destination)
        finally:
            # Incomplete downloads never stay behind
            temp_path.unlink(missing_ok=True)

        return TrackedItem.from_path(
            destination,
            self.local_root,
            known=TrackedItem(
                relative_path=relative_path,
                kind=remote_item.kind,
                size=remote_item.size,
                mtime=remote_item.mtime,
                content_hash=digest,
            ),
        )
