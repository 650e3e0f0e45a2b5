"""Three-way reconciliation of local, remote and last synced state."""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from ..utils import mtimes_equal
from .scanner import TrackedItem
from .state import SyncedItem, SyncState

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    """Actions that can be taken during sync."""

    UPLOAD = "upload"
    """Upload local file to remote"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    DELETE_LOCAL = "delete_local"
    """Delete local file or directory"""

    DELETE_REMOTE = "delete_remote"
    """Delete remote file or folder"""

    CREATE_LOCAL_DIR = "create_local_dir"
    """Create a local directory"""

    CREATE_REMOTE_DIR = "create_remote_dir"
    """Create a remote folder"""

    RENAME = "rename"
    """Rename a conflict loser, then transfer the winner"""

    CONFLICT = "conflict"
    """Both sides changed incompatibly"""

    NOOP = "noop"
    """No action needed"""

    @property
    def is_transfer(self) -> bool:
        """Whether the action changes either side."""
        return self not in (SyncAction.NOOP, SyncAction.CONFLICT)

    @property
    def is_delete(self) -> bool:
        return self in (SyncAction.DELETE_LOCAL, SyncAction.DELETE_REMOTE)


class Side(str, Enum):
    """One side of a sync root."""

    LOCAL = "local"
    REMOTE = "remote"


class ConflictKind(str, Enum):
    """Ways in which both sides can diverge."""

    BOTH_MODIFIED = "both_modified"
    BOTH_CREATED = "both_created"
    MODIFIED_LOCALLY_DELETED_REMOTELY = "modified_locally_deleted_remotely"
    DELETED_LOCALLY_MODIFIED_REMOTELY = "deleted_locally_modified_remotely"
    KIND_MISMATCH = "kind_mismatch"


@dataclass(frozen=True)
class SyncDecision:
    """Represents a decision about how to sync one path."""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    relative_path: str
    """Relative path of the item"""

    local_item: Optional[TrackedItem] = None
    """Current local item (if exists)"""

    remote_item: Optional[TrackedItem] = None
    """Current remote item (if exists)"""

    prior: Optional[SyncedItem] = None
    """Last synced snapshot (if any)"""

    conflict_kind: Optional[ConflictKind] = None
    """Set on CONFLICT decisions"""

    rename_side: Optional[Side] = None
    """RENAME only: side holding the version to rename"""

    new_path: Optional[str] = None
    """RENAME only: path the renamed version is moved to"""

    followup: Optional[SyncAction] = None
    """RENAME only: transfer bringing the winner to the other side"""

    @property
    def paths(self) -> tuple[str, ...]:
        """All paths touched by executing this decision."""
        if self.new_path:
            return (self.relative_path, self.new_path)
        return (self.relative_path,)

    @property
    def is_dir(self) -> bool:
        item = self.local_item or self.remote_item
        return item is not None and item.is_dir


@dataclass
class ChangeSet:
    """Input of one reconciliation: both live scans and the prior state."""

    local: dict[str, TrackedItem]
    remote: dict[str, TrackedItem]
    prior: SyncState

    def all_paths(self) -> list[str]:
        return sorted(set(self.local) | set(self.remote) | set(self.prior.items))


def has_changed(current: TrackedItem, previous: TrackedItem) -> bool:
    """Check whether an item differs from its last synced snapshot.

    Content hashes decide when both are known; otherwise size, revision
    and modification time are compared.
    """
    if current.kind != previous.kind:
        return True
    if current.is_dir:
        return False
    if current.content_hash and previous.content_hash:
        return current.content_hash != previous.content_hash
    if current.size != previous.size:
        return True
    if current.revision and previous.revision and current.revision != previous.revision:
        return True
    return not mtimes_equal(current.mtime, previous.mtime)


def same_content(local: TrackedItem, remote: TrackedItem) -> bool:
    """Check whether both sides hold identical files (or are both directories)."""
    if local.kind != remote.kind:
        return False
    if local.is_dir:
        return True
    return bool(local.content_hash) and local.content_hash == remote.content_hash


def _depth(path: str) -> int:
    return path.count("/")


def _is_descendant(path: str, ancestor: str) -> bool:
    return path.startswith(ancestor + "/")


class Reconciler:
    """Diffs the live scans against the last synced state.

    The reconciler is pure: it only reads the ChangeSet and returns an
    ordered plan. Creations and transfers come first in path order, so
    directories precede their contents; deletions come last, deepest first.
    """

    def reconcile(self, change_set: ChangeSet) -> list[SyncDecision]:
        """Compute the sync plan.

        Args:
            change_set: Local scan, remote scan and prior state

        Returns:
            Ordered list of SyncDecision objects (one per path)
        """
        decisions: dict[str, SyncDecision] = {}

        for path in change_set.all_paths():
            decisions[path] = self._reconcile_path(
                path,
                change_set.local.get(path),
                change_set.remote.get(path),
                change_set.prior.get(path),
            )

        self._keep_needed_directories(decisions)
        return self._order(decisions.values())

    def _reconcile_path(
        self,
        path: str,
        local: Optional[TrackedItem],
        remote: Optional[TrackedItem],
        prior: Optional[SyncedItem],
    ) -> SyncDecision:
        """Classify a single path."""

        def decide(
            action: SyncAction, reason: str, kind: Optional[ConflictKind] = None
        ) -> SyncDecision:
            return SyncDecision(
                action=action,
                reason=reason,
                relative_path=path,
                local_item=local,
                remote_item=remote,
                prior=prior,
                conflict_kind=kind,
            )

        if local and remote:
            return self._reconcile_both(local, remote, prior, decide)

        if local:
            if prior is None:
                if local.is_dir:
                    return decide(SyncAction.CREATE_REMOTE_DIR, "New local directory")
                return decide(SyncAction.UPLOAD, "New local file")
            if has_changed(local, prior.local) or self._recreated(local, prior.local):
                return decide(
                    SyncAction.CONFLICT,
                    "Modified locally but deleted remotely",
                    ConflictKind.MODIFIED_LOCALLY_DELETED_REMOTELY,
                )
            return decide(SyncAction.DELETE_LOCAL, "Deleted remotely")

        if remote:
            if prior is None:
                if remote.is_dir:
                    return decide(SyncAction.CREATE_LOCAL_DIR, "New remote folder")
                return decide(SyncAction.DOWNLOAD, "New remote file")
            if has_changed(remote, prior.remote) or self._recreated(
                remote, prior.remote
            ):
                return decide(
                    SyncAction.CONFLICT,
                    "Deleted locally but modified remotely",
                    ConflictKind.DELETED_LOCALLY_MODIFIED_REMOTELY,
                )
            return decide(SyncAction.DELETE_REMOTE, "Deleted locally")

        return decide(SyncAction.NOOP, "Deleted on both sides")

    def _reconcile_both(self, local, remote, prior, decide) -> SyncDecision:
        if local.kind != remote.kind:
            return decide(
                SyncAction.CONFLICT,
                f"Local {local.kind.value} clashes with remote {remote.kind.value}",
                ConflictKind.KIND_MISMATCH,
            )
        if local.is_dir:
            return decide(SyncAction.NOOP, "Directory exists on both sides")
        if same_content(local, remote):
            return decide(SyncAction.NOOP, "Identical content on both sides")

        if prior is None:
            return decide(
                SyncAction.CONFLICT,
                "Created on both sides with different content",
                ConflictKind.BOTH_CREATED,
            )

        local_changed = has_changed(local, prior.local)
        remote_changed = has_changed(remote, prior.remote)
        if local_changed and remote_changed:
            return decide(
                SyncAction.CONFLICT,
                "Modified on both sides",
                ConflictKind.BOTH_MODIFIED,
            )
        if local_changed:
            return decide(SyncAction.UPLOAD, "Modified locally")
        if remote_changed:
            return decide(SyncAction.DOWNLOAD, "Modified remotely")
        return decide(SyncAction.NOOP, "Unchanged since last sync")

    @staticmethod
    def _recreated(item: TrackedItem, previous: TrackedItem) -> bool:
        """Whether the surviving item is a different object than the synced one.

        A file deleted and created again with the same content is not
        "changed", but it is not the item the other side deleted either.
        """
        if item.remote_id and previous.remote_id:
            if item.remote_id != previous.remote_id:
                return True
        return (
            item.creation_time is not None
            and previous.creation_time is not None
            and abs(item.creation_time - previous.creation_time) > 0.001
        )

    def _keep_needed_directories(self, decisions: dict[str, SyncDecision]) -> None:
        """Turn directory deletions into re-creations when contents survive.

        A directory deleted on one side cannot be removed from the other side
        while one of its descendants still needs to exist there; it is
        recreated on the deleting side instead.
        """
        dir_deletes = sorted(
            (
                path
                for path, d in decisions.items()
                if d.action.is_delete and d.is_dir
            ),
            key=lambda p: (-_depth(p), p),
        )
        for path in dir_deletes:
            decision = decisions[path]
            survivors = [
                d
                for other, d in decisions.items()
                if _is_descendant(other, path)
                and d.action not in (SyncAction.NOOP, decision.action)
            ]
            if not survivors:
                continue

            if decision.action == SyncAction.DELETE_LOCAL:
                action = SyncAction.CREATE_REMOTE_DIR
                reason = "Deleted remotely but contains local changes"
            else:
                action = SyncAction.CREATE_LOCAL_DIR
                reason = "Deleted locally but contains remote changes"
            logger.debug(f"{path}: {reason}")
            decisions[path] = replace(decision, action=action, reason=reason)

    @staticmethod
    def _order(decisions) -> list[SyncDecision]:
        forward = sorted(
            (d for d in decisions if not d.action.is_delete),
            key=lambda d: d.relative_path,
        )
        deletes = sorted(
            (d for d in decisions if d.action.is_delete),
            key=lambda d: (-_depth(d.relative_path), d.relative_path),
        )
        return forward + deletes
