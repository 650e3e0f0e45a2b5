"""Deterministic conflict resolution.

No version is ever discarded because of a conflict. When both sides hold
different content, the losing version is renamed on its own side to a
``<name> (conflicted YYYY-MM-DD)<ext>`` path and the winner takes the
original path on both sides. The renamed copy is picked up as a new item
and propagated by the next cycle.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional

from ..exceptions import ConflictPolicyError
from .reconciler import ChangeSet, ConflictKind, Side, SyncAction, SyncDecision
from .scanner import TrackedItem
from .state import SyncedItem

logger = logging.getLogger(__name__)


class ConflictPolicy(str, Enum):
    """Which version wins a content conflict."""

    NEWEST_WINS = "newest"
    """Most recent modification time wins; remote wins exact ties"""

    LOCAL_WINS = "local"
    REMOTE_WINS = "remote"


class ConflictResolution(str, Enum):
    """Outcome of a resolved conflict."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    KEEP_BOTH = "keep_both_renamed"


@dataclass
class ConflictRecord:
    """A path changed incompatibly on both sides since the last sync."""

    relative_path: str
    kind: ConflictKind
    local: Optional[TrackedItem]
    remote: Optional[TrackedItem]
    prior: Optional[SyncedItem] = None
    resolution: Optional[ConflictResolution] = None
    renamed_to: Optional[str] = None

    @classmethod
    def from_decision(cls, decision: SyncDecision) -> "ConflictRecord":
        if decision.conflict_kind is None:
            raise ConflictPolicyError(
                f"Decision for {decision.relative_path} is not a conflict"
            )
        return cls(
            relative_path=decision.relative_path,
            kind=decision.conflict_kind,
            local=decision.local_item,
            remote=decision.remote_item,
            prior=decision.prior,
        )


def conflict_path(path: str, mtime: float, taken: set[str]) -> str:
    """Build a free path for a conflicted copy.

    Examples:
        >>> conflict_path("notes/plan.txt", 1704067200.0, set())
        'notes/plan (conflicted 2024-01-01).txt'
        >>> conflict_path("plan.txt", 1704067200.0, {"plan (conflicted 2024-01-01).txt"})
        'plan (conflicted 2024-01-01 2).txt'
    """
    posix = PurePosixPath(path)
    date = datetime.fromtimestamp(mtime, tz=timezone.utc).strftime("%Y-%m-%d")
    parent = "" if str(posix.parent) == "." else f"{posix.parent}/"

    counter = 1
    while True:
        label = f"conflicted {date}" if counter == 1 else f"conflicted {date} {counter}"
        candidate = f"{parent}{posix.stem} ({label}){posix.suffix}"
        if candidate not in taken:
            return candidate
        counter += 1


class ConflictResolver:
    """Turns CONFLICT decisions into executable decisions."""

    def __init__(self, policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS):
        self.policy = policy

    def resolve(
        self,
        record: ConflictRecord,
        policy: Optional[ConflictPolicy] = None,
        taken_paths: Optional[set[str]] = None,
    ) -> SyncDecision:
        """Resolve one conflict.

        Args:
            record: The conflict to resolve (its resolution is filled in)
            policy: Policy to apply (defaults to the resolver's policy)
            taken_paths: Paths already used on either side; the conflicted
                copy name is chosen outside this set, which is updated

        Returns:
            Decision to execute instead of the conflict

        Raises:
            ConflictPolicyError: If the record cannot be resolved
        """
        policy = policy or self.policy
        taken = taken_paths if taken_paths is not None else set()
        path = record.relative_path
        local, remote = record.local, record.remote

        if record.kind == ConflictKind.MODIFIED_LOCALLY_DELETED_REMOTELY:
            if local is None:
                raise ConflictPolicyError(f"{path}: local version missing")
            record.resolution = ConflictResolution.KEEP_LOCAL
            action = SyncAction.CREATE_REMOTE_DIR if local.is_dir else SyncAction.UPLOAD
            return self._decision(record, action, "Kept local version (remote was deleted)")

        if record.kind == ConflictKind.DELETED_LOCALLY_MODIFIED_REMOTELY:
            if remote is None:
                raise ConflictPolicyError(f"{path}: remote version missing")
            record.resolution = ConflictResolution.KEEP_REMOTE
            action = SyncAction.CREATE_LOCAL_DIR if remote.is_dir else SyncAction.DOWNLOAD
            return self._decision(record, action, "Kept remote version (local was deleted)")

        if local is None or remote is None:
            raise ConflictPolicyError(f"{path}: {record.kind.value} needs both versions")

        if record.kind == ConflictKind.KIND_MISMATCH:
            # The directory stays in place so its contents keep their paths
            if local.is_dir:
                loser_side, followup = Side.REMOTE, SyncAction.CREATE_REMOTE_DIR
            else:
                loser_side, followup = Side.LOCAL, SyncAction.CREATE_LOCAL_DIR
        else:
            if self._local_wins(local, remote, policy):
                loser_side, followup = Side.REMOTE, SyncAction.UPLOAD
            else:
                loser_side, followup = Side.LOCAL, SyncAction.DOWNLOAD

        loser = remote if loser_side == Side.REMOTE else local
        new_path = conflict_path(path, loser.mtime, taken)
        taken.add(new_path)

        record.resolution = ConflictResolution.KEEP_BOTH
        record.renamed_to = new_path
        logger.info(
            f"Conflict on {path}: keeping {'local' if loser_side == Side.REMOTE else 'remote'} "
            f"version, {loser_side.value} version renamed to {new_path}"
        )
        return replace(
            self._decision(
                record,
                SyncAction.RENAME,
                f"Conflict ({record.kind.value}): {loser_side.value} copy renamed",
            ),
            rename_side=loser_side,
            new_path=new_path,
            followup=followup,
        )

    @staticmethod
    def _local_wins(local: TrackedItem, remote: TrackedItem, policy: ConflictPolicy) -> bool:
        if policy == ConflictPolicy.LOCAL_WINS:
            return True
        if policy == ConflictPolicy.REMOTE_WINS:
            return False
        if policy == ConflictPolicy.NEWEST_WINS:
            # Exact ties go to the remote version
            return local.mtime > remote.mtime
        raise ConflictPolicyError(f"Unknown conflict policy: {policy!r}")

    @staticmethod
    def _decision(record: ConflictRecord, action: SyncAction, reason: str) -> SyncDecision:
        return SyncDecision(
            action=action,
            reason=reason,
            relative_path=record.relative_path,
            local_item=record.local,
            remote_item=record.remote,
            prior=record.prior,
            conflict_kind=record.kind,
        )

    def resolve_all(
        self,
        decisions: list[SyncDecision],
        change_set: ChangeSet,
        policy: Optional[ConflictPolicy] = None,
    ) -> tuple[list[SyncDecision], list[ConflictRecord]]:
        """Replace every CONFLICT decision of a plan.

        Conflicts that cannot be resolved stay in the plan as CONFLICT
        decisions and are skipped by the executor.

        Returns:
            Tuple of (resolved plan, conflict records)
        """
        taken = set(change_set.local) | set(change_set.remote) | set(change_set.prior.items)
        resolved: list[SyncDecision] = []
        records: list[ConflictRecord] = []

        for decision in decisions:
            if decision.action != SyncAction.CONFLICT:
                resolved.append(decision)
                continue
            try:
                record = ConflictRecord.from_decision(decision)
                records.append(record)
                resolved.append(self.resolve(record, policy, taken))
            except ConflictPolicyError as e:
                logger.error(f"Cannot resolve conflict on {decision.relative_path}: {e}")
                resolved.append(decision)

        return resolved, records
