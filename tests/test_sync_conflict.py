"""Tests for conflict resolution."""

from datetime import datetime, timezone

import pytest

from drivesync.exceptions import ConflictPolicyError
from drivesync.sync.conflict import (
    ConflictPolicy,
    ConflictRecord,
    ConflictResolution,
    ConflictResolver,
    conflict_path,
)
from drivesync.sync.reconciler import (
    ChangeSet,
    ConflictKind,
    Side,
    SyncAction,
    SyncDecision,
)
from drivesync.sync.scanner import ItemKind, TrackedItem
from drivesync.sync.state import SyncState

JAN_1 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc).timestamp()
JAN_2 = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc).timestamp()


def item(path, mtime, content="h", kind=ItemKind.FILE, remote_id=None):
    return TrackedItem(path, kind, size=1, mtime=mtime, content_hash=content, remote_id=remote_id)


def record(kind=ConflictKind.BOTH_MODIFIED, local_mtime=JAN_2, remote_mtime=JAN_1, path="notes/plan.txt"):
    return ConflictRecord(
        relative_path=path,
        kind=kind,
        local=item(path, local_mtime, "L"),
        remote=item(path, remote_mtime, "R", remote_id="r1"),
    )


class TestConflictPath:
    """Tests for conflict_path."""

    def test_format(self):
        """Test the conflicted copy name."""
        assert conflict_path("notes/plan.txt", JAN_1, set()) == "notes/plan (conflicted 2024-01-01).txt"

    def test_no_extension(self):
        """Test names without extension."""
        assert conflict_path("Makefile", JAN_1, set()) == "Makefile (conflicted 2024-01-01)"

    def test_counter_when_taken(self):
        """Test that a counter is added until the name is free."""
        taken = {
            "plan (conflicted 2024-01-01).txt",
            "plan (conflicted 2024-01-01 2).txt",
        }

        assert conflict_path("plan.txt", JAN_1, taken) == "plan (conflicted 2024-01-01 3).txt"

    def test_date_is_utc(self):
        """Test that the date is taken in UTC."""
        late = datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc).timestamp()

        assert conflict_path("a.txt", late, set()) == "a (conflicted 2024-01-01).txt"


class TestConflictResolver:
    """Tests for ConflictResolver."""

    def test_newest_local_wins(self):
        """Test that the older remote version is renamed."""
        rec = record()

        decision = ConflictResolver().resolve(rec)

        assert decision.action == SyncAction.RENAME
        assert decision.rename_side == Side.REMOTE
        assert decision.followup == SyncAction.UPLOAD
        assert decision.new_path == "notes/plan (conflicted 2024-01-01).txt"
        assert rec.resolution == ConflictResolution.KEEP_BOTH
        assert rec.renamed_to == decision.new_path

    def test_newest_remote_wins(self):
        """Test that the older local version is renamed."""
        decision = ConflictResolver().resolve(record(local_mtime=JAN_1, remote_mtime=JAN_2))

        assert decision.rename_side == Side.LOCAL
        assert decision.followup == SyncAction.DOWNLOAD

    def test_tie_goes_to_remote(self):
        """Test that exactly equal times keep the remote version."""
        decision = ConflictResolver().resolve(record(local_mtime=JAN_1, remote_mtime=JAN_1))

        assert decision.rename_side == Side.LOCAL

    @pytest.mark.parametrize(
        "policy,renamed",
        [(ConflictPolicy.LOCAL_WINS, Side.REMOTE), (ConflictPolicy.REMOTE_WINS, Side.LOCAL)],
    )
    def test_fixed_policies(self, policy, renamed):
        """Test that fixed policies ignore timestamps."""
        decision = ConflictResolver(policy).resolve(record(local_mtime=JAN_1, remote_mtime=JAN_2))
        assert decision.rename_side == renamed
        decision = ConflictResolver(policy).resolve(record(local_mtime=JAN_2, remote_mtime=JAN_1))
        assert decision.rename_side == renamed

    def test_modified_side_survives_deletion(self):
        """Test that a modification wins over a deletion without renaming."""
        rec = ConflictRecord(
            "a.txt", ConflictKind.DELETED_LOCALLY_MODIFIED_REMOTELY, None, item("a.txt", JAN_1)
        )

        decision = ConflictResolver().resolve(rec)

        assert decision.action == SyncAction.DOWNLOAD
        assert rec.resolution == ConflictResolution.KEEP_REMOTE
        assert rec.renamed_to is None

        rec = ConflictRecord(
            "d",
            ConflictKind.MODIFIED_LOCALLY_DELETED_REMOTELY,
            item("d", JAN_1, None, ItemKind.DIRECTORY),
            None,
        )
        assert ConflictResolver().resolve(rec).action == SyncAction.CREATE_REMOTE_DIR

    def test_kind_mismatch_keeps_directory(self):
        """Test that the file is renamed when it clashes with a directory."""
        rec = ConflictRecord(
            "x",
            ConflictKind.KIND_MISMATCH,
            item("x", JAN_2, None, ItemKind.DIRECTORY),
            item("x", JAN_1, "R", remote_id="r1"),
        )

        decision = ConflictResolver().resolve(rec)

        assert decision.rename_side == Side.REMOTE
        assert decision.followup == SyncAction.CREATE_REMOTE_DIR
        assert decision.new_path == "x (conflicted 2024-01-01)"

    def test_missing_version_raises(self):
        """Test that records without both versions cannot be renamed."""
        rec = ConflictRecord("a.txt", ConflictKind.BOTH_MODIFIED, item("a.txt", JAN_1), None)

        with pytest.raises(ConflictPolicyError):
            ConflictResolver().resolve(rec)

    def test_resolve_all_avoids_existing_names(self):
        """Test that conflicted copies never reuse an existing path."""
        taken_name = "plan (conflicted 2024-01-01).txt"
        decision = SyncDecision(
            action=SyncAction.CONFLICT,
            reason="Modified on both sides",
            relative_path="plan.txt",
            local_item=item("plan.txt", JAN_2, "L"),
            remote_item=item("plan.txt", JAN_1, "R", remote_id="r1"),
            conflict_kind=ConflictKind.BOTH_MODIFIED,
        )
        noop = SyncDecision(
            action=SyncAction.NOOP,
            reason="Identical",
            relative_path=taken_name,
            local_item=item(taken_name, JAN_1),
            remote_item=item(taken_name, JAN_1, remote_id="r2"),
        )
        change_set = ChangeSet(
            local={taken_name: noop.local_item},
            remote={taken_name: noop.remote_item},
            prior=SyncState(local_path="/l", remote_folder_id="root"),
        )

        plan, records = ConflictResolver().resolve_all([decision, noop], change_set)

        assert plan[0].new_path == "plan (conflicted 2024-01-01 2).txt"
        assert plan[1] is noop
        assert [r.relative_path for r in records] == ["plan.txt"]

    def test_unresolvable_conflict_stays_in_plan(self):
        """Test that a conflict that cannot be resolved is kept as CONFLICT."""
        decision = SyncDecision(
            action=SyncAction.CONFLICT,
            reason="Modified on both sides",
            relative_path="a.txt",
            local_item=item("a.txt", JAN_1),
            conflict_kind=ConflictKind.BOTH_MODIFIED,
        )
        change_set = ChangeSet(
            local={}, remote={}, prior=SyncState(local_path="/l", remote_folder_id="root")
        )

        plan, records = ConflictResolver().resolve_all([decision], change_set)

        assert plan == [decision]
        assert records[0].resolution is None
