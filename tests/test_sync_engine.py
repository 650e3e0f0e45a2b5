"""Tests for the sync engine."""

import json
import os
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from drivesync.exceptions import (
    DriveAuthenticationError,
    DriveNetworkError,
    StateStoreError,
    SyncInProgressError,
)
from drivesync.sync import (
    ConflictPolicy,
    CycleHandle,
    StateStore,
    SyncAction,
    SyncEngine,
    SyncPair,
    SyncPhase,
    SyncProgressEvent,
)
from drivesync.sync.executor import TransferExecutor
from drivesync.sync.operations import SyncOperations
from drivesync.sync.reconciler import ChangeSet, Reconciler
from drivesync.sync.scanner import DirectoryScanner, RemoteScanner


def ts(year, month, day):
    return datetime(year, month, day, 12, 0, tzinfo=timezone.utc).timestamp()


@pytest.fixture
def engine(fake_client, state_dir):
    """Engine with fast retries."""
    return SyncEngine(fake_client, state_dir=state_dir, retry_delay=0.01)


@pytest.fixture
def pair(local_root, fake_client):
    return SyncPair(
        local=local_root, remote_folder_id=fake_client.root_id, use_local_trash=False
    )


def transfers(summary):
    return [d for d in summary.plan if d.action.is_transfer]


class TestFirstSync:
    """Tests for syncing into an empty state."""

    def test_new_local_file_is_uploaded(self, engine, pair, local_root, fake_client, state_dir):
        """Test that a new local file is uploaded and recorded in the state."""
        (local_root / "a.txt").write_text("hello")

        summary = engine.run_cycle(pair)

        assert summary.success
        actions = transfers(summary)
        assert [(d.action, d.relative_path) for d in actions] == [
            (SyncAction.UPLOAD, "a.txt")
        ]
        assert fake_client.read("a.txt") == b"hello"
        assert (local_root / "a.txt").read_text() == "hello"

        state = StateStore(state_dir, local_root, fake_client.root_id).load()
        assert "a.txt" in state.items
        assert state.items["a.txt"].remote.remote_id == fake_client.find("a.txt")["id"]
        assert summary.stats["uploads"] == 1

    def test_new_remote_tree_is_downloaded(self, engine, pair, local_root, fake_client):
        """Test that remote folders and files are created locally."""
        fake_client.add_file("docs/notes/plan.txt", b"plan", mtime=ts(2024, 1, 1))
        fake_client.add_file("readme.md", b"# hi")

        summary = engine.run_cycle(pair)

        assert summary.success
        assert (local_root / "docs" / "notes" / "plan.txt").read_bytes() == b"plan"
        assert (local_root / "readme.md").read_bytes() == b"# hi"
        # Downloaded files carry the remote modification time
        mtime = (local_root / "docs" / "notes" / "plan.txt").stat().st_mtime
        assert abs(mtime - ts(2024, 1, 1)) < 1
        assert summary.stats["downloads"] == 2
        assert summary.stats["dirs_created"] == 2

    def test_nested_local_directories_are_created_remotely(
        self, engine, pair, local_root, fake_client
    ):
        """Test that local directories are created before their contents."""
        (local_root / "a" / "b").mkdir(parents=True)
        (local_root / "a" / "b" / "c.txt").write_text("deep")

        summary = engine.run_cycle(pair)

        assert summary.success
        assert fake_client.paths() == {"a", "a/b", "a/b/c.txt"}
        assert fake_client.read("a/b/c.txt") == b"deep"

    def test_identical_files_on_both_sides_are_not_transferred(
        self, engine, pair, local_root, fake_client
    ):
        """Test that files with the same content on both sides are agreed on."""
        (local_root / "same.txt").write_text("same")
        fake_client.add_file("same.txt", b"same")

        summary = engine.run_cycle(pair)

        assert transfers(summary) == []
        assert fake_client.count_calls("upload_file") == 0
        assert fake_client.count_calls("download_file") == 0

    def test_excluded_files_are_ignored(self, engine, pair, local_root, fake_client):
        """Test that hidden files and ignore file patterns are not synced."""
        (local_root / ".hidden").write_text("x")
        (local_root / "build.log").write_text("x")
        (local_root / ".drivesyncignore").write_text("*.log\n")
        (local_root / "keep.txt").write_text("x")

        engine.run_cycle(pair)

        assert fake_client.paths() == {"keep.txt"}


class TestIdempotence:
    """Tests for repeated cycles without changes."""

    def test_second_cycle_has_no_transfers(self, engine, pair, local_root, fake_client):
        """Test that a second cycle without changes transfers nothing."""
        (local_root / "docs").mkdir()
        (local_root / "docs" / "a.txt").write_text("local")
        fake_client.add_file("photos/b.jpg", b"remote")

        first = engine.run_cycle(pair)
        assert first.success
        calls = len(fake_client.calls)

        second = engine.run_cycle(pair)

        assert second.success
        assert transfers(second) == []
        assert all(d.action == SyncAction.NOOP for d in second.plan)
        new_calls = {name for name, _ in fake_client.calls[calls:]}
        assert new_calls == {"list_files"}


class TestIncrementalChanges:
    """Tests for changes after a completed sync."""

    def test_local_modification_is_uploaded(self, engine, pair, local_root, fake_client):
        """Test that a locally modified file replaces the remote content."""
        (local_root / "a.txt").write_text("v1")
        engine.run_cycle(pair)
        remote_id = fake_client.find("a.txt")["id"]

        (local_root / "a.txt").write_text("version 2")
        summary = engine.run_cycle(pair)

        assert [d.action for d in transfers(summary)] == [SyncAction.UPLOAD]
        assert fake_client.read("a.txt") == b"version 2"
        assert fake_client.find("a.txt")["id"] == remote_id

    def test_remote_modification_is_downloaded(self, engine, pair, local_root, fake_client):
        """Test that a remotely modified file replaces the local content."""
        fake_client.add_file("a.txt", b"v1")
        engine.run_cycle(pair)

        fake_client.edit_file("a.txt", b"remote v2")
        summary = engine.run_cycle(pair)

        assert [d.action for d in transfers(summary)] == [SyncAction.DOWNLOAD]
        assert (local_root / "a.txt").read_bytes() == b"remote v2"

    def test_local_deletion_is_propagated(self, engine, pair, local_root, fake_client, state_dir):
        """Test that deleting a synced local file trashes the remote copy."""
        (local_root / "docs").mkdir()
        (local_root / "docs" / "a.txt").write_text("x")
        engine.run_cycle(pair)

        (local_root / "docs" / "a.txt").unlink()
        (local_root / "docs").rmdir()
        summary = engine.run_cycle(pair)

        assert summary.success
        assert fake_client.paths() == set()
        state = StateStore(state_dir, local_root, fake_client.root_id).load()
        assert state.items == {}

    def test_remote_deletion_is_propagated(self, engine, pair, local_root, fake_client):
        """Test that deleting a synced remote folder removes the local copy."""
        fake_client.add_file("docs/a.txt", b"x")
        engine.run_cycle(pair)
        assert (local_root / "docs" / "a.txt").exists()

        fake_client.remove("docs")
        summary = engine.run_cycle(pair)

        assert summary.success
        assert not (local_root / "docs").exists()
        assert summary.stats["deletes_local"] == 2

    def test_remote_folder_deleted_with_new_local_file_is_recreated(
        self, engine, pair, local_root, fake_client
    ):
        """Test that a folder is recreated when it still holds new local files."""
        fake_client.add_file("docs/a.txt", b"x")
        engine.run_cycle(pair)

        fake_client.remove("docs")
        (local_root / "docs" / "new.txt").write_text("new")
        summary = engine.run_cycle(pair)

        assert summary.success
        assert (local_root / "docs" / "new.txt").exists()
        assert not (local_root / "docs" / "a.txt").exists()
        assert fake_client.paths() == {"docs", "docs/new.txt"}


class TestConflicts:
    """Tests for conflicting changes."""

    def test_both_modified_keeps_both_versions(self, engine, pair, local_root, fake_client):
        """Test that the older version is renamed and both sides converge."""
        plan = local_root / "notes" / "plan.txt"
        plan.parent.mkdir()
        plan.write_text("H0")
        engine.run_cycle(pair)

        plan.write_text("H1 local edit")
        os.utime(plan, (ts(2024, 1, 2), ts(2024, 1, 2)))
        fake_client.edit_file("notes/plan.txt", b"H2 remote edit", mtime=ts(2024, 1, 1))

        summary = engine.run_cycle(pair)

        assert summary.success
        assert len(summary.conflicts) == 1
        conflict = summary.conflicts[0]
        assert conflict.renamed_to == "notes/plan (conflicted 2024-01-01).txt"
        assert fake_client.read("notes/plan.txt") == b"H1 local edit"
        assert fake_client.read("notes/plan (conflicted 2024-01-01).txt") == b"H2 remote edit"

        # The renamed copy reaches the other side in the next cycle
        engine.run_cycle(pair)
        assert plan.read_text() == "H1 local edit"
        conflicted = local_root / "notes" / "plan (conflicted 2024-01-01).txt"
        assert conflicted.read_bytes() == b"H2 remote edit"
        assert fake_client.paths() == {
            "notes",
            "notes/plan.txt",
            "notes/plan (conflicted 2024-01-01).txt",
        }

    def test_newer_remote_wins_and_local_loser_is_preserved(
        self, engine, pair, local_root, fake_client
    ):
        """Test that a newer remote version replaces the renamed local one."""
        path = local_root / "plan.txt"
        path.write_text("H0")
        engine.run_cycle(pair)

        path.write_text("local")
        os.utime(path, (ts(2024, 3, 1), ts(2024, 3, 1)))
        fake_client.edit_file("plan.txt", b"remote", mtime=ts(2024, 3, 5))

        engine.run_cycle(pair)

        assert path.read_bytes() == b"remote"
        assert (local_root / "plan (conflicted 2024-03-01).txt").read_text() == "local"

    def test_local_policy_overrides_timestamps(self, engine, local_root, fake_client):
        """Test that the local-wins policy keeps the local version in place."""
        pair = SyncPair(
            local=local_root,
            remote_folder_id=fake_client.root_id,
            conflict_policy=ConflictPolicy.LOCAL_WINS,
            use_local_trash=False,
        )
        (local_root / "a.txt").write_text("local")
        fake_client.add_file("a.txt", b"remote", mtime=ts(2030, 1, 1))

        summary = engine.run_cycle(pair)

        assert summary.success
        assert fake_client.read("a.txt") == b"local"
        assert len(fake_client.paths()) == 2

    def test_modified_remotely_deleted_locally_restores_file(
        self, engine, pair, local_root, fake_client
    ):
        """Test that a remote edit wins over a local deletion."""
        fake_client.add_file("a.txt", b"v1")
        engine.run_cycle(pair)

        (local_root / "a.txt").unlink()
        fake_client.edit_file("a.txt", b"v2")
        engine.run_cycle(pair)

        assert (local_root / "a.txt").read_bytes() == b"v2"
        assert fake_client.read("a.txt") == b"v2"


class TestFailureHandling:
    """Tests for errors during a cycle."""

    def test_scan_failure_leaves_state_untouched(self, engine, pair, local_root, fake_client, state_dir):
        """Test that a failed remote listing aborts before any transfer."""
        (local_root / "a.txt").write_text("hello")
        engine.run_cycle(pair)
        store = StateStore(state_dir, local_root, fake_client.root_id)
        before = store.snapshot_file.read_text()

        (local_root / "b.txt").write_text("new")
        with patch.object(fake_client, "list_files", side_effect=DriveNetworkError("offline")):
            summary = engine.run_cycle(pair)

        assert summary.aborted
        assert "Scan failed" in summary.abort_reason
        assert store.snapshot_file.read_text() == before
        assert fake_client.find("b.txt") is None

    def test_missing_local_root_aborts(self, engine, fake_client, tmp_path):
        """Test that an inaccessible local root aborts the cycle."""
        pair = SyncPair(local=tmp_path / "missing", remote_folder_id=fake_client.root_id)

        summary = engine.run_cycle(pair)

        assert summary.aborted
        assert fake_client.count_calls("upload_file") == 0

    def test_missing_token_aborts(self, fake_client, pair, state_dir):
        """Test that a cycle without a valid token aborts before scanning."""
        with patch.object(
            fake_client.token_provider,
            "get_valid_token",
            side_effect=DriveAuthenticationError("No access token"),
        ):
            engine = SyncEngine(fake_client, state_dir=state_dir)
            summary = engine.run_cycle(pair)

        assert summary.aborted
        assert "Authentication failed" in summary.abort_reason
        assert fake_client.count_calls("list_files") == 0

    def test_transient_upload_error_is_retried(self, engine, pair, local_root, fake_client):
        """Test that transient errors are retried until the upload succeeds."""
        (local_root / "a.txt").write_text("hello")
        fake_client.fail_next("upload_file", DriveNetworkError("reset"), DriveNetworkError("reset"))

        summary = engine.run_cycle(pair)

        assert summary.success
        assert fake_client.count_calls("upload_file") == 3
        assert fake_client.read("a.txt") == b"hello"

    def test_failed_action_keeps_prior_state(self, fake_client, pair, local_root, state_dir):
        """Test that a failed transfer is retried in the next cycle."""
        engine = SyncEngine(fake_client, state_dir=state_dir, max_attempts=2, retry_delay=0.01)
        (local_root / "a.txt").write_text("hello")
        fake_client.fail_next("upload_file", DriveNetworkError("down"), DriveNetworkError("down"))

        first = engine.run_cycle(pair)

        assert not first.success
        assert first.stats["failures"] == 1
        assert "a.txt" not in StateStore(state_dir, local_root, fake_client.root_id).load().items

        second = engine.run_cycle(pair)
        assert second.success
        assert fake_client.read("a.txt") == b"hello"

    def test_commit_failure_aborts_cycle(self, engine, pair, local_root):
        """Test that a failing commit is reported as an aborted cycle."""
        (local_root / "a.txt").write_text("hello")

        with patch.object(StateStore, "commit", side_effect=StateStoreError("disk full")):
            summary = engine.run_cycle(pair)

        assert summary.aborted
        assert "disk full" in summary.abort_reason


class TestCrashRecovery:
    """Tests for resuming after an interrupted cycle."""

    def test_only_remaining_actions_run_after_crash(
        self, fake_client, pair, local_root, state_dir
    ):
        """Test that journaled transfers are not repeated after a crash."""
        for name in ["a.txt", "b.txt", "c.txt", "d.txt"]:
            (local_root / name).write_text(name)

        store = StateStore(state_dir, local_root, fake_client.root_id)
        change_set = ChangeSet(
            local=DirectoryScanner().scan_local(local_root),
            remote={},
            prior=store.load(),
        )
        plan = Reconciler().reconcile(change_set)
        assert len(plan) == 4

        # Execute two actions, then "crash" before the commit
        executor = TransferExecutor(
            SyncOperations(fake_client, local_root),
            state_store=store,
            remote_folder_ids={"": fake_client.root_id},
        )
        executor.execute(plan[:2])
        assert store.journal_file.exists()
        assert not store.snapshot_file.exists()
        assert fake_client.count_calls("upload_file") == 2
        assert set(store.load().items) == {"a.txt", "b.txt"}

        engine = SyncEngine(fake_client, state_dir=state_dir)
        summary = engine.run_cycle(pair)

        assert summary.success
        assert [d.relative_path for d in transfers(summary)] == ["c.txt", "d.txt"]
        assert fake_client.count_calls("upload_file") == 4
        assert not store.journal_file.exists()

    def test_file_deleted_after_crash_is_deleted_remotely(
        self, engine, fake_client, pair, local_root, state_dir
    ):
        """Test that a journaled upload counts as synced when the file is deleted later."""
        assert engine.run_cycle(pair).committed
        (local_root / "a.txt").write_text("hello")
        store = StateStore(state_dir, local_root, fake_client.root_id)
        change_set = ChangeSet(
            local=DirectoryScanner().scan_local(local_root),
            remote=RemoteScanner(fake_client).scan_remote(fake_client.root_id),
            prior=store.load(),
        )
        TransferExecutor(
            SyncOperations(fake_client, local_root),
            state_store=store,
            remote_folder_ids={"": fake_client.root_id},
        ).execute(Reconciler().reconcile(change_set))
        assert fake_client.paths() == {"a.txt"}
        assert store.journal_file.exists()

        (local_root / "a.txt").unlink()
        summary = engine.run_cycle(pair)

        assert summary.success
        assert [(d.action, d.relative_path) for d in transfers(summary)] == [
            (SyncAction.DELETE_REMOTE, "a.txt")
        ]
        assert not (local_root / "a.txt").exists()
        assert fake_client.paths() == set()
        assert store.load().items == {}


class TestCycleControl:
    """Tests for background cycles, progress and cancellation."""

    def test_progress_stream_ends_with_completed(self, engine, pair, local_root):
        """Test that subscribers see phases and exactly one terminal event."""
        (local_root / "a.txt").write_text("hello")

        handle = engine.start_cycle(pair)
        events = list(engine.subscribe_progress(handle))

        kinds = [e.event for e in events]
        assert kinds[-1] == SyncProgressEvent.COMPLETED
        assert sum(1 for k in kinds if k.is_terminal) == 1
        phases = [e.phase for e in events if e.event == SyncProgressEvent.PHASE_CHANGED]
        assert phases == ["scanning", "reconciling", "resolving", "executing", "committing"]
        assert events[-1].summary is handle.result()
        assert handle.phase == SyncPhase.IDLE

    def test_dry_run_changes_nothing(self, engine, pair, local_root, fake_client, state_dir):
        """Test that a dry run only reports the plan."""
        (local_root / "a.txt").write_text("hello")
        fake_client.add_file("b.txt", b"remote")

        summary = engine.run_cycle(pair, dry_run=True)

        assert summary.stats["uploads"] == 1
        assert summary.stats["downloads"] == 1
        assert fake_client.find("a.txt") is None
        assert not (local_root / "b.txt").exists()
        assert not StateStore(state_dir, local_root, fake_client.root_id).snapshot_file.exists()

    def test_second_cycle_for_same_root_is_rejected(self, engine, pair, local_root, fake_client):
        """Test single-flight per sync root."""
        (local_root / "a.txt").write_text("hello")
        started = threading.Event()
        release = threading.Event()
        original = fake_client.list_files

        def slow_list(*args, **kwargs):
            started.set()
            release.wait(5)
            return original(*args, **kwargs)

        with patch.object(fake_client, "list_files", side_effect=slow_list):
            handle = engine.start_cycle(pair)
            assert started.wait(5)
            with pytest.raises(SyncInProgressError):
                engine.start_cycle(pair)
            release.set()
            summary = handle.result()

        assert summary.success
        assert not engine.is_running(pair)

    def test_cancel_during_scan_aborts_without_commit(
        self, engine, pair, local_root, fake_client, state_dir
    ):
        """Test that cancelling before execution transfers nothing."""
        (local_root / "a.txt").write_text("hello")
        started = threading.Event()
        release = threading.Event()
        original = fake_client.list_files

        def slow_list(*args, **kwargs):
            started.set()
            release.wait(5)
            return original(*args, **kwargs)

        with patch.object(fake_client, "list_files", side_effect=slow_list):
            handle = engine.start_cycle(pair)
            assert started.wait(5)
            engine.cancel(handle)
            release.set()
            summary = handle.result()

        assert summary.aborted
        assert summary.abort_reason == "cancelled"
        assert fake_client.count_calls("upload_file") == 0
        assert not StateStore(state_dir, local_root, fake_client.root_id).snapshot_file.exists()
        events = list(engine.subscribe_progress(handle))
        assert events[-1].event == SyncProgressEvent.ABORTED

    def test_cancel_during_execution_commits_completed_work(
        self, fake_client, pair, local_root, state_dir
    ):
        """Test that a cancel between transfers keeps what was already synced."""
        for name in ["a.txt", "b.txt", "c.txt"]:
            (local_root / name).write_text(name)
        engine = SyncEngine(fake_client, state_dir=state_dir, max_workers=1)
        uploaded = threading.Event()
        release = threading.Event()
        original = fake_client.upload_file

        def upload_then_wait(*args, **kwargs):
            entry = original(*args, **kwargs)
            uploaded.set()
            release.wait(5)
            return entry

        with patch.object(fake_client, "upload_file", side_effect=upload_then_wait):
            handle = engine.start_cycle(pair)
            assert uploaded.wait(5)
            engine.cancel(handle)
            release.set()
            summary = handle.result()

        assert summary.aborted
        assert summary.abort_reason == "cancelled"
        assert summary.committed
        assert fake_client.paths() == {"a.txt"}
        store = StateStore(state_dir, local_root, fake_client.root_id)
        assert not store.journal_file.exists()
        snapshot = json.loads(store.snapshot_file.read_text())
        assert list(snapshot["items"]) == ["a.txt"]
        events = list(engine.subscribe_progress(handle))
        assert [e.event for e in events if e.event.is_terminal] == [SyncProgressEvent.ABORTED]
        assert events[-1].event == SyncProgressEvent.ABORTED

    def test_result_without_summary_raises(self, pair):
        """Test that a finished handle without a summary reports an error."""
        handle = CycleHandle(pair)
        handle._done.set()

        with pytest.raises(RuntimeError, match="without a summary"):
            handle.result()
