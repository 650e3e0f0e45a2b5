"""Sync engine orchestrating scan, reconciliation and transfers."""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from ..api import DriveClient
from ..auth import TokenProvider
from ..config import config
from ..exceptions import (
    DriveAuthenticationError,
    ScanError,
    StateStoreError,
    SyncInProgressError,
)
from ..utils import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_WORKERS, DEFAULT_RETRY_DELAY
from .conflict import ConflictRecord, ConflictResolver
from .executor import ExecutionReport, TransferExecutor
from .ignore import ExclusionPolicy
from .operations import SyncOperations
from .pair import SyncPair
from .progress import ProgressStream, SyncProgressEvent, SyncProgressInfo
from .reconciler import ChangeSet, Reconciler, SyncAction, SyncDecision
from .scanner import DirectoryScanner, RemoteScanner
from .state import StateStore, SyncedItem, SyncState

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    """Phases of a sync cycle."""

    IDLE = "idle"
    SCANNING = "scanning"
    RECONCILING = "reconciling"
    RESOLVING = "resolving"
    EXECUTING = "executing"
    COMMITTING = "committing"
    CANCELLING = "cancelling"


@dataclass
class CycleSummary:
    """Outcome of one sync cycle."""

    local_path: str
    remote_folder_id: str
    dry_run: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    plan: list[SyncDecision] = field(default_factory=list)
    """Resolved plan (NOOP decisions included)"""

    stats: dict[str, int] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    aborted: bool = False
    abort_reason: Optional[str] = None
    committed: bool = False

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    @property
    def success(self) -> bool:
        return not self.aborted and not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for JSON output."""
        return {
            "local_path": self.local_path,
            "remote_folder_id": self.remote_folder_id,
            "dry_run": self.dry_run,
            "duration": round(self.duration, 3),
            "stats": dict(self.stats),
            "actions": [
                {
                    "action": d.action.value,
                    "path": d.relative_path,
                    "reason": d.reason,
                }
                for d in self.plan
                if d.action != SyncAction.NOOP
            ],
            "conflicts": [
                {
                    "path": c.relative_path,
                    "kind": c.kind.value,
                    "resolution": c.resolution.value if c.resolution else None,
                    "renamed_to": c.renamed_to,
                }
                for c in self.conflicts
            ],
            "errors": list(self.errors),
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "committed": self.committed,
        }


class CycleHandle:
    """Handle of a sync cycle running on a background thread."""

    def __init__(
        self,
        pair: SyncPair,
        dry_run: bool = False,
        progress_callback: Optional[Callable[[SyncProgressInfo], None]] = None,
    ):
        self.id = uuid.uuid4().hex
        self.pair = pair
        self.dry_run = dry_run
        self.cancel_event = threading.Event()
        self.progress = ProgressStream(callback=progress_callback)
        self.phase = SyncPhase.IDLE
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._summary: Optional[CycleSummary] = None
        self._error: Optional[BaseException] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the cycle to finish.

        Returns:
            True if the cycle finished within the timeout
        """
        return self._done.wait(timeout)

    def result(self) -> CycleSummary:
        """Wait for the cycle and return its summary.

        Raises:
            Exception: Whatever unexpected error stopped the cycle thread
        """
        self._done.wait()
        if self._error is not None:
            raise self._error
        if self._summary is None:
            raise RuntimeError(f"Sync cycle {self.id} finished without a summary")
        return self._summary


class _CycleAborted(Exception):
    """Stops a cycle early with a reason."""


class SyncEngine:
    """Core sync engine that orchestrates file synchronization.

    A cycle moves through SCANNING, RECONCILING, RESOLVING, EXECUTING and
    COMMITTING before returning to IDLE. At most one cycle runs per sync
    root at a time; cycles of different roots run in parallel.
    """

    def __init__(
        self,
        client: DriveClient,
        token_provider: Optional[TokenProvider] = None,
        state_dir: Optional[Path] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        """Initialize sync engine.

        Args:
            client: Drive API client
            token_provider: Source of access tokens (defaults to the client's)
            state_dir: Directory for sync state (defaults to the config's)
            max_workers: Number of parallel transfer workers
            max_attempts: Attempts per action for transient errors
            retry_delay: Initial delay between attempts in seconds
        """
        self.client = client
        self.token_provider = token_provider or client.token_provider
        self.state_dir = state_dir or config.state_dir
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        self._lock = threading.Lock()
        self._active: dict[str, CycleHandle] = {}

    # =========================
    # Public interface
    # =========================

    def start_cycle(
        self,
        pair: SyncPair,
        dry_run: bool = False,
        progress_callback: Optional[Callable[[SyncProgressInfo], None]] = None,
    ) -> CycleHandle:
        """Start a sync cycle on a background thread.

        Args:
            pair: Sync root to synchronize
            dry_run: Only compute the plan; nothing is transferred or committed
            progress_callback: Optional function called for every event

        Returns:
            Handle to cancel, observe or wait for the cycle

        Raises:
            SyncInProgressError: If a cycle is already running for this root
        """
        key = pair.key
        handle = CycleHandle(pair, dry_run=dry_run, progress_callback=progress_callback)
        with self._lock:
            if key in self._active:
                raise SyncInProgressError(str(pair.local))
            self._active[key] = handle

        handle._thread = threading.Thread(
            target=self._run_cycle_thread,
            args=(handle, key),
            name=f"drivesync-cycle-{handle.id[:8]}",
            daemon=True,
        )
        handle._thread.start()
        return handle

    def cancel(self, handle: CycleHandle) -> None:
        """Request cooperative cancellation of a cycle.

        Running transfers finish; nothing new is started and completed work
        is committed before the cycle ends with an ABORTED event.
        """
        if handle.done or handle.cancel_event.is_set():
            return
        logger.info(f"Cancelling sync of {handle.pair}")
        handle.cancel_event.set()
        handle.phase = SyncPhase.CANCELLING
        handle.progress.emit(
            SyncProgressEvent.PHASE_CHANGED, phase=SyncPhase.CANCELLING.value
        )

    def subscribe_progress(self, handle: CycleHandle) -> Iterator[SyncProgressInfo]:
        """Iterate over the progress events of a cycle.

        The iterator replays events from the start of the cycle, blocks while
        waiting for new ones and ends after the terminal COMPLETED or ABORTED
        event.
        """
        return iter(handle.progress)

    def run_cycle(
        self,
        pair: SyncPair,
        dry_run: bool = False,
        progress_callback: Optional[Callable[[SyncProgressInfo], None]] = None,
    ) -> CycleSummary:
        """Run a sync cycle and wait for its summary.

        Examples:
            >>> engine = SyncEngine(client)
            >>> pair = SyncPair(local=Path("/local"), remote_folder_id="1AbC")
            >>> summary = engine.run_cycle(pair, dry_run=True)
            >>> print(f"Would upload {summary.stats['uploads']} files")
        """
        return self.start_cycle(pair, dry_run, progress_callback).result()

    def is_running(self, pair: SyncPair) -> bool:
        with self._lock:
            return pair.key in self._active

    def state_store(self, pair: SyncPair) -> StateStore:
        return StateStore(self.state_dir, pair.local, pair.remote_folder_id)

    # =========================
    # Cycle
    # =========================

    def _run_cycle_thread(self, handle: CycleHandle, key: str) -> None:
        try:
            handle._summary = self._run_cycle(handle)
        except Exception as e:
            logger.exception(f"Sync of {handle.pair} failed unexpectedly")
            handle._error = e
            summary = CycleSummary(
                local_path=str(handle.pair.local),
                remote_folder_id=handle.pair.remote_folder_id,
                dry_run=handle.dry_run,
                aborted=True,
                abort_reason=f"Unexpected error: {e}",
                finished_at=time.time(),
            )
            handle.progress.emit(
                SyncProgressEvent.ABORTED, message=summary.abort_reason, summary=summary
            )
        finally:
            handle.phase = SyncPhase.IDLE
            with self._lock:
                self._active.pop(key, None)
            handle._done.set()

    def _set_phase(self, handle: CycleHandle, phase: SyncPhase) -> None:
        if handle.cancel_event.is_set():
            return
        handle.phase = phase
        handle.progress.emit(SyncProgressEvent.PHASE_CHANGED, phase=phase.value)
        logger.debug(f"{handle.pair}: {phase.value}")

    def _check_cancelled(self, handle: CycleHandle) -> None:
        if handle.cancel_event.is_set():
            raise _CycleAborted("cancelled")

    def _run_cycle(self, handle: CycleHandle) -> CycleSummary:
        pair = handle.pair
        summary = CycleSummary(
            local_path=str(pair.local),
            remote_folder_id=pair.remote_folder_id,
            dry_run=handle.dry_run,
        )
        logger.info(f"Syncing: {pair}")

        try:
            self._set_phase(handle, SyncPhase.SCANNING)
            try:
                self.token_provider.get_valid_token()
            except DriveAuthenticationError as e:
                raise _CycleAborted(f"Authentication failed: {e}") from e

            store = self.state_store(pair)
            prior = store.load()
            policy = ExclusionPolicy(
                patterns=pair.ignore, exclude_dot_files=pair.exclude_dot_files
            )
            change_set = self._scan(handle, prior, policy)
            self._check_cancelled(handle)

            self._set_phase(handle, SyncPhase.RECONCILING)
            plan = Reconciler().reconcile(change_set)
            self._check_cancelled(handle)

            self._set_phase(handle, SyncPhase.RESOLVING)
            resolver = ConflictResolver(pair.conflict_policy)
            plan, conflicts = resolver.resolve_all(plan, change_set)
            summary.plan = plan
            summary.conflicts = conflicts
            actions = [d for d in plan if d.action.is_transfer]
            handle.progress.emit(
                SyncProgressEvent.PLAN_READY,
                phase=SyncPhase.RESOLVING.value,
                total=len(actions),
                message=f"{len(actions)} action(s) planned",
            )

            if handle.dry_run:
                summary.stats = summarize_plan(plan)
                return self._complete(handle, summary)
            self._check_cancelled(handle)

            self._set_phase(handle, SyncPhase.EXECUTING)
            report = self._execute(handle, store, change_set, plan, policy)
            summary.stats = report.get_stats()
            summary.errors = [
                f"{r.action.value} {r.path}: {r.error}" for r in report.failed
            ]

            self._set_phase(handle, SyncPhase.COMMITTING)
            new_state = build_committed_state(prior, plan, report)
            try:
                store.commit(new_state)
                summary.committed = True
            except StateStoreError as e:
                # Journaled records are replayed by the next load
                raise _CycleAborted(f"Failed to commit sync state: {e}") from e

            if report.auth_error:
                raise _CycleAborted(f"Authentication failed: {report.auth_error}")
            if report.cancelled:
                raise _CycleAborted("cancelled")
            return self._complete(handle, summary)

        except _CycleAborted as e:
            return self._abort(handle, summary, str(e))

    def _scan(
        self, handle: CycleHandle, prior: SyncState, policy: ExclusionPolicy
    ) -> ChangeSet:
        """Scan both sides concurrently."""
        pair = handle.pair
        if pair.local.is_dir():
            policy.load_from_directory(pair.local)

        prior_local = {path: item.local for path, item in prior.items.items()}
        with ThreadPoolExecutor(max_workers=2) as pool:
            local_future = pool.submit(
                DirectoryScanner(policy).scan_local, pair.local, prior_local
            )
            remote_future = pool.submit(
                RemoteScanner(self.client, policy).scan_remote, pair.remote_folder_id
            )
            try:
                local_items = local_future.result()
                remote_items = remote_future.result()
            except DriveAuthenticationError as e:
                raise _CycleAborted(f"Authentication failed: {e}") from e
            except ScanError as e:
                raise _CycleAborted(f"Scan failed: {e}") from e

        handle.progress.emit(
            SyncProgressEvent.SCAN_COMPLETE,
            phase=SyncPhase.SCANNING.value,
            message=f"{len(local_items)} local, {len(remote_items)} remote item(s)",
        )
        return ChangeSet(local=local_items, remote=remote_items, prior=prior)

    def _execute(
        self,
        handle: CycleHandle,
        store: StateStore,
        change_set: ChangeSet,
        plan: list[SyncDecision],
        policy: ExclusionPolicy,
    ) -> ExecutionReport:
        pair = handle.pair
        folder_ids = {"": pair.remote_folder_id}
        for path, item in change_set.remote.items():
            if item.is_dir and item.remote_id:
                folder_ids[path] = item.remote_id

        operations = SyncOperations(
            self.client, pair.local, use_local_trash=pair.use_local_trash, policy=policy
        )
        executor = TransferExecutor(
            operations,
            state_store=store,
            remote_folder_ids=folder_ids,
            max_workers=self.max_workers,
            max_attempts=self.max_attempts,
            retry_delay=self.retry_delay,
            cancel_event=handle.cancel_event,
            progress=handle.progress,
        )
        return executor.execute(plan)

    def _complete(self, handle: CycleHandle, summary: CycleSummary) -> CycleSummary:
        summary.finished_at = time.time()
        logger.info(
            f"Sync of {handle.pair} finished in {summary.duration:.2f}s: {summary.stats}"
        )
        handle.progress.emit(
            SyncProgressEvent.COMPLETED,
            phase=handle.phase.value,
            message="Sync complete",
            summary=summary,
        )
        return summary

    def _abort(self, handle: CycleHandle, summary: CycleSummary, reason: str) -> CycleSummary:
        summary.finished_at = time.time()
        summary.aborted = True
        summary.abort_reason = reason
        if reason == "cancelled":
            logger.info(f"Sync of {handle.pair} cancelled")
        else:
            logger.error(f"Sync of {handle.pair} aborted: {reason}")
        handle.progress.emit(
            SyncProgressEvent.ABORTED,
            phase=handle.phase.value,
            message=reason,
            summary=summary,
        )
        return summary


def build_committed_state(
    prior: SyncState, plan: list[SyncDecision], report: ExecutionReport
) -> SyncState:
    """Compute the state to commit after executing a plan.

    Paths agreed on by NOOP decisions get refreshed metadata, paths gone
    from both sides are dropped and every successful action replaces the
    entry of its path. Failed or skipped actions keep their prior entry.
    """
    state = prior.copy()
    for decision in plan:
        if decision.action != SyncAction.NOOP:
            continue
        local, remote = decision.local_item, decision.remote_item
        if local is not None and remote is not None:
            state.apply(decision.relative_path, SyncedItem(local=local, remote=remote))
        elif local is None and remote is None:
            state.apply(decision.relative_path, None)

    for path, item in report.records.items():
        state.apply(path, item)
    return state


def summarize_plan(plan: list[SyncDecision]) -> dict[str, int]:
    """Count the planned actions of a (dry-run) plan."""
    stats = {
        "uploads": 0,
        "downloads": 0,
        "deletes_local": 0,
        "deletes_remote": 0,
        "dirs_created": 0,
        "renames": 0,
        "conflicts": 0,
        "skips": 0,
        "failures": 0,
    }
    for decision in plan:
        action = decision.action
        if decision.conflict_kind is not None:
            stats["conflicts"] += 1
        if action == SyncAction.RENAME:
            stats["renames"] += 1
            action = decision.followup or action
        if action == SyncAction.UPLOAD:
            stats["uploads"] += 1
        elif action == SyncAction.DOWNLOAD:
            stats["downloads"] += 1
        elif action == SyncAction.DELETE_LOCAL:
            stats["deletes_local"] += 1
        elif action == SyncAction.DELETE_REMOTE:
            stats["deletes_remote"] += 1
        elif action in (SyncAction.CREATE_LOCAL_DIR, SyncAction.CREATE_REMOTE_DIR):
            stats["dirs_created"] += 1
        elif action == SyncAction.CONFLICT:
            stats["skips"] += 1
    return stats
