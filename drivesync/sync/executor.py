"""Execution of a resolved sync plan."""

import logging
import random
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Optional

from ..exceptions import (
    ConflictPolicyError,
    DriveAPIError,
    DriveAuthenticationError,
    DriveNetworkError,
    DriveRateLimitError,
    DriveServerError,
    StateStoreError,
    TransferError,
)
from ..utils import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_MAX_WORKERS,
    DEFAULT_RETRY_DELAY,
)
from .operations import SyncOperations
from .progress import ProgressStream, SyncProgressEvent
from .reconciler import Side, SyncAction, SyncDecision
from .scanner import TrackedItem
from .state import StateStore, SyncedItem

logger = logging.getLogger(__name__)

TRANSIENT_API_ERRORS = (DriveNetworkError, DriveRateLimitError, DriveServerError)

CREATE_ACTIONS = (SyncAction.CREATE_LOCAL_DIR, SyncAction.CREATE_REMOTE_DIR)


class CycleCancelled(Exception):
    """Raised inside a worker when the cycle is cancelled between attempts."""


@dataclass
class ActionResult:
    """Outcome of one executed decision."""

    decision: SyncDecision
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    attempts: int = 0
    records: dict[str, Optional[SyncedItem]] = field(default_factory=dict)
    """New agreed state per path (None removes the path)"""

    @property
    def path(self) -> str:
        return self.decision.relative_path

    @property
    def action(self) -> SyncAction:
        return self.decision.action


@dataclass
class ExecutionReport:
    """Results of executing a plan."""

    results: list[ActionResult] = field(default_factory=list)
    cancelled: bool = False
    auth_error: Optional[str] = None

    @property
    def records(self) -> dict[str, Optional[SyncedItem]]:
        """Agreed state of every successfully executed path."""
        merged: dict[str, Optional[SyncedItem]] = {}
        for result in self.results:
            if result.success:
                merged.update(result.records)
        return merged

    @property
    def succeeded(self) -> list[ActionResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[ActionResult]:
        return [r for r in self.results if not r.success and not r.skipped]

    @property
    def skipped(self) -> list[ActionResult]:
        return [r for r in self.results if r.skipped]

    def get_stats(self) -> dict[str, int]:
        """Count actions by outcome.

        Returns:
            Dictionary with uploads, downloads, deletes_local, deletes_remote,
            dirs_created, renames, conflicts, skips and failures
        """
        stats = {
            "uploads": 0,
            "downloads": 0,
            "deletes_local": 0,
            "deletes_remote": 0,
            "dirs_created": 0,
            "renames": 0,
            "conflicts": 0,
            "skips": len(self.skipped),
            "failures": len(self.failed),
        }
        for result in self.succeeded:
            action = result.action
            if action == SyncAction.RENAME:
                stats["renames"] += 1
                stats["conflicts"] += 1
                action = result.decision.followup or action
            elif result.decision.conflict_kind is not None:
                stats["conflicts"] += 1

            if action == SyncAction.UPLOAD:
                stats["uploads"] += 1
            elif action == SyncAction.DOWNLOAD:
                stats["downloads"] += 1
            elif action == SyncAction.DELETE_LOCAL:
                stats["deletes_local"] += 1
            elif action == SyncAction.DELETE_REMOTE:
                stats["deletes_remote"] += 1
            elif action in CREATE_ACTIONS:
                stats["dirs_created"] += 1
        return stats


def _related(a: str, b: str) -> bool:
    """Whether two paths are equal or one contains the other."""
    return a == b or a.startswith(b + "/") or b.startswith(a + "/")


def _is_below(path: str, ancestor: str) -> bool:
    return path.startswith(ancestor + "/")


class TransferExecutor:
    """Executes sync decisions with a bounded worker pool.

    Decisions touching related paths (the same path, or one inside the other)
    run one after another in plan order; unrelated decisions run
    concurrently. Every success is journaled in the state store immediately.
    """

    def __init__(
        self,
        operations: SyncOperations,
        state_store: Optional[StateStore] = None,
        remote_folder_ids: Optional[dict[str, str]] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressStream] = None,
    ):
        """Initialize the executor.

        Args:
            operations: Local and remote primitive operations
            state_store: Store journaling every successful action
            remote_folder_ids: Known remote folder IDs by relative path; ""
                must map to the remote root folder
            max_workers: Number of parallel workers
            max_attempts: Attempts per action for transient errors
            retry_delay: Initial delay between attempts in seconds
            max_retry_delay: Upper bound of the delay between attempts
            cancel_event: Event that stops scheduling and retrying when set
            progress: Stream receiving per-action events
        """
        self.operations = operations
        self.state_store = state_store
        self.folder_ids = dict(remote_folder_ids or {})
        self.max_workers = max(1, max_workers)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.cancel_event = cancel_event or threading.Event()
        self.progress = progress

        self._lock = threading.Lock()
        self._auth_error: Optional[str] = None
        self._completed = 0
        self._total = 0

    def execute(self, decisions: list[SyncDecision]) -> ExecutionReport:
        """Execute a resolved plan.

        NOOP decisions are ignored; unresolved CONFLICT decisions are
        reported as skipped.

        Args:
            decisions: Ordered plan from the reconciler and conflict resolver

        Returns:
            ExecutionReport with one ActionResult per executed decision
        """
        report = ExecutionReport()
        pending: list[SyncDecision] = []
        for decision in decisions:
            if decision.action == SyncAction.CONFLICT:
                report.results.append(
                    self._skip(decision, f"Unresolved conflict: {decision.reason}")
                )
            elif decision.action.is_transfer:
                pending.append(decision)

        self._total = len(pending)
        self._completed = 0
        start = time.time()

        # Failed or skipped decisions; their descendants are not touched
        blocked: list[SyncDecision] = []
        running: dict[Future, SyncDecision] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while pending or running:
                if pending and self._should_stop():
                    reason = "Cancelled" if self.cancel_event.is_set() else "Authentication failed"
                    for decision in pending:
                        report.results.append(self._skip(decision, reason, count=True))
                    pending = []

                busy_paths = [p for d in running.values() for p in d.paths]
                waiting: list[SyncDecision] = []
                for decision in pending:
                    blocker = self._blocked_by(decision, blocked)
                    if blocker is not None:
                        result = self._skip(
                            decision,
                            f"Not executed because {blocker} was not synced",
                            count=True,
                        )
                        report.results.append(result)
                        blocked.append(decision)
                        continue
                    if len(running) < self.max_workers and not any(
                        _related(p, busy) for p in decision.paths for busy in busy_paths
                    ) and not any(
                        _related(p, q) for p in decision.paths for w in waiting for q in w.paths
                    ):
                        future = pool.submit(self._run_action, decision)
                        running[future] = decision
                        busy_paths.extend(decision.paths)
                    else:
                        waiting.append(decision)
                pending = waiting

                if not running:
                    continue

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    decision = running.pop(future)
                    result = future.result()
                    report.results.append(result)
                    if not result.success:
                        blocked.append(decision)

        report.cancelled = self.cancel_event.is_set()
        report.auth_error = self._auth_error
        stats = report.get_stats()
        logger.debug(
            f"Executed {len(report.results)} action(s) in {time.time() - start:.2f}s: "
            f"{stats}"
        )
        return report

    def _should_stop(self) -> bool:
        with self._lock:
            return self.cancel_event.is_set() or self._auth_error is not None

    @staticmethod
    def _blocked_by(decision: SyncDecision, blocked: list[SyncDecision]) -> Optional[str]:
        """Find a failed decision this one depends on.

        Contents of a directory whose creation failed are not synced, and a
        directory is not deleted while one of its entries failed.
        """
        for other in blocked:
            if other.action in CREATE_ACTIONS or (
                other.action == SyncAction.RENAME and other.followup in CREATE_ACTIONS
            ):
                if _is_below(decision.relative_path, other.relative_path):
                    return other.relative_path
            if decision.action.is_delete and decision.is_dir:
                if _is_below(other.relative_path, decision.relative_path):
                    return other.relative_path
        return None

    def _skip(self, decision: SyncDecision, reason: str, count: bool = False) -> ActionResult:
        logger.info(f"Skipping {decision.action.value} {decision.relative_path}: {reason}")
        self._emit(SyncProgressEvent.ACTION_SKIPPED, decision, message=reason, count=count)
        return ActionResult(decision=decision, success=False, skipped=True, error=reason)

    def _emit(
        self,
        event: SyncProgressEvent,
        decision: SyncDecision,
        message: str = "",
        attempt: int = 0,
        count: bool = False,
    ) -> None:
        if self.progress is None:
            return
        with self._lock:
            if count:
                self._completed += 1
            completed = self._completed
        self.progress.emit(
            event,
            phase="executing",
            path=decision.relative_path,
            action=decision.action.value,
            message=message,
            completed=completed,
            total=self._total,
            attempt=attempt,
        )

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with +/- 25% jitter (attempt is 1-based)."""
        base_delay = min(self.retry_delay * (2 ** (attempt - 1)), self.max_retry_delay)
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    @staticmethod
    def _is_transient(error: Exception) -> bool:
        if isinstance(error, TransferError):
            return error.transient
        return isinstance(error, TRANSIENT_API_ERRORS)

    def _run_action(self, decision: SyncDecision) -> ActionResult:
        """Run one decision with retries for transient errors."""
        path = decision.relative_path
        self._emit(SyncProgressEvent.ACTION_START, decision)
        state = {"renamed": False}
        attempt = 0

        while True:
            attempt += 1
            try:
                if attempt > 1 and self.cancel_event.is_set():
                    raise CycleCancelled()
                start = time.time()
                records = self._perform(decision, state)
                logger.debug(
                    f"{decision.action.value} {path} took {time.time() - start:.2f}s"
                )
                break
            except CycleCancelled:
                reason = "Cancelled"
                self._emit(SyncProgressEvent.ACTION_SKIPPED, decision, reason, count=True)
                return ActionResult(
                    decision=decision,
                    success=False,
                    skipped=True,
                    error=reason,
                    attempts=attempt - 1,
                )
            except DriveAuthenticationError as e:
                with self._lock:
                    self._auth_error = str(e)
                logger.error(f"Authentication failed while syncing {path}: {e}")
                return self._failure(decision, str(e), attempt)
            except (DriveAPIError, TransferError, ConflictPolicyError, OSError) as e:
                if self._is_transient(e) and attempt < self.max_attempts:
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(
                        f"{decision.action.value} {path} failed (attempt {attempt}/"
                        f"{self.max_attempts}), retrying in {delay:.1f}s: {e}"
                    )
                    self._emit(SyncProgressEvent.ACTION_RETRY, decision, str(e), attempt)
                    # Returns early when the cycle is cancelled
                    self.cancel_event.wait(delay)
                    continue
                logger.error(f"Failed to {decision.action.value} {path}: {e}")
                return self._failure(decision, str(e), attempt)

        for record_path, item in records.items():
            if self.state_store is None:
                break
            try:
                self.state_store.record_item(record_path, item)
            except StateStoreError as e:
                # Still persisted by the commit at the end of the cycle
                logger.warning(f"Failed to journal {record_path}: {e}")

        self._emit(SyncProgressEvent.ACTION_COMPLETE, decision, decision.reason, count=True)
        return ActionResult(
            decision=decision, success=True, attempts=attempt, records=records
        )

    def _failure(self, decision: SyncDecision, error: str, attempts: int) -> ActionResult:
        self._emit(SyncProgressEvent.ACTION_FAILED, decision, error, attempts, count=True)
        return ActionResult(
            decision=decision, success=False, error=error, attempts=attempts
        )

    # =========================
    # Actions
    # =========================

    def _perform(
        self, decision: SyncDecision, state: dict[str, bool]
    ) -> dict[str, Optional[SyncedItem]]:
        """Execute one attempt of a decision.

        Returns:
            New agreed state per path
        """
        action = decision.action
        path = decision.relative_path
        local, remote = decision.local_item, decision.remote_item

        if action == SyncAction.RENAME:
            return self._rename_and_transfer(decision, state)

        if action == SyncAction.UPLOAD:
            expected_remote = remote if remote is not None and not remote.is_dir else None
            new_local, new_remote = self.operations.upload_file(
                path, self._parent_id(path), expected_remote=expected_remote
            )
            return {path: SyncedItem(local=new_local, remote=new_remote)}

        if action == SyncAction.DOWNLOAD:
            if remote is None:
                raise ConflictPolicyError(f"Nothing to download for {path}")
            new_local = self.operations.download_file(remote, expected_local=local)
            return {path: SyncedItem(local=new_local, remote=remote)}

        if action == SyncAction.DELETE_LOCAL:
            if local is not None:
                self.operations.delete_local(local)
            return {path: None}

        if action == SyncAction.DELETE_REMOTE:
            if remote is not None:
                self.operations.delete_remote(remote)
                with self._lock:
                    self.folder_ids.pop(path, None)
            return {path: None}

        if action == SyncAction.CREATE_REMOTE_DIR:
            entry = self.operations.create_remote_folder(
                name=path.rsplit("/", 1)[-1], parent_id=self._parent_id(path)
            )
            with self._lock:
                self.folder_ids[path] = entry.id
            new_local = local or self.operations.stat_local(path)
            return {path: SyncedItem(new_local, TrackedItem.from_entry(entry, path))}

        if action == SyncAction.CREATE_LOCAL_DIR:
            if remote is None:
                raise ConflictPolicyError(f"No remote folder for {path}")
            new_local = self.operations.create_local_dir(path)
            return {path: SyncedItem(local=new_local, remote=remote)}

        raise ConflictPolicyError(f"Cannot execute {action.value} for {path}")

    def _rename_and_transfer(
        self, decision: SyncDecision, state: dict[str, bool]
    ) -> dict[str, Optional[SyncedItem]]:
        """Move a conflict loser aside, then bring the winner to its side.

        The rename is done once; retries only repeat the transfer.
        """
        path = decision.relative_path
        if not decision.new_path or decision.rename_side is None or decision.followup is None:
            raise ConflictPolicyError(f"Incomplete rename decision for {path}")

        if not state["renamed"]:
            if decision.rename_side == Side.LOCAL:
                self.operations.rename_local(path, decision.new_path)
            else:
                if decision.remote_item is None:
                    raise ConflictPolicyError(f"No remote version of {path} to rename")
                self.operations.rename_remote(
                    decision.remote_item, decision.new_path.rsplit("/", 1)[-1]
                )
                with self._lock:
                    moved = self.folder_ids.pop(path, None)
                    if moved is not None:
                        self.folder_ids[decision.new_path] = moved
            state["renamed"] = True
            logger.info(
                f"Renamed {decision.rename_side.value} copy of {path} to {decision.new_path}"
            )

        followup = replace(
            decision,
            action=decision.followup,
            local_item=None if decision.rename_side == Side.LOCAL else decision.local_item,
            remote_item=None if decision.rename_side == Side.REMOTE else decision.remote_item,
            rename_side=None,
            new_path=None,
            followup=None,
        )
        return self._perform(followup, state)

    def _parent_id(self, path: str) -> str:
        parent = path.rsplit("/", 1)[0] if "/" in path else ""
        with self._lock:
            folder_id = self.folder_ids.get(parent)
        if folder_id is None:
            raise TransferError(f"Remote folder for {parent or 'root'} is unknown", path=path)
        return folder_id
