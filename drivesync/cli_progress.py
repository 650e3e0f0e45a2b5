"""CLI progress display for sync cycles.

This module provides a Rich-based progress display fed by the
SyncProgressInfo events of one or more running cycles.
"""

from typing import Callable, Optional

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .output import OutputFormatter
from .sync.engine import CycleHandle, CycleSummary, SyncEngine
from .sync.pair import SyncPair
from .sync.progress import SyncProgressEvent, SyncProgressInfo

FINISHED_EVENTS = (
    SyncProgressEvent.ACTION_COMPLETE,
    SyncProgressEvent.ACTION_FAILED,
    SyncProgressEvent.ACTION_SKIPPED,
)


class SyncProgressDisplay:
    """Rich-based progress display for sync cycles.

    Each cycle gets its own task line showing the current phase, the number
    of finished actions and the path being transferred.
    """

    def __init__(self) -> None:
        """Initialize the progress display."""
        self._progress: Optional[Progress] = None

    def create_callback(self, label: str) -> Callable[[SyncProgressInfo], None]:
        """Add a task line and return the event handler that updates it.

        Args:
            label: Name shown for the cycle (usually the local path)

        Returns:
            Function to pass as progress callback to the engine
        """
        if self._progress is None:
            raise RuntimeError("Progress display is not active")
        task = self._progress.add_task(label, total=None, current="", label=label)

        def handle(info: SyncProgressInfo) -> None:
            self._handle_event(task, label, info)

        return handle

    def _handle_event(self, task: TaskID, label: str, info: SyncProgressInfo) -> None:
        """Handle a progress event of one cycle."""
        progress = self._progress
        if progress is None:
            return

        if info.event == SyncProgressEvent.PHASE_CHANGED:
            progress.update(task, description=f"{label}: {info.phase}")
        elif info.event == SyncProgressEvent.PLAN_READY:
            progress.update(task, total=info.total, completed=0)
        elif info.event == SyncProgressEvent.ACTION_START:
            progress.update(task, current=f"{info.action} {info.path}")
        elif info.event == SyncProgressEvent.ACTION_RETRY:
            progress.update(task, current=f"retrying {info.path} ({info.attempt})")
        elif info.event in FINISHED_EVENTS:
            progress.update(task, completed=info.completed)
        elif info.event == SyncProgressEvent.COMPLETED:
            progress.update(task, description=f"{label}: done", current="")
        elif info.event == SyncProgressEvent.ABORTED:
            progress.update(task, description=f"{label}: {info.message}", current="")

    def __enter__(self) -> "SyncProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("[cyan]{task.fields[current]}"),
            TimeElapsedColumn(),
            refresh_per_second=4,
        )
        self._progress.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        if self._progress is not None:
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None


def wait_for_cycles(
    engine: SyncEngine, handles: list[CycleHandle], out: OutputFormatter
) -> list[CycleSummary]:
    """Wait for running cycles, cancelling all of them on Ctrl-C.

    Returns:
        Summaries in the order of the handles
    """
    try:
        for handle in handles:
            while not handle.wait(timeout=0.5):
                pass
    except KeyboardInterrupt:
        out.warning("Cancelling sync, waiting for running transfers to finish...")
        for handle in handles:
            engine.cancel(handle)
    return [handle.result() for handle in handles]


def run_sync_with_progress(
    engine: SyncEngine,
    pairs: list[SyncPair],
    dry_run: bool,
    out: OutputFormatter,
    show_progress: bool = True,
) -> list[CycleSummary]:
    """Run one cycle per pair in parallel, optionally with a progress display.

    Args:
        engine: SyncEngine instance
        pairs: Sync roots to synchronize
        dry_run: If True, only compute what would be done
        out: Output formatter for messages
        show_progress: Show a live progress display

    Returns:
        One CycleSummary per pair
    """
    # For dry-run, don't show progress bar (just the plan)
    if dry_run or not show_progress or out.quiet or out.json_output:
        handles = [engine.start_cycle(pair, dry_run=dry_run) for pair in pairs]
        return wait_for_cycles(engine, handles, out)

    with SyncProgressDisplay() as display:
        handles = [
            engine.start_cycle(pair, progress_callback=display.create_callback(str(pair.local)))
            for pair in pairs
        ]
        return wait_for_cycles(engine, handles, out)
