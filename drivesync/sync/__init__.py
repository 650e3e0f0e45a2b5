"""Bidirectional sync engine between a local directory and a Drive folder."""

from .config import SyncConfigError, load_sync_pairs_from_json
from .conflict import (
    ConflictPolicy,
    ConflictRecord,
    ConflictResolution,
    ConflictResolver,
    conflict_path,
)
from .engine import CycleHandle, CycleSummary, SyncEngine, SyncPhase
from .executor import ActionResult, ExecutionReport, TransferExecutor
from .ignore import IGNORE_FILE_NAME, ExclusionPolicy, IgnoreRule, load_ignore_file
from .operations import SyncOperations
from .pair import SyncPair
from .progress import ProgressStream, SyncProgressEvent, SyncProgressInfo
from .reconciler import (
    ChangeSet,
    ConflictKind,
    Reconciler,
    Side,
    SyncAction,
    SyncDecision,
)
from .scanner import DirectoryScanner, ItemKind, RemoteScanner, TrackedItem
from .state import StateStore, SyncedItem, SyncState

__all__ = [
    "SyncEngine",
    "SyncPhase",
    "CycleHandle",
    "CycleSummary",
    "SyncPair",
    "SyncConfigError",
    "load_sync_pairs_from_json",
    "SyncOperations",
    "TransferExecutor",
    "ActionResult",
    "ExecutionReport",
    "DirectoryScanner",
    "RemoteScanner",
    "TrackedItem",
    "ItemKind",
    "Reconciler",
    "ChangeSet",
    "SyncAction",
    "SyncDecision",
    "ConflictKind",
    "Side",
    "ConflictPolicy",
    "ConflictRecord",
    "ConflictResolution",
    "ConflictResolver",
    "conflict_path",
    "StateStore",
    "SyncState",
    "SyncedItem",
    "ProgressStream",
    "SyncProgressEvent",
    "SyncProgressInfo",
    "ExclusionPolicy",
    "IgnoreRule",
    "IGNORE_FILE_NAME",
    "load_ignore_file",
]
