"""Exceptions raised by the drivesync client and sync engine."""

from typing import Optional


class DriveSyncError(Exception):
    """Base exception for all drivesync errors."""


class DriveConfigError(DriveSyncError):
    """Raised when required configuration is missing or invalid."""


# =============================================================================
# Remote API errors
# =============================================================================


class DriveAPIError(DriveSyncError):
    """Base exception for errors returned by the remote Drive API."""


class DriveAuthenticationError(DriveAPIError):
    """Raised when no valid access token can be obtained or it is rejected."""


class DrivePermissionError(DriveAPIError):
    """Raised when the account lacks permission for an operation."""


class DriveNotFoundError(DriveAPIError):
    """Raised when a remote file or folder does not exist."""


class DriveRateLimitError(DriveAPIError):
    """Raised when the API rejects a request because of rate limiting."""


class DriveQuotaExceededError(DriveAPIError):
    """Raised when the account storage quota is exhausted."""


class DriveServerError(DriveAPIError):
    """Raised on 5xx responses from the API."""


class DriveNetworkError(DriveAPIError):
    """Raised on connectivity problems and request timeouts."""


class DriveInvalidResponseError(DriveAPIError):
    """Raised when the API returns data that cannot be parsed."""


class DriveUploadError(DriveAPIError):
    """Raised when an upload fails."""


class DriveDownloadError(DriveAPIError):
    """Raised when a download fails."""


# =============================================================================
# Sync errors
# =============================================================================


class ScanError(DriveSyncError):
    """Raised when a local or remote scan cannot produce a complete snapshot.

    A scan error aborts the cycle before anything is transferred, leaving the
    last committed state untouched.
    """


class TransferError(DriveSyncError):
    """Raised when a single sync action fails.

    Attributes:
        path: Relative path of the action that failed
        transient: Whether retrying may succeed
    """

    def __init__(self, message: str, path: str = "", transient: bool = False):
        super().__init__(message)
        self.path = path
        self.transient = transient


class TransferIntegrityError(TransferError):
    """Raised when a transferred file does not match its expected size/hash."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message, path=path, transient=True)


class ConflictPolicyError(DriveSyncError):
    """Raised when a conflict cannot be resolved by the configured policy."""


class StateStoreError(DriveSyncError):
    """Raised when the persisted sync state cannot be read or written."""


class SyncInProgressError(DriveSyncError):
    """Raised when a cycle is started for a root that is already syncing."""

    def __init__(self, root: str, message: Optional[str] = None):
        super().__init__(message or f"A sync cycle is already running for {root}")
        self.root = root
