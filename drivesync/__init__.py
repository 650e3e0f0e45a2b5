"""drivesync - bidirectional sync between local folders and Google Drive."""

from .api import DriveClient
from .exceptions import (
    DriveAPIError,
    DriveAuthenticationError,
    DriveConfigError,
    DriveDownloadError,
    DriveInvalidResponseError,
    DriveNetworkError,
    DriveNotFoundError,
    DrivePermissionError,
    DriveQuotaExceededError,
    DriveRateLimitError,
    DriveServerError,
    DriveSyncError,
    DriveUploadError,
)
from .utils import calculate_md5

__version__ = "0.1.0"

__all__ = [
    "DriveClient",
    "DriveSyncError",
    "DriveAPIError",
    "DriveAuthenticationError",
    "DriveConfigError",
    "DriveDownloadError",
    "DriveInvalidResponseError",
    "DriveNetworkError",
    "DriveNotFoundError",
    "DrivePermissionError",
    "DriveQuotaExceededError",
    "DriveRateLimitError",
    "DriveServerError",
    "DriveUploadError",
    "calculate_md5",
]
