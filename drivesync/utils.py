"""Utility functions for drivesync."""

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# =============================================================================
# Constants for sync operations
# =============================================================================

# Number of parallel transfer workers
DEFAULT_MAX_WORKERS: int = 4

# Retry configuration for transient errors
DEFAULT_MAX_ATTEMPTS: int = 5
DEFAULT_RETRY_DELAY: float = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY: float = 60.0  # seconds

# Per-request timeout
DEFAULT_REQUEST_TIMEOUT: float = 60.0  # seconds

# Page size for remote listings
DEFAULT_PAGE_SIZE: int = 1000

# Modification times closer than this are considered equal
MTIME_TOLERANCE: float = 2.0  # seconds

# Read size for hashing and streaming
HASH_CHUNK_SIZE: int = 1024 * 1024

# Mime type used by Drive for folders
FOLDER_MIME_TYPE: str = "application/vnd.google-apps.folder"

# Prefix of Drive-native document types (no binary content)
GOOGLE_APPS_MIME_PREFIX: str = "application/vnd.google-apps."


# =============================================================================
# Timestamp utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[float]:
    """Parse an RFC 3339 timestamp from the Drive API.

    Args:
        timestamp_str: Timestamp string (e.g., "2025-01-15T10:30:00.000Z")

    Returns:
        Unix timestamp or None if parsing fails
    """
    if not timestamp_str:
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"
        dt = datetime.fromisoformat(timestamp_str)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except (ValueError, AttributeError):
        return None


def format_iso_timestamp(timestamp: float) -> str:
    """Format a Unix timestamp as an RFC 3339 UTC string.

    Examples:
        >>> format_iso_timestamp(0)
        '1970-01-01T00:00:00.000Z'
    """
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def mtimes_equal(a: Optional[float], b: Optional[float]) -> bool:
    """Compare modification times allowing for filesystem precision."""
    if a is None or b is None:
        return a is b
    return abs(a - b) < MTIME_TOLERANCE


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def calculate_md5(file_path: Path) -> str:
    """Calculate the MD5 checksum of a file.

    Drive reports ``md5Checksum`` for binary files, so the same digest is
    used locally to detect identical content on both sides.

    Args:
        file_path: Path of the file to hash

    Returns:
        Lowercase hex digest
    """
    digest = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
