"""Data models for Drive API responses.

API responses are plain dictionaries. They are parsed into fixed shapes here,
at the boundary, and missing or malformed fields raise
DriveInvalidResponseError instead of being silently defaulted.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .exceptions import DriveInvalidResponseError
from .utils import FOLDER_MIME_TYPE, GOOGLE_APPS_MIME_PREFIX, parse_iso_timestamp


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise DriveInvalidResponseError(
            f"File entry is missing required field '{key}': {data.get('id', '?')}"
        )
    return value


@dataclass
class FileEntry:
    """A file or folder returned by the Drive API."""

    id: str
    name: str
    mime_type: str
    modified_time: float
    """Last modification time (Unix timestamp)"""

    size: int = 0
    md5_checksum: Optional[str] = None
    version: Optional[str] = None
    created_time: Optional[float] = None
    parents: list[str] = field(default_factory=list)
    trashed: bool = False

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_native_document(self) -> bool:
        """Drive-native documents (Docs, Sheets, ...) have no binary content."""
        return not self.is_folder and self.mime_type.startswith(
            GOOGLE_APPS_MIME_PREFIX
        )

    @classmethod
    def from_api_response(cls, data: Any) -> "FileEntry":
        """Parse a file resource.

        Args:
            data: File resource dictionary from the API

        Returns:
            FileEntry instance

        Raises:
            DriveInvalidResponseError: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise DriveInvalidResponseError(f"Expected file resource, got {data!r}")

        entry_id = str(_require(data, "id"))
        name = str(_require(data, "name"))
        mime_type = str(_require(data, "mimeType"))
        modified_time = parse_iso_timestamp(_require(data, "modifiedTime"))
        if modified_time is None:
            raise DriveInvalidResponseError(
                f"Invalid modifiedTime for {entry_id}: {data.get('modifiedTime')!r}"
            )

        size = 0
        md5 = None
        is_binary = mime_type != FOLDER_MIME_TYPE and not mime_type.startswith(
            GOOGLE_APPS_MIME_PREFIX
        )
        if is_binary:
            try:
                size = int(_require(data, "size"))
            except (TypeError, ValueError) as e:
                raise DriveInvalidResponseError(
                    f"Invalid size for {entry_id}: {data.get('size')!r}"
                ) from e
            md5 = str(_require(data, "md5Checksum"))

        version = data.get("version")
        return cls(
            id=entry_id,
            name=name,
            mime_type=mime_type,
            modified_time=modified_time,
            size=size,
            md5_checksum=md5,
            version=str(version) if version is not None else None,
            created_time=parse_iso_timestamp(data.get("createdTime")),
            parents=list(data.get("parents") or []),
            trashed=bool(data.get("trashed", False)),
        )


@dataclass
class FileEntriesResult:
    """One page of a file listing."""

    entries: list[FileEntry]
    next_page_token: Optional[str] = None

    @classmethod
    def from_api_response(cls, data: Any) -> "FileEntriesResult":
        """Parse a ``files.list`` response.

        Raises:
            DriveInvalidResponseError: If the page or any entry is malformed
        """
        if not isinstance(data, dict) or not isinstance(data.get("files"), list):
            raise DriveInvalidResponseError(
                "Listing response is missing the 'files' array"
            )
        entries = [FileEntry.from_api_response(item) for item in data["files"]]
        return cls(entries=entries, next_page_token=data.get("nextPageToken") or None)
