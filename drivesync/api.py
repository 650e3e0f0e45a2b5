"""API client for the Google Drive v3 REST API."""

from __future__ import annotations

import json
import mimetypes
import random
import time
import uuid
from pathlib import Path
from typing import Any, Callable

import httpx

from .auth import StaticTokenProvider, TokenProvider
from .config import config
from .exceptions import (
    DriveAPIError,
    DriveAuthenticationError,
    DriveDownloadError,
    DriveInvalidResponseError,
    DriveNetworkError,
    DriveNotFoundError,
    DrivePermissionError,
    DriveQuotaExceededError,
    DriveRateLimitError,
    DriveServerError,
    DriveUploadError,
)
from .models import FileEntriesResult, FileEntry
from .utils import (
    DEFAULT_PAGE_SIZE,
    FOLDER_MIME_TYPE,
    HASH_CHUNK_SIZE,
    format_iso_timestamp,
)

FILE_FIELDS = (
    "id,name,mimeType,size,md5Checksum,modifiedTime,createdTime,version,"
    "parents,trashed"
)

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
QUOTA_REASONS = {"storageQuotaExceeded", "quotaExceeded", "teamDriveFileLimitExceeded"}


class DriveClient:
    """Client for interacting with the Drive API."""

    def __init__(
        self,
        token_provider: TokenProvider | None = None,
        api_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize Drive API client.

        Args:
            token_provider: Source of access tokens (uses config if not provided)
            api_url: Optional API base URL (uses config if not provided)
            max_retries: Maximum number of retry attempts for metadata requests
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Per-request timeout in seconds (uses config if not provided)
            transport: Optional httpx transport (used by tests)
        """
        self.token_provider = token_provider or StaticTokenProvider()
        self.api_url = (api_url or config.api_url).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout if timeout is not None else config.request_timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token_provider.get_valid_token()}"}

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    @staticmethod
    def _error_reasons(response: httpx.Response) -> tuple[set[str], str]:
        """Extract error reasons and message from a Drive error body."""
        try:
            body = response.json()
        except ValueError:
            return set(), ""
        if not isinstance(body, dict) or not isinstance(body.get("error"), dict):
            return set(), ""
        error = body["error"]
        reasons = {
            item.get("reason", "")
            for item in error.get("errors", [])
            if isinstance(item, dict)
        }
        return reasons, str(error.get("message", ""))

    def _map_http_error(self, response: httpx.Response) -> DriveAPIError:
        """Translate an HTTP error response into a drivesync exception."""
        status_code = response.status_code
        reasons, message = self._error_reasons(response)
        detail = f": {message}" if message else ""

        if status_code == 401:
            return DriveAuthenticationError(f"Access token rejected{detail}")
        if status_code == 429 or reasons & RATE_LIMIT_REASONS:
            return DriveRateLimitError(f"Rate limit exceeded{detail}")
        if reasons & QUOTA_REASONS:
            return DriveQuotaExceededError(f"Storage quota exceeded{detail}")
        if status_code == 403:
            return DrivePermissionError(f"Access forbidden{detail}")
        if status_code == 404:
            return DriveNotFoundError(f"Resource not found{detail}")
        if 500 <= status_code < 600:
            return DriveServerError(f"Server error {status_code}{detail}")
        return DriveAPIError(f"API request failed with status {status_code}{detail}")

    def _should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False
        return isinstance(
            error, (DriveNetworkError, DriveRateLimitError, DriveServerError)
        )

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data

        Raises:
            DriveAPIError: If the request fails after all retries
        """
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        client = self._get_client()

        for attempt in range(self.max_retries + 1):
            headers = self._auth_headers()
            try:
                response = client.request(method, url, headers=headers, **kwargs)
            except httpx.RequestError as e:
                error: DriveAPIError = DriveNetworkError(f"Network error: {e}")
                if self._should_retry(error, attempt):
                    time.sleep(self._calculate_retry_delay(attempt))
                    continue
                raise error from e

            if response.is_error:
                error = self._map_http_error(response)
                if self._should_retry(error, attempt):
                    retry_after = response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = float(retry_after)
                    else:
                        delay = self._calculate_retry_delay(attempt)
                    time.sleep(delay)
                    continue
                raise error

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise DriveInvalidResponseError(
                    "Invalid JSON response from server"
                ) from e

        raise DriveAPIError("Request failed after all retry attempts")

    # =========================
    # Metadata Operations
    # =========================

    def get_about(self) -> Any:
        """Get the authenticated user and storage quota."""
        return self._request(
            "GET", "/drive/v3/about", params={"fields": "user,storageQuota"}
        )

    def list_files(
        self,
        folder_id: str,
        page_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Any:
        """List the non-trashed children of a folder (one page).

        Args:
            folder_id: ID of the folder to list
            page_token: Token of the page to fetch (None for the first page)
            page_size: Maximum number of entries per page

        Returns:
            Raw ``files.list`` response with 'files' and 'nextPageToken' keys
        """
        params: dict[str, Any] = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "pageSize": page_size,
            "orderBy": "name",
        }
        if page_token:
            params["pageToken"] = page_token
        return self._request("GET", "/drive/v3/files", params=params)

    def get_file(self, file_id: str) -> FileEntry:
        """Get a single file entry by ID."""
        data = self._request(
            "GET", f"/drive/v3/files/{file_id}", params={"fields": FILE_FIELDS}
        )
        return FileEntry.from_api_response(data)

    def create_folder(self, name: str, parent_id: str) -> FileEntry:
        """Create a folder.

        Args:
            name: Name of the new folder
            parent_id: ID of the parent folder

        Returns:
            The created folder entry
        """
        data = self._request(
            "POST",
            "/drive/v3/files",
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )
        return FileEntry.from_api_response(data)

    def rename_file(self, file_id: str, new_name: str) -> FileEntry:
        """Rename a file or folder in place."""
        data = self._request(
            "PATCH",
            f"/drive/v3/files/{file_id}",
            params={"fields": FILE_FIELDS},
            json={"name": new_name},
        )
        return FileEntry.from_api_response(data)

    def trash_file(self, file_id: str) -> Any:
        """Move a file or folder to the trash."""
        return self._request(
            "PATCH",
            f"/drive/v3/files/{file_id}",
            params={"fields": "id,trashed"},
            json={"trashed": True},
        )

    def delete_file(self, file_id: str) -> Any:
        """Permanently delete a file or folder."""
        return self._request("DELETE", f"/drive/v3/files/{file_id}")

    # =========================
    # Content Operations
    # =========================

    def upload_file(
        self,
        file_path: Path,
        name: str,
        parent_id: str,
        file_id: str | None = None,
        modified_time: float | None = None,
    ) -> FileEntry:
        """Upload a whole file, creating a new entry or replacing content.

        Args:
            file_path: Local path to the file
            name: Remote file name
            parent_id: ID of the parent folder (ignored when updating)
            file_id: Existing entry to update (None creates a new entry)
            modified_time: Modification time to store on the remote entry

        Returns:
            The created or updated file entry
        """
        metadata: dict[str, Any] = {"name": name}
        if file_id is None:
            metadata["parents"] = [parent_id]
        if modified_time is not None:
            metadata["modifiedTime"] = format_iso_timestamp(modified_time)

        mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        boundary = f"drivesync-{uuid.uuid4().hex}"
        try:
            content = file_path.read_bytes()
        except OSError as e:
            raise DriveUploadError(f"Failed to read {file_path}: {e}") from e

        body = b"".join(
            [
                f"--{boundary}\r\n".encode(),
                b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\n".encode(),
                f"Content-Type: {mime_type}\r\n\r\n".encode(),
                content,
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )

        if file_id is None:
            method, endpoint = "POST", "/upload/drive/v3/files"
        else:
            method, endpoint = "PATCH", f"/upload/drive/v3/files/{file_id}"

        url = f"{self.api_url}{endpoint}"
        headers = self._auth_headers()
        headers["Content-Type"] = f"multipart/related; boundary={boundary}"
        try:
            response = self._get_client().request(
                method,
                url,
                params={"uploadType": "multipart", "fields": FILE_FIELDS},
                headers=headers,
                content=body,
            )
        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error during upload: {e}") from e

        if response.is_error:
            raise self._map_http_error(response)
        try:
            return FileEntry.from_api_response(response.json())
        except ValueError as e:
            raise DriveInvalidResponseError("Invalid upload response") from e

    def download_file(
        self,
        file_id: str,
        output_path: Path,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> Path:
        """Download file content to a local path.

        Args:
            file_id: ID of the file to download
            output_path: Path where the content is written
            progress_callback: Optional callback function(bytes_downloaded, total_bytes)

        Returns:
            Path where the file was saved

        Raises:
            DriveAPIError: If download fails
        """
        url = f"{self.api_url}/drive/v3/files/{file_id}"
        client = self._get_client()

        try:
            with client.stream(
                "GET", url, params={"alt": "media"}, headers=self._auth_headers()
            ) as response:
                if response.is_error:
                    response.read()
                    raise self._map_http_error(response)

                total_size = int(response.headers.get("Content-Length", 0))
                bytes_downloaded = 0
                with open(output_path, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=HASH_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            bytes_downloaded += len(chunk)
                            if progress_callback:
                                progress_callback(bytes_downloaded, total_size)
                return output_path

        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error during download: {e}") from e
        except OSError as e:
            raise DriveDownloadError(f"Failed to write file: {e}") from e
