"""Manager for fetching file entries with automatic pagination."""

import logging
from collections.abc import Generator
from typing import Optional

from .api import DriveClient
from .exceptions import DriveInvalidResponseError
from .models import FileEntriesResult, FileEntry
from .utils import DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)


class FileEntriesManager:
    """Fetches complete folder listings, following every page.

    A listing that cannot be completed raises; partial results are never
    returned.
    """

    def __init__(self, client: DriveClient, page_size: int = DEFAULT_PAGE_SIZE):
        """Initialize the file entries manager.

        Args:
            client: Drive API client
            page_size: Number of entries requested per page
        """
        self.client = client
        self.page_size = page_size

    def iter_folder_pages(self, folder_id: str) -> Generator[list[FileEntry], None, None]:
        """Yield the entries of a folder one page at a time.

        Args:
            folder_id: Folder ID to list

        Yields:
            Lists of file entries, one per page

        Raises:
            DriveAPIError: If any page cannot be fetched (transient errors are
                retried by the client first)
        """
        page_token: Optional[str] = None
        page_num = 0
        seen_tokens: set[str] = set()

        while True:
            result = FileEntriesResult.from_api_response(
                self.client.list_files(
                    folder_id=folder_id,
                    page_token=page_token,
                    page_size=self.page_size,
                )
            )
            page_num += 1
            logger.debug(
                "Folder %s page %d: %d entries", folder_id, page_num, len(result.entries)
            )
            yield result.entries

            if not result.next_page_token:
                break
            if result.next_page_token in seen_tokens:
                # A repeating token would loop forever
                raise DriveInvalidResponseError(
                    f"Listing of folder {folder_id} returned a repeated page token"
                )
            seen_tokens.add(result.next_page_token)
            page_token = result.next_page_token

    def get_all_in_folder(self, folder_id: str) -> list[FileEntry]:
        """Get all file entries in a folder with automatic pagination.

        Args:
            folder_id: Folder ID to query

        Returns:
            List of all file entries in the folder
        """
        all_entries: list[FileEntry] = []
        for page in self.iter_folder_pages(folder_id):
            all_entries.extend(page)
        return all_entries

    def get_all_recursive(
        self,
        folder_id: str,
        path_prefix: str = "",
        visited: Optional[set[str]] = None,
    ) -> list[tuple[FileEntry, str]]:
        """Recursively get all file entries in a folder and subfolders.

        Folders are included in the result before their contents.

        Args:
            folder_id: Folder ID to start from
            path_prefix: Path prefix for nested folders
            visited: Set of visited folder IDs (for cycle detection)

        Returns:
            List of (FileEntry, relative_path) tuples
        """
        if visited is None:
            visited = set()

        # Prevent infinite recursion (a folder may have several parents)
        if folder_id in visited:
            return []
        visited.add(folder_id)

        result_entries: list[tuple[FileEntry, str]] = []

        for entry in self.get_all_in_folder(folder_id):
            entry_path = f"{path_prefix}/{entry.name}" if path_prefix else entry.name
            result_entries.append((entry, entry_path))

            if entry.is_folder:
                result_entries.extend(
                    self.get_all_recursive(
                        folder_id=entry.id,
                        path_prefix=entry_path,
                        visited=visited,
                    )
                )

        return result_entries
