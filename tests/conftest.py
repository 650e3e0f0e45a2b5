"""Shared fixtures for drivesync tests."""

import hashlib
import itertools
import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from drivesync.auth import StaticTokenProvider
from drivesync.exceptions import DriveNotFoundError
from drivesync.models import FileEntry
from drivesync.utils import FOLDER_MIME_TYPE, format_iso_timestamp


class FakeDriveClient:
    """In-memory stand-in for DriveClient returning raw Drive resources.

    Files are addressed by ID like the real API; helpers take relative
    paths below the root folder for test setup and assertions.
    """

    def __init__(self, root_id: str = "root", token: str = "test-token"):
        self.token_provider = StaticTokenProvider(token)
        self.root_id = root_id
        self.resources: dict[str, dict] = {}
        self.contents: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.page_size: Optional[int] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # =========================
    # Test helpers
    # =========================

    def fail_next(self, method: str, *errors: Exception) -> None:
        """Make the next calls of a method raise the given errors in order."""
        self.failures.setdefault(method, []).extend(errors)

    def _check_failure(self, method: str, target: str) -> None:
        with self._lock:
            self.calls.append((method, target))
            queue = self.failures.get(method)
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    def _new_resource(
        self,
        name: str,
        parent_id: str,
        mime_type: str,
        content: Optional[bytes] = None,
        mtime: Optional[float] = None,
    ) -> dict:
        now = time.time()
        file_id = f"id{next(self._ids)}"
        resource = {
            "id": file_id,
            "name": name,
            "mimeType": mime_type,
            "modifiedTime": format_iso_timestamp(mtime if mtime is not None else now),
            "createdTime": format_iso_timestamp(now),
            "version": "1",
            "parents": [parent_id],
            "trashed": False,
        }
        self.resources[file_id] = resource
        if content is not None:
            self._set_content(resource, content)
        return resource

    def _set_content(self, resource: dict, content: bytes) -> None:
        self.contents[resource["id"]] = content
        resource["size"] = str(len(content))
        resource["md5Checksum"] = hashlib.md5(content).hexdigest()

    def _children(self, folder_id: str) -> list[dict]:
        return sorted(
            (
                r
                for r in self.resources.values()
                if folder_id in r["parents"] and not r["trashed"]
            ),
            key=lambda r: (r["name"], r["id"]),
        )

    def find(self, path: str) -> Optional[dict]:
        """Find the non-trashed resource at a relative path."""
        folder_id = self.root_id
        resource = None
        for name in path.split("/"):
            matches = [r for r in self._children(folder_id) if r["name"] == name]
            if not matches:
                return None
            resource = matches[0]
            folder_id = resource["id"]
        return resource

    def add_folder(self, path: str) -> str:
        """Create a folder (and missing parents) at a relative path."""
        parent_id = self.root_id
        for name in path.split("/"):
            existing = [
                r
                for r in self._children(parent_id)
                if r["name"] == name and r["mimeType"] == FOLDER_MIME_TYPE
            ]
            if existing:
                parent_id = existing[0]["id"]
            else:
                parent_id = self._new_resource(name, parent_id, FOLDER_MIME_TYPE)["id"]
        return parent_id

    def add_file(self, path: str, content: bytes, mtime: Optional[float] = None) -> str:
        """Create a file at a relative path."""
        parent_id = self.add_folder(path.rsplit("/", 1)[0]) if "/" in path else self.root_id
        name = path.rsplit("/", 1)[-1]
        return self._new_resource(name, parent_id, "text/plain", content, mtime)["id"]

    def edit_file(self, path: str, content: bytes, mtime: Optional[float] = None) -> None:
        """Replace the content of the file at a relative path."""
        resource = self.find(path)
        assert resource is not None, f"No remote file at {path}"
        self._set_content(resource, content)
        resource["modifiedTime"] = format_iso_timestamp(mtime or time.time())
        resource["version"] = str(int(resource["version"]) + 1)

    def remove(self, path: str) -> None:
        resource = self.find(path)
        assert resource is not None, f"No remote item at {path}"
        resource["trashed"] = True

    def read(self, path: str) -> bytes:
        resource = self.find(path)
        assert resource is not None, f"No remote file at {path}"
        return self.contents[resource["id"]]

    def paths(self) -> set[str]:
        """All non-trashed relative paths below the root."""
        result: set[str] = set()

        def walk(folder_id: str, prefix: str) -> None:
            for child in self._children(folder_id):
                path = f"{prefix}{child['name']}"
                result.add(path)
                if child["mimeType"] == FOLDER_MIME_TYPE:
                    walk(child["id"], f"{path}/")

        walk(self.root_id, "")
        return result

    def count_calls(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    # =========================
    # DriveClient interface
    # =========================

    def get_about(self) -> dict:
        self._check_failure("get_about", "")
        return {"user": {"emailAddress": "user@example.com"}, "storageQuota": {}}

    def list_files(
        self, folder_id: str, page_token: Optional[str] = None, page_size: int = 1000
    ) -> dict:
        self._check_failure("list_files", folder_id)
        size = self.page_size or page_size
        children = self._children(folder_id)
        start = int(page_token) if page_token else 0
        page = children[start : start + size]
        response: dict = {"files": [dict(r) for r in page]}
        if start + size < len(children):
            response["nextPageToken"] = str(start + size)
        return response

    def get_file(self, file_id: str) -> FileEntry:
        self._check_failure("get_file", file_id)
        if file_id not in self.resources:
            raise DriveNotFoundError(f"File not found: {file_id}")
        return FileEntry.from_api_response(self.resources[file_id])

    def create_folder(self, name: str, parent_id: str) -> FileEntry:
        self._check_failure("create_folder", name)
        resource = self._new_resource(name, parent_id, FOLDER_MIME_TYPE)
        return FileEntry.from_api_response(resource)

    def rename_file(self, file_id: str, new_name: str) -> FileEntry:
        self._check_failure("rename_file", file_id)
        if file_id not in self.resources:
            raise DriveNotFoundError(f"File not found: {file_id}")
        resource = self.resources[file_id]
        resource["name"] = new_name
        return FileEntry.from_api_response(resource)

    def trash_file(self, file_id: str) -> dict:
        self._check_failure("trash_file", file_id)
        if file_id not in self.resources:
            raise DriveNotFoundError(f"File not found: {file_id}")
        self.resources[file_id]["trashed"] = True
        return {"id": file_id, "trashed": True}

    def delete_file(self, file_id: str) -> dict:
        self._check_failure("delete_file", file_id)
        self.resources.pop(file_id, None)
        return {}

    def upload_file(
        self,
        file_path: Path,
        name: str,
        parent_id: str,
        file_id: Optional[str] = None,
        modified_time: Optional[float] = None,
    ) -> FileEntry:
        self._check_failure("upload_file", name)
        content = Path(file_path).read_bytes()
        if file_id is None:
            resource = self._new_resource(
                name, parent_id, "text/plain", content, modified_time
            )
        else:
            resource = self.resources[file_id]
            self._set_content(resource, content)
            resource["version"] = str(int(resource["version"]) + 1)
            if modified_time is not None:
                resource["modifiedTime"] = format_iso_timestamp(modified_time)
        return FileEntry.from_api_response(resource)

    def download_file(self, file_id: str, output_path: Path, progress_callback=None) -> Path:
        self._check_failure("download_file", file_id)
        if file_id not in self.resources:
            raise DriveNotFoundError(f"File not found: {file_id}")
        Path(output_path).write_bytes(self.contents[file_id])
        return Path(output_path)

    def close(self) -> None:
        pass


@pytest.fixture
def fake_client():
    """In-memory Drive client with an empty root folder."""
    return FakeDriveClient()


@pytest.fixture
def local_root(tmp_path):
    """Empty local sync directory."""
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def state_dir(tmp_path):
    """Directory for persisted sync state."""
    return tmp_path / "state"
