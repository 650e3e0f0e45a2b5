"""Sync pair configuration."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from .conflict import ConflictPolicy


@dataclass
class SyncPair:
    """One sync root: a local directory paired with a remote folder.

    Examples:
        >>> pair = SyncPair(local="/home/user/docs", remote_folder_id="1AbC")
        >>> pair.local
        PosixPath('/home/user/docs')
        >>> pair.conflict_policy
        <ConflictPolicy.NEWEST_WINS: 'newest'>
    """

    local: Path
    """Local directory path"""

    remote_folder_id: str
    """ID of the remote folder"""

    alias: Optional[str] = None
    """Optional alias for easy reference"""

    ignore: list[str] = field(default_factory=list)
    """Additional fnmatch patterns to exclude"""

    exclude_dot_files: bool = True
    """Exclude files and folders starting with a dot"""

    use_local_trash: bool = True
    """Move locally deleted files to the system trash"""

    conflict_policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS

    def __post_init__(self) -> None:
        """Normalize fields after initialization."""
        if isinstance(self.local, str):
            self.local = Path(self.local)
        self.local = self.local.expanduser()

        self.remote_folder_id = self.remote_folder_id.strip()
        if not self.remote_folder_id:
            raise ValueError("Remote folder ID cannot be empty")

        if isinstance(self.conflict_policy, str):
            self.conflict_policy = ConflictPolicy(self.conflict_policy)

    @property
    def key(self) -> str:
        """Identity of the sync root (resolved local path and folder ID)."""
        return f"{self.local.resolve()}:{self.remote_folder_id}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncPair":
        """Create SyncPair from a configuration dictionary.

        Args:
            data: Dictionary with keys: local, remoteFolderId, and optionally
                alias, ignore, excludeDotFiles, useLocalTrash, conflictPolicy

        Returns:
            SyncPair instance

        Raises:
            ValueError: If required fields are missing or invalid
        """
        required_fields = ["local", "remoteFolderId"]
        missing_fields = [f for f in required_fields if f not in data]
        if missing_fields:
            raise ValueError(f"Missing required fields: {', '.join(missing_fields)}")

        ignore = data.get("ignore", [])
        if not isinstance(ignore, list) or not all(isinstance(p, str) for p in ignore):
            raise ValueError("'ignore' must be a list of strings")

        return cls(
            local=Path(data["local"]),
            remote_folder_id=str(data["remoteFolderId"]),
            alias=data.get("alias"),
            ignore=ignore,
            exclude_dot_files=bool(data.get("excludeDotFiles", True)),
            use_local_trash=bool(data.get("useLocalTrash", True)),
            conflict_policy=ConflictPolicy(
                data.get("conflictPolicy", ConflictPolicy.NEWEST_WINS.value)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert SyncPair to dictionary."""
        return {
            "local": str(self.local),
            "remoteFolderId": self.remote_folder_id,
            "alias": self.alias,
            "ignore": self.ignore,
            "excludeDotFiles": self.exclude_dot_files,
            "useLocalTrash": self.use_local_trash,
            "conflictPolicy": self.conflict_policy.value,
        }

    @classmethod
    def parse_literal(
        cls, literal: str, conflict_policy: Union[str, ConflictPolicy] = ConflictPolicy.NEWEST_WINS
    ) -> "SyncPair":
        """Parse a ``local_path:remote_folder_id`` literal.

        The folder ID is taken after the last colon, so Windows drive letters
        in the local path are kept.

        Examples:
            >>> SyncPair.parse_literal("/home/user/docs:1AbC").remote_folder_id
            '1AbC'

        Raises:
            ValueError: If the literal is malformed
        """
        if ":" not in literal:
            raise ValueError(
                f"Invalid sync pair literal: {literal!r} (expected local_path:folder_id)"
            )
        local, remote_folder_id = literal.rsplit(":", 1)
        if not local or not remote_folder_id:
            raise ValueError("Local path and remote folder ID cannot be empty")
        return cls(
            local=Path(local),
            remote_folder_id=remote_folder_id,
            conflict_policy=ConflictPolicy(conflict_policy),
        )

    def __str__(self) -> str:
        """String representation of sync pair."""
        name = f"[{self.alias}] " if self.alias else ""
        return f"{name}{self.local} <-> {self.remote_folder_id}"
