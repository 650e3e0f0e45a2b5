"""Exclusion policy for files that must never be synchronized.

Hidden and system files, temporary download files and paths matching
user patterns are excluded. Patterns use fnmatch syntax and are matched
against both the full relative path and the file name. A pattern ending with
``/`` only matches directories. Additional patterns can be placed in a
``.drivesyncignore`` file at the root of the local directory.
"""

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = ".drivesyncignore"

# Temporary files written during downloads
TEMP_FILE_SUFFIX = ".drivesync-tmp"

SYSTEM_FILE_NAMES = frozenset(
    {
        ".DS_Store",
        "Thumbs.db",
        "desktop.ini",
        ".directory",
        "$RECYCLE.BIN",
        "System Volume Information",
        ".Trash",
        ".Trashes",
        ".fseventsd",
        ".Spotlight-V100",
    }
)


@dataclass(frozen=True)
class IgnoreRule:
    """A single exclusion pattern."""

    pattern: str
    dir_only: bool = False

    @classmethod
    def parse(cls, line: str) -> Optional["IgnoreRule"]:
        """Parse one pattern line, returning None for blanks and comments."""
        line = line.strip()
        if not line or line.startswith("#"):
            return None
        dir_only = line.endswith("/")
        pattern = line.rstrip("/").lstrip("/")
        if not pattern:
            return None
        return cls(pattern=pattern, dir_only=dir_only)

    def matches(self, relative_path: str, is_dir: bool) -> bool:
        if self.dir_only and not is_dir:
            return False
        name = relative_path.rsplit("/", 1)[-1]
        return fnmatch.fnmatchcase(relative_path, self.pattern) or (
            "/" not in self.pattern and fnmatch.fnmatchcase(name, self.pattern)
        )


def load_ignore_file(path: Path) -> list[IgnoreRule]:
    """Load rules from an ignore file, returning [] if it does not exist."""
    if not path.is_file():
        return []
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to read ignore file {path}: {e}")
        return []
    rules = [rule for rule in (IgnoreRule.parse(line) for line in lines) if rule]
    logger.debug(f"Loaded {len(rules)} ignore rule(s) from {path}")
    return rules


class ExclusionPolicy:
    """Decides which paths are excluded from synchronization.

    Examples:
        >>> policy = ExclusionPolicy(patterns=["*.tmp", "build/"])
        >>> policy.is_excluded("notes/a.tmp", is_dir=False)
        True
        >>> policy.is_excluded("build", is_dir=True)
        True
        >>> policy.is_excluded("notes/plan.txt", is_dir=False)
        False
    """

    def __init__(
        self,
        patterns: Optional[list[str]] = None,
        exclude_dot_files: bool = True,
    ):
        """Initialize the policy.

        Args:
            patterns: Additional fnmatch patterns to exclude
            exclude_dot_files: Whether to exclude files/folders starting with dot
        """
        self.exclude_dot_files = exclude_dot_files
        self.pattern_rules: list[IgnoreRule] = [
            rule for rule in (IgnoreRule.parse(p) for p in patterns or []) if rule
        ]
        self.file_rules: list[IgnoreRule] = []

    @property
    def rules(self) -> list[IgnoreRule]:
        return self.pattern_rules + self.file_rules

    def load_from_directory(self, directory: Path) -> None:
        """(Re)load the rules of the ignore file in a directory."""
        self.file_rules = load_ignore_file(directory / IGNORE_FILE_NAME)

    def is_excluded(self, relative_path: str, is_dir: bool = False) -> bool:
        """Check whether a relative path (or any of its parents) is excluded.

        Args:
            relative_path: POSIX relative path from the sync root
            is_dir: Whether the path is a directory

        Returns:
            True if the path must not be synchronized
        """
        parts = relative_path.split("/")
        for index, name in enumerate(parts):
            if name == IGNORE_FILE_NAME or name.endswith(TEMP_FILE_SUFFIX):
                return True
            if name in SYSTEM_FILE_NAMES:
                return True
            if self.exclude_dot_files and name.startswith("."):
                return True
            prefix = "/".join(parts[: index + 1])
            prefix_is_dir = is_dir or index < len(parts) - 1
            if any(rule.matches(prefix, prefix_is_dir) for rule in self.rules):
                return True
        return False
