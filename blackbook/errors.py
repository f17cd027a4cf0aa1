"""Exception types surfaced by the Blackbook core."""

from __future__ import annotations

from pathlib import Path
from typing import Union

PathLike = Union[str, Path]


class BlackbookError(Exception):
    """Base class for all user-visible Blackbook failures."""


class LockTimeout(BlackbookError):
    """Raised when a file lock could not be acquired within the retry budget."""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        super().__init__(f"Timed out waiting for lock on {self.path}")


class WriteFailure(BlackbookError):
    """Raised when an atomic write could not be completed."""

    def __init__(self, path: PathLike, reason: BaseException):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Failed to write {self.path}: {reason}")


class ManifestCorrupted(BlackbookError):
    """Raised when the install manifest exists but cannot be parsed."""

    def __init__(self, path: PathLike, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Manifest file is corrupted at {self.path}: {reason}")


class ConfigInvalid(BlackbookError):
    """Raised when a config file that must be rewritten cannot be parsed."""

    def __init__(self, path: PathLike, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Config file is not valid YAML at {self.path}: {reason}")


class SourceMissing(BlackbookError):
    """Raised when an apply is asked to copy from a path that does not exist."""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        super().__init__(f"Source not found: {self.path}")


__all__ = [
    "BlackbookError",
    "ConfigInvalid",
    "LockTimeout",
    "ManifestCorrupted",
    "SourceMissing",
    "WriteFailure",
]
