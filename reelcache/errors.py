"""Exception types raised by reelcache."""

from __future__ import annotations

from pathlib import Path


class ReelcacheError(Exception):
    """Base class for every error raised by reelcache."""


class ValidationError(ReelcacheError, ValueError):
    """Raised when a row or request carries malformed input (e.g. an empty link)."""


class NotFoundError(ReelcacheError, FileNotFoundError):
    """Raised when a referenced local file does not exist or cannot be read."""

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class ToolExecutionError(ReelcacheError, RuntimeError):
    """Raised when an external tool fails or produces unusable output."""

    def __init__(self, message: str, log_path: Path | str | None = None) -> None:
        self.log_path = Path(log_path) if log_path is not None else None
        if self.log_path is not None:
            message = f"{message} (see {self.log_path})"
        super().__init__(message)


class IndexIOError(ReelcacheError, OSError):
    """Raised when a persisted index or render state cannot be read or written."""

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "index I/O error"


class OperationCancelled(ReelcacheError):
    """Raised when a cancel token fires while an external tool is running."""


class FilesystemConflictError(ReelcacheError):
    """Migration destination collision.

    Never raised: collisions are resolved by suffix deduplication or by
    letting the target entry win.
    """
