"""reelcache package initialization."""

from __future__ import annotations

from .cache import CacheIndex, Entry, ProbeMetadata, SourceType, load_index, save_index
from .errors import (
    FilesystemConflictError,
    IndexIOError,
    NotFoundError,
    OperationCancelled,
    ReelcacheError,
    ToolExecutionError,
    ValidationError,
)
from .render_state import RenderState, SegmentState, load_render_state
from .runner import CancelToken

__all__ = [
    "__version__",
    "CacheIndex",
    "CancelToken",
    "Entry",
    "FilesystemConflictError",
    "IndexIOError",
    "NotFoundError",
    "OperationCancelled",
    "ProbeMetadata",
    "ReelcacheError",
    "RenderState",
    "SegmentState",
    "SourceType",
    "ToolExecutionError",
    "ValidationError",
    "get_version",
    "load_index",
    "load_render_state",
    "save_index",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
