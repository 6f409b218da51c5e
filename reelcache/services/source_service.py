"""Classification of raw source references into cache identifiers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from ..cache import SourceType
from ..errors import NotFoundError, ValidationError

REMOTE_SCHEMES = frozenset({"http", "https"})


@dataclass(slots=True)
class Row:
    """One planned clip as handed over by the plan loader."""

    index: int
    link: str
    title: str = ""
    artist: str = ""
    name: str = ""
    start_raw: str = ""
    duration_seconds: int = 0
    custom_fields: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SourceInfo:
    raw: str
    source_type: SourceType
    identifier: str
    local_path: Path | None = None

    @property
    def is_remote(self) -> bool:
        return self.source_type is SourceType.URL

    @property
    def display(self) -> str:
        if self.local_path is not None:
            return str(self.local_path)
        return self.raw


def looks_like_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme.lower() in REMOTE_SCHEMES


def canonical_local_path(raw: str, root: Path | str) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = Path(root) / candidate
    return Path(os.path.abspath(candidate))


def classify(raw: str | None, root: Path | str) -> SourceInfo:
    """Classify *raw* as a remote URL or a local file below *root*.

    URLs keep the stripped reference as their identifier; local files use
    their absolute path, so differently spelled references to the same file
    share an identifier.
    """

    reference = (raw or "").strip()
    if not reference:
        raise ValidationError("source reference is empty")
    if looks_like_url(reference):
        return SourceInfo(raw=reference, source_type=SourceType.URL, identifier=reference)
    path = canonical_local_path(reference, root)
    if not path.is_file():
        reason = "is not a file" if path.exists() else "not found"
        raise NotFoundError(f"local source {reason}: {path}", path)
    return SourceInfo(
        raw=reference,
        source_type=SourceType.LOCAL,
        identifier=str(path),
        local_path=path,
    )
