"""Per-row cache resolution: classify, reuse or fetch, then probe."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator

from ..cache import CacheIndex, Entry, SourceType, hash_identifier, utc_now
from ..errors import (
    NotFoundError,
    OperationCancelled,
    ReelcacheError,
    ToolExecutionError,
    ValidationError,
)
from ..runner import CancelToken
from ..utils import file_exists
from .fetch_service import FetchEngine
from .source_service import Row, SourceInfo, canonical_local_path, classify, looks_like_url

logger = logging.getLogger(__name__)

RECOVERED_NOTE = "recovered stale cached_path"


class ResolveStatus(str, Enum):
    CACHED = "cached"
    DOWNLOADED = "downloaded"
    COPIED = "copied"


@dataclass(slots=True)
class ResolveOptions:
    force: bool = False
    reprobe: bool = False


@dataclass(slots=True)
class ResolveResult:
    entry: Entry
    status: ResolveStatus
    identifier: str
    probed: bool = False
    updated: bool = False


@dataclass(slots=True)
class RowOutcome:
    row: Row
    result: ResolveResult | None = None
    error: ReelcacheError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _append_unique(notes: list[str], note: str) -> list[str]:
    if any(existing.strip().lower() == note.lower() for existing in notes):
        return list(notes)
    return [*notes, note]


class ResolveOrchestrator:
    """Turns rows into cached, probed entries inside a :class:`CacheIndex`.

    Work happens on a copy of the stored entry and is committed to the index
    only after every step succeeded. Persisting the index is left to the caller.
    """

    def __init__(
        self,
        engine: FetchEngine,
        root: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.root = Path(root)
        self.clock = clock

    def _recover_stale(self, stale_path: str) -> Path | None:
        candidate = self.engine.cache_dir / Path(stale_path).name
        if str(candidate) == stale_path or not file_exists(candidate):
            return None
        return candidate

    def resolve(
        self,
        index: CacheIndex,
        row: Row,
        options: ResolveOptions | None = None,
        cancel: CancelToken | None = None,
    ) -> ResolveResult:
        opts = options or ResolveOptions()
        source = classify(row.link, self.root)
        now = self.clock()

        existing = index.get(source.identifier)
        if existing is not None and existing.source_type is not source.source_type:
            logger.debug(
                "row %d: stored entry type %s does not match %s",
                row.index,
                existing.source_type.value,
                source.source_type.value,
            )
            existing = None

        if existing is not None:
            entry = existing.copy()
        else:
            entry = Entry(identifier=source.identifier, source_type=source.source_type)
        entry.key = hash_identifier(source.identifier)
        entry.source = source.display

        updated = existing is None or existing.source != entry.source or existing.key != entry.key
        status: ResolveStatus | None = None

        if existing is not None and not opts.force:
            if file_exists(existing.cached_path):
                status = ResolveStatus.CACHED
            elif existing.cached_path:
                recovered = self._recover_stale(existing.cached_path)
                if recovered is not None:
                    logger.info("row %d: recovered %s", row.index, recovered)
                    entry.cached_path = str(recovered)
                    entry.size_bytes = recovered.stat().st_size
                    entry.notes = _append_unique(entry.notes, RECOVERED_NOTE)
                    status = ResolveStatus.CACHED
                    updated = True

        fetched = False
        if status is None:
            status = self._fetch(row, source, entry, now, cancel)
            fetched = True
            updated = True

        probed = False
        if fetched or opts.reprobe or entry.probe is None:
            entry.probe = self.engine.probe(row, Path(entry.cached_path), cancel)
            entry.last_probe_at = now
            probed = True
            updated = True

        if source.source_type is SourceType.URL and index.lookup_link(source.raw) != source.identifier:
            updated = True

        if updated:
            entry.last_used_at = now
            index.set_entry(entry)
            if source.source_type is SourceType.URL:
                index.set_link(source.raw, source.identifier)

        return ResolveResult(
            entry=entry,
            status=status,
            identifier=source.identifier,
            probed=probed,
            updated=updated,
        )

    def _fetch(
        self,
        row: Row,
        source: SourceInfo,
        entry: Entry,
        now: datetime,
        cancel: CancelToken | None,
    ) -> ResolveStatus:
        base = self.engine.filename_base(row, source)
        if source.source_type is SourceType.URL:
            fetched = self.engine.fetch_remote(row, source.identifier, base, cancel)
            entry.etag = fetched.etag
            status = ResolveStatus.DOWNLOADED
        else:
            if cancel is not None:
                cancel.raise_if_cancelled()
            local_path = source.local_path or Path(source.identifier)
            fetched = self.engine.fetch_local(
                row,
                local_path,
                base,
                identifier=source.identifier,
                owned_path=entry.cached_path,
            )
            status = ResolveStatus.COPIED
        entry.cached_path = str(fetched.path)
        entry.size_bytes = fetched.size_bytes
        entry.retrieved_at = now
        entry.notes = list(fetched.notes)
        logger.debug("row %d: %s -> %s", row.index, status.value, fetched.path)
        return status

    def resolve_all(
        self,
        index: CacheIndex,
        rows: Iterable[Row],
        options: ResolveOptions | None = None,
        cancel: CancelToken | None = None,
    ) -> Iterator[RowOutcome]:
        """Resolve rows in order; per-row failures are reported, not raised."""

        for row in rows:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled("resolve batch cancelled")
            try:
                result = self.resolve(index, row, options, cancel)
            except (ValidationError, NotFoundError, ToolExecutionError) as exc:
                logger.warning("row %03d %s: %s", row.index, row.link, exc)
                yield RowOutcome(row=row, error=exc)
                continue
            yield RowOutcome(row=row, result=result)


def lookup(index: CacheIndex, row: Row, root: Path | str) -> Entry | None:
    """Return the cached entry for *row* without touching the network or disk."""

    reference = (row.link or "").strip()
    if not reference:
        return None
    if looks_like_url(reference):
        identifier = index.lookup_link(reference) or reference
        return index.get(identifier)
    return index.get(str(canonical_local_path(reference, root)))
