"""Maintenance of a cache index: age-based pruning and integrity checks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path

from ..cache import CacheIndex, SourceType, utc_now
from ..errors import ToolExecutionError, ValidationError
from ..runner import CancelToken
from .fetch_service import FetchEngine
from .source_service import Row

logger = logging.getLogger(__name__)

_AGE_RE = re.compile(r"^(\d+)([dmy])$")
_AGE_UNITS = {"d": 1, "m": 30, "y": 365}


def parse_age(value: str) -> timedelta:
    """Parse ``30d``, ``6m`` or ``1y`` (months are 30 days, years 365)."""

    text = (value or "").strip().lower()
    if not text:
        raise ValidationError("empty duration")
    match = _AGE_RE.match(text)
    if match is None:
        if text[-1] not in _AGE_UNITS:
            raise ValidationError(f"unknown unit {text[-1]!r} in {text!r} (use d, m, or y)")
        raise ValidationError(f"invalid number in {text!r}")
    amount, unit = match.groups()
    return timedelta(days=int(amount) * _AGE_UNITS[unit])


@dataclass(slots=True)
class PruneItem:
    identifier: str
    path: str
    size_bytes: int
    error: str = ""


@dataclass(slots=True)
class PruneReport:
    dry_run: bool
    items: list[PruneItem] = field(default_factory=list)
    pruned: int = 0
    kept: int = 0
    freed_bytes: int = 0

    @property
    def label(self) -> str:
        return "(dry run)" if self.dry_run else "complete"


def prune_library(
    index: CacheIndex,
    older_than: timedelta,
    *,
    now: datetime | None = None,
    dry_run: bool = False,
) -> PruneReport:
    """Remove entries unused since ``now - older_than`` with their files and links.

    Age is taken from ``last_used_at``, falling back to ``retrieved_at``.
    """

    threshold = (now or utc_now()) - older_than
    report = PruneReport(dry_run=dry_run)
    for entry in index.sorted_entries():
        last_used = entry.last_used_at or entry.retrieved_at
        if last_used is not None and last_used > threshold:
            report.kept += 1
            continue
        path = entry.cached_path.strip()
        item = PruneItem(entry.identifier, path, entry.size_bytes)
        if not dry_run:
            if path:
                try:
                    Path(path).unlink(missing_ok=True)
                except OSError as exc:
                    item.error = str(exc)
                    logger.warning("error removing %s: %s", path, exc)
                    report.items.append(item)
                    report.kept += 1
                    continue
            index.delete_entry(entry.identifier)
            for link in index.links_to(entry.identifier):
                index.delete_link(link)
        report.items.append(item)
        report.pruned += 1
        report.freed_bytes += entry.size_bytes
    return report


class VerifyStatus(str, Enum):
    VALID = "valid"
    MISSING = "missing"
    CORRUPT = "corrupt"
    FIXED = "fixed"


@dataclass(slots=True)
class VerifyItem:
    identifier: str
    status: VerifyStatus
    path: str = ""
    error: str = ""


@dataclass(slots=True)
class VerifyReport:
    items: list[VerifyItem] = field(default_factory=list)
    valid: int = 0
    missing: int = 0
    corrupt: int = 0
    fixed: int = 0

    @property
    def modified(self) -> bool:
        return self.fixed > 0


def verify_library(
    index: CacheIndex,
    engine: FetchEngine,
    *,
    fix: bool = False,
    cancel: CancelToken | None = None,
) -> VerifyReport:
    """Probe every cached file and classify it as valid, missing or corrupt.

    With *fix*, corrupt URL sources lose their file and ``cached_path`` so the
    next resolve downloads them again. Corrupt entries count towards
    ``corrupt`` whether or not they were fixed.
    """

    report = VerifyReport()
    for position, entry in enumerate(index.sorted_entries(), start=1):
        path = entry.cached_path.strip()
        if not path:
            report.missing += 1
            report.items.append(
                VerifyItem(entry.identifier, VerifyStatus.MISSING, error="no cached path")
            )
            continue
        if not Path(path).exists():
            report.missing += 1
            report.items.append(
                VerifyItem(entry.identifier, VerifyStatus.MISSING, path, "file not found")
            )
            continue
        row = Row(index=position, link=entry.source or entry.identifier)
        try:
            engine.probe(row, Path(path), cancel)
        except ToolExecutionError as exc:
            report.corrupt += 1
            item = VerifyItem(entry.identifier, VerifyStatus.CORRUPT, path, str(exc))
            if fix and entry.source_type is SourceType.URL:
                Path(path).unlink(missing_ok=True)
                updated = entry.copy()
                updated.cached_path = ""
                index.set_entry(updated)
                item.status = VerifyStatus.FIXED
                report.fixed += 1
                logger.info("marked %s for re-download", entry.identifier)
            report.items.append(item)
            continue
        report.valid += 1
        report.items.append(VerifyItem(entry.identifier, VerifyStatus.VALID, path))
    return report
