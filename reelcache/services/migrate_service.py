"""Reconciliation of a project cache with the shared library."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..cache import CacheIndex, Entry, load_index, save_index
from ..config import ProjectPaths
from ..utils import deduplicate_filename, is_within, move_file

logger = logging.getLogger(__name__)

RECOVERED_NOTE = "recovered stale cached_path"


class MigrationOutcome(str, Enum):
    ALREADY_TARGET = "already_target"
    SKIPPED = "skipped"
    TARGET_WINS = "target_wins"
    MOVED = "moved"
    FAILED = "failed"
    ORPHAN = "orphan"


@dataclass(slots=True)
class MigrationItem:
    identifier: str
    outcome: MigrationOutcome
    source: str = ""
    dest: str = ""
    detail: str = ""
    recovered_from: str = ""

    def lines(self) -> list[str]:
        """Human readable log lines; identical for dry and real runs."""
        out: list[str] = []
        if self.recovered_from:
            out.append(f"recovered {self.identifier}: {self.recovered_from} -> {self.source}")
        if self.outcome is MigrationOutcome.ALREADY_TARGET:
            out.append(f"already in library {self.identifier}: {self.source}")
        elif self.outcome is MigrationOutcome.MOVED:
            out.append(f"moved {self.source} -> {self.dest}")
        elif self.outcome is MigrationOutcome.ORPHAN:
            out.append(f"moved orphan {self.source} -> {self.dest}")
        elif self.outcome is MigrationOutcome.FAILED:
            out.append(f"error moving {self.identifier}: {self.detail}")
        else:
            out.append(f"skip {self.identifier}: {self.detail}")
        return out


@dataclass(slots=True)
class MigrationStats:
    moved: int = 0
    already_target: int = 0
    skipped: int = 0
    recovered: int = 0
    orphans: int = 0
    target_wins: int = 0
    links_merged: int = 0
    entries_cleaned: int = 0
    failed: int = 0


@dataclass(slots=True)
class MigrationReport:
    dry_run: bool
    source_entries: int = 0
    items: list[MigrationItem] = field(default_factory=list)
    stats: MigrationStats = field(default_factory=MigrationStats)
    source_dir_empty: bool = False

    @property
    def label(self) -> str:
        return "(dry run)" if self.dry_run else "complete"

    def summary(self) -> str:
        stats = self.stats
        text = (
            f"Migration {self.label}: {stats.moved} moved, "
            f"{stats.already_target} already in library, {stats.skipped} skipped"
        )
        extras = (
            (stats.recovered, "recovered"),
            (stats.orphans, "orphans"),
            (stats.target_wins, "library wins"),
            (stats.links_merged, "links merged"),
            (stats.failed, "failed"),
        )
        for count, name in extras:
            if count:
                text += f", {count} {name}"
        return text


class PlannedFileSystem:
    """File existence and moves, either applied to disk or only recorded.

    In planning mode moves are tracked in memory so that later decisions see
    the same state a real run would produce.
    """

    def __init__(self, apply: bool) -> None:
        self.apply = apply
        self._added: dict[Path, int] = {}
        self._removed: set[Path] = set()

    @staticmethod
    def _key(path: Path | str) -> Path:
        return Path(os.path.abspath(path))

    def is_file(self, path: Path | str) -> bool:
        key = self._key(path)
        if key in self._removed:
            return False
        if key in self._added:
            return True
        return key.is_file()

    def size(self, path: Path | str) -> int:
        key = self._key(path)
        if key in self._added:
            return self._added[key]
        return key.stat().st_size

    def move(self, src: Path, dest: Path) -> None:
        if self.apply:
            move_file(src, dest)
            return
        src_key, dest_key = self._key(src), self._key(dest)
        self._added[dest_key] = self.size(src_key)
        self._added.pop(src_key, None)
        self._removed.add(src_key)
        self._removed.discard(dest_key)

    def files_in(self, directory: Path) -> list[Path]:
        root = self._key(directory)
        found: set[Path] = set()
        if root.is_dir():
            for child in root.iterdir():
                if child.is_file() and child not in self._removed:
                    found.add(child)
        found.update(path for path in self._added if path.parent == root)
        return sorted(found)

    def find_by_name(self, directory: Path, name: str) -> Path | None:
        root = self._key(directory)
        direct = root / name
        if self.is_file(direct):
            return direct
        if root.is_dir():
            for candidate in sorted(root.rglob(name)):
                if self.is_file(candidate):
                    return candidate
        for candidate in sorted(self._added):
            if candidate.name == name and is_within(candidate, root):
                return candidate
        return None


class CacheMigrator:
    """Moves cached files from a source cache into a target cache.

    Conflict policy per entry: already under the target is left alone, a
    missing file is searched for by name, an equally sized file at the
    destination counts as a duplicate, a differently sized one gets a numeric
    suffix, and a live target entry for the same identifier wins.
    """

    def __init__(self, source_dir: Path, target_dir: Path) -> None:
        self.source_dir = Path(os.path.abspath(source_dir))
        self.target_dir = Path(os.path.abspath(target_dir))

    def migrate(
        self,
        source: CacheIndex,
        target: CacheIndex,
        *,
        dry_run: bool = False,
    ) -> MigrationReport:
        """Reconcile *source* into *target*.

        A real run mutates both indexes in place; the caller saves them. A dry
        run works on copies and leaves the filesystem untouched.
        """

        if dry_run:
            source = CacheIndex.from_dict(source.to_dict())
            target = CacheIndex.from_dict(target.to_dict())
        fs = PlannedFileSystem(apply=not dry_run)
        report = MigrationReport(dry_run=dry_run, source_entries=len(source))
        if not dry_run:
            self.target_dir.mkdir(parents=True, exist_ok=True)

        for entry in source.sorted_entries():
            if not entry.cached_path.strip():
                continue
            item = self._migrate_entry(entry, source, target, fs, report.stats)
            self._record(report, item)

        for item in self._sweep_orphans(source, target, fs):
            report.stats.orphans += 1
            self._record(report, item)

        for link, identifier in sorted(source.links.items()):
            if target.lookup_link(link) is None:
                target.set_link(link, identifier)
                report.stats.links_merged += 1

        if not dry_run and report.stats.moved:
            report.source_dir_empty = self.source_dir.is_dir() and not any(
                self.source_dir.iterdir()
            )
        return report

    @staticmethod
    def _record(report: MigrationReport, item: MigrationItem) -> None:
        report.items.append(item)
        for line in item.lines():
            logger.info(line)

    def _migrate_entry(
        self,
        entry: Entry,
        source: CacheIndex,
        target: CacheIndex,
        fs: PlannedFileSystem,
        stats: MigrationStats,
    ) -> MigrationItem:
        identifier = entry.identifier
        cached = Path(os.path.abspath(entry.cached_path.strip()))

        if is_within(cached, self.target_dir):
            stats.already_target += 1
            return MigrationItem(identifier, MigrationOutcome.ALREADY_TARGET, source=str(cached))

        recovered_from = ""
        working = entry.copy()
        if not fs.is_file(cached):
            found = fs.find_by_name(self.source_dir, cached.name)
            if found is None:
                stats.skipped += 1
                return MigrationItem(
                    identifier,
                    MigrationOutcome.SKIPPED,
                    source=str(cached),
                    detail=f"file not found at {cached}",
                )
            recovered_from = str(cached)
            cached = found
            working.cached_path = str(found)
            if RECOVERED_NOTE not in working.notes:
                working.notes.append(RECOVERED_NOTE)
            source.set_entry(working.copy())
            stats.recovered += 1

        dest = self.target_dir / cached.name
        if fs.is_file(dest):
            if fs.size(dest) == fs.size(cached):
                working.cached_path = str(dest)
                target.set_entry(working)
                stats.skipped += 1
                return MigrationItem(
                    identifier,
                    MigrationOutcome.SKIPPED,
                    source=str(cached),
                    dest=str(dest),
                    detail=f"already exists at {dest} (same size)",
                    recovered_from=recovered_from,
                )
            dest = deduplicate_filename(self.target_dir, cached.name, exists=fs.is_file)

        existing = target.get(identifier)
        if existing is not None and existing.cached_path.strip() and fs.is_file(existing.cached_path):
            stats.target_wins += 1
            return MigrationItem(
                identifier,
                MigrationOutcome.TARGET_WINS,
                source=str(cached),
                dest=existing.cached_path,
                detail=f"library entry already has live file at {existing.cached_path}",
                recovered_from=recovered_from,
            )

        try:
            fs.move(cached, dest)
        except OSError as exc:
            stats.failed += 1
            return MigrationItem(
                identifier,
                MigrationOutcome.FAILED,
                source=str(cached),
                dest=str(dest),
                detail=str(exc),
                recovered_from=recovered_from,
            )
        working.cached_path = str(dest)
        target.set_entry(working)
        source.delete_entry(identifier)
        stats.moved += 1
        stats.entries_cleaned += 1
        return MigrationItem(
            identifier,
            MigrationOutcome.MOVED,
            source=str(cached),
            dest=str(dest),
            recovered_from=recovered_from,
        )

    def _sweep_orphans(
        self,
        source: CacheIndex,
        target: CacheIndex,
        fs: PlannedFileSystem,
    ) -> list[MigrationItem]:
        referenced = {
            Path(entry.cached_path).name
            for index in (source, target)
            for entry in index.entries.values()
            if entry.cached_path.strip()
        }
        items: list[MigrationItem] = []
        for path in fs.files_in(self.source_dir):
            if path.name in referenced:
                continue
            dest = self.target_dir / path.name
            if fs.is_file(dest):
                continue
            try:
                fs.move(path, dest)
            except OSError as exc:
                logger.warning("error moving orphan %s: %s", path.name, exc)
                continue
            items.append(
                MigrationItem(path.name, MigrationOutcome.ORPHAN, source=str(path), dest=str(dest))
            )
        return items


def migrate_project_cache(paths: ProjectPaths, *, dry_run: bool = False) -> MigrationReport:
    """Migrate the project cache into the shared library and persist both indexes."""

    local_index = load_index(paths.local_index_file)
    if not len(local_index):
        return MigrationReport(dry_run=dry_run)
    library_index = load_index(paths.library_index_file)
    migrator = CacheMigrator(paths.local_cache_dir, paths.library_sources_dir)
    report = migrator.migrate(local_index, library_index, dry_run=dry_run)
    if not dry_run:
        save_index(paths.library_index_file, library_index)
        save_index(paths.local_index_file, local_index)
    return report
