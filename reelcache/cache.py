"""Cache index model for reelcache backed by a JSON file."""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping

from .errors import IndexIOError
from .utils import write_json_atomic

INDEX_VERSION = 2
SHORT_KEY_WIDTH = 10

_ENTRY_FIELDS = frozenset(
    {
        "identifier",
        "key",
        "source",
        "source_type",
        "cached_path",
        "retrieved_at",
        "last_probe_at",
        "last_used_at",
        "size_bytes",
        "etag",
        "probe",
        "notes",
    }
)


class SourceType(str, Enum):
    URL = "url"
    LOCAL = "local"


def hash_identifier(identifier: str) -> str:
    """Return the stable hex digest used as an entry key."""

    return hashlib.sha256((identifier or "").encode("utf-8")).hexdigest()


def short_key(identifier: str, width: int = SHORT_KEY_WIDTH) -> str:
    """Return a fixed-width prefix of the identifier hash for short filenames."""

    return hash_identifier(identifier)[:width]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    if value.year <= 1:
        return None
    return value


@dataclass(slots=True)
class ProbeMetadata:
    format_name: str = ""
    format_long_name: str = ""
    duration_seconds: float = 0.0
    streams: Any = None
    format_raw: Any = None
    raw: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.format_name:
            data["format_name"] = self.format_name
        if self.format_long_name:
            data["format_long_name"] = self.format_long_name
        if self.duration_seconds:
            data["duration_seconds"] = self.duration_seconds
        if self.streams is not None:
            data["streams"] = self.streams
        if self.format_raw is not None:
            data["format_raw"] = self.format_raw
        if self.raw is not None:
            data["raw"] = self.raw
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ProbeMetadata":
        try:
            duration = float(raw.get("duration_seconds") or 0.0)
        except (TypeError, ValueError):
            duration = 0.0
        return cls(
            format_name=str(raw.get("format_name") or ""),
            format_long_name=str(raw.get("format_long_name") or ""),
            duration_seconds=duration,
            streams=raw.get("streams"),
            format_raw=raw.get("format_raw"),
            raw=raw.get("raw"),
        )


@dataclass(slots=True)
class Entry:
    identifier: str
    source_type: SourceType
    key: str = ""
    source: str = ""
    cached_path: str = ""
    retrieved_at: datetime | None = None
    last_probe_at: datetime | None = None
    last_used_at: datetime | None = None
    size_bytes: int = 0
    etag: str = ""
    probe: ProbeMetadata | None = None
    notes: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "Entry":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "identifier": self.identifier,
                "key": self.key or hash_identifier(self.identifier),
                "source": self.source,
                "source_type": self.source_type.value,
                "cached_path": self.cached_path,
                "retrieved_at": format_timestamp(self.retrieved_at),
                "last_probe_at": format_timestamp(self.last_probe_at),
            }
        )
        if self.last_used_at is not None:
            data["last_used_at"] = format_timestamp(self.last_used_at)
        if self.size_bytes:
            data["size_bytes"] = self.size_bytes
        if self.etag:
            data["etag"] = self.etag
        if self.probe is not None:
            data["probe"] = self.probe.to_dict()
        if self.notes:
            data["notes"] = list(self.notes)
        return data

    @classmethod
    def from_dict(cls, identifier: str, raw: Mapping[str, Any]) -> "Entry":
        ident = str(raw.get("identifier") or identifier)
        try:
            source_type = SourceType(str(raw.get("source_type") or ""))
        except ValueError:
            source_type = SourceType.URL if "://" in ident else SourceType.LOCAL
        probe_raw = raw.get("probe")
        notes_raw = raw.get("notes")
        try:
            size_bytes = int(raw.get("size_bytes") or 0)
        except (TypeError, ValueError):
            size_bytes = 0
        return cls(
            identifier=ident,
            source_type=source_type,
            key=str(raw.get("key") or hash_identifier(ident)),
            source=str(raw.get("source") or ""),
            cached_path=str(raw.get("cached_path") or ""),
            retrieved_at=parse_timestamp(raw.get("retrieved_at")),
            last_probe_at=parse_timestamp(raw.get("last_probe_at")),
            last_used_at=parse_timestamp(raw.get("last_used_at")),
            size_bytes=size_bytes,
            etag=str(raw.get("etag") or ""),
            probe=ProbeMetadata.from_dict(probe_raw) if isinstance(probe_raw, dict) else None,
            notes=[str(note) for note in notes_raw] if isinstance(notes_raw, list) else [],
            extra={k: v for k, v in raw.items() if k not in _ENTRY_FIELDS},
        )


@dataclass
class CacheIndex:
    version: int = INDEX_VERSION
    entries: dict[str, Entry] = field(default_factory=dict)
    links: dict[str, str] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.sorted_entries())

    def get(self, identifier: str) -> Entry | None:
        return self.entries.get(identifier)

    def set_entry(self, entry: Entry) -> None:
        if not entry.key:
            entry.key = hash_identifier(entry.identifier)
        self.entries[entry.identifier] = entry

    def delete_entry(self, identifier: str) -> bool:
        return self.entries.pop(identifier, None) is not None

    def mark_used(self, identifier: str, when: datetime) -> bool:
        """Record that *identifier* was served from the cache at *when*."""
        entry = self.entries.get(identifier)
        if entry is None:
            return False
        entry.last_used_at = when
        return True

    def lookup_link(self, link: str) -> str | None:
        return self.links.get(link.strip())

    def set_link(self, link: str, identifier: str) -> None:
        self.links[link.strip()] = identifier

    def delete_link(self, link: str) -> None:
        self.links.pop(link.strip(), None)

    def links_to(self, identifier: str) -> list[str]:
        return sorted(link for link, target in self.links.items() if target == identifier)

    def sorted_entries(self) -> list[Entry]:
        return [self.entries[key] for key in sorted(self.entries)]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version or INDEX_VERSION,
            "entries": {
                identifier: entry.to_dict()
                for identifier, entry in sorted(self.entries.items())
            },
            "links": dict(sorted(self.links.items())),
        }
        if self.meta:
            data["meta"] = self.meta
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CacheIndex":
        entries_raw = raw.get("entries")
        links_raw = raw.get("links")
        meta_raw = raw.get("meta")
        entries: dict[str, Entry] = {}
        if isinstance(entries_raw, dict):
            for identifier, value in entries_raw.items():
                if not isinstance(value, dict):
                    continue
                entry = Entry.from_dict(str(identifier), value)
                entries[entry.identifier] = entry
        links: dict[str, str] = {}
        if isinstance(links_raw, dict):
            links = {
                str(link): str(target)
                for link, target in links_raw.items()
                if isinstance(target, str) and target.strip()
            }
        try:
            version = int(raw.get("version") or INDEX_VERSION)
        except (TypeError, ValueError):
            version = INDEX_VERSION
        return cls(
            version=version,
            entries=entries,
            links=links,
            meta=dict(meta_raw) if isinstance(meta_raw, dict) else {},
        )


def load_index(path: Path | str) -> CacheIndex:
    """Read the index at *path*; a missing file yields an empty index."""

    index_path = Path(path)
    try:
        text = index_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return CacheIndex()
    except OSError as exc:
        raise IndexIOError(f"read index {index_path}: {exc}", index_path) from exc
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise IndexIOError(f"decode index {index_path}: {exc}", index_path) from exc
    if not isinstance(raw, dict):
        raise IndexIOError(f"decode index {index_path}: expected a JSON object", index_path)
    return CacheIndex.from_dict(raw)


def save_index(path: Path | str, index: CacheIndex) -> None:
    """Write *index* to *path* atomically."""

    index_path = Path(path)
    if not index.version:
        index.version = INDEX_VERSION
    try:
        write_json_atomic(index_path, index.to_dict())
    except OSError as exc:
        raise IndexIOError(f"write index {index_path}: {exc}", index_path) from exc
