"""Persisted fingerprints of rendered outputs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from .cache import format_timestamp, parse_timestamp, utc_now
from .errors import IndexIOError
from .utils import write_json_atomic

if TYPE_CHECKING:
    from .services.change_service import Segment


@dataclass(slots=True)
class SegmentState:
    input_hash: str
    rendered_at: datetime | None = None
    source_path: str = ""
    duration_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_hash": self.input_hash,
            "rendered_at": format_timestamp(self.rendered_at),
            "source_path": self.source_path,
            "duration_s": self.duration_s,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SegmentState":
        try:
            duration = float(raw.get("duration_s") or 0.0)
        except (TypeError, ValueError):
            duration = 0.0
        return cls(
            input_hash=str(raw.get("input_hash") or ""),
            rendered_at=parse_timestamp(raw.get("rendered_at")),
            source_path=str(raw.get("source_path") or ""),
            duration_s=duration,
        )


@dataclass
class RenderState:
    global_config_hash: str = ""
    segments: dict[str, SegmentState] = field(default_factory=dict)

    def get(self, output_path: str) -> SegmentState | None:
        return self.segments.get(output_path)

    def record(
        self,
        segment: "Segment",
        template: str | None = None,
        rendered_at: datetime | None = None,
    ) -> SegmentState:
        """Store the fingerprint of a segment that was just rendered."""
        from .services.change_service import segment_input_hash

        state = SegmentState(
            input_hash=segment_input_hash(segment, template),
            rendered_at=rendered_at or utc_now(),
            source_path=segment.source_path,
            duration_s=float(segment.duration_seconds),
        )
        self.segments[segment.output_path] = state
        return state

    def to_dict(self) -> dict[str, Any]:
        return {
            "global_config_hash": self.global_config_hash,
            "segments": {
                path: state.to_dict() for path, state in sorted(self.segments.items())
            },
        }

    def save(self, path: Path | str) -> None:
        target = Path(path)
        try:
            write_json_atomic(target, self.to_dict())
        except OSError as exc:
            raise IndexIOError(f"write render state {target}: {exc}", target) from exc

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "RenderState":
        segments_raw = raw.get("segments")
        segments: dict[str, SegmentState] = {}
        if isinstance(segments_raw, dict):
            for path, value in segments_raw.items():
                if isinstance(value, dict):
                    segments[str(path)] = SegmentState.from_dict(value)
        return cls(
            global_config_hash=str(raw.get("global_config_hash") or ""),
            segments=segments,
        )


def load_render_state(path: Path | str) -> RenderState:
    """Read render state; a missing file gives an empty state, a corrupt one raises."""

    state_path = Path(path)
    try:
        text = state_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return RenderState()
    except OSError as exc:
        raise IndexIOError(f"read render state {state_path}: {exc}", state_path) from exc
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise IndexIOError(f"decode render state {state_path}: {exc}", state_path) from exc
    if not isinstance(raw, dict):
        raise IndexIOError(
            f"decode render state {state_path}: expected a JSON object", state_path
        )
    return RenderState.from_dict(raw)
