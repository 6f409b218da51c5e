"""Fingerprints and skip/render decisions for planned segment outputs."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from ..config import Config
from ..errors import ValidationError
from ..render_state import RenderState

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z0-9_]+)\}")


class Action(str, Enum):
    RENDER = "render"
    SKIP = "skip"


class Reason(str, Enum):
    FORCED = "forced"
    NEW = "new segment"
    CONFIG_CHANGED = "config changed"
    INPUT_CHANGED = "input changed"
    OUTPUT_MISSING = "output missing"
    UP_TO_DATE = "up to date"


@dataclass(slots=True)
class Segment:
    """Opaque description of one planned render output."""

    index: int
    source_identity: str
    output_path: str
    overlay_profile_name: str = ""
    overlay_default_style: dict[str, Any] = field(default_factory=dict)
    overlay_segments: list[dict[str, Any]] = field(default_factory=list)
    filename_template: str = ""
    duration_seconds: float = 0.0
    custom_fields: dict[str, str] = field(default_factory=dict)
    source_path: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Segment":
        try:
            index = int(raw["index"])
            source_identity = str(raw["source_identity"])
            output_path = str(raw["output_path"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"segment descriptor is incomplete: {exc}") from exc
        style = raw.get("overlay_default_style")
        overlays = raw.get("overlay_segments")
        fields = raw.get("custom_fields")
        try:
            duration = float(raw.get("duration_seconds") or 0.0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"segment {index}: invalid duration_seconds") from exc
        return cls(
            index=index,
            source_identity=source_identity,
            output_path=output_path,
            overlay_profile_name=str(raw.get("overlay_profile_name") or ""),
            overlay_default_style=dict(style) if isinstance(style, dict) else {},
            overlay_segments=[dict(item) for item in overlays if isinstance(item, dict)]
            if isinstance(overlays, list)
            else [],
            filename_template=str(raw.get("filename_template") or ""),
            duration_seconds=duration,
            custom_fields={str(k): str(v) for k, v in fields.items()}
            if isinstance(fields, dict)
            else {},
            source_path=str(raw.get("source_path") or ""),
        )


@dataclass(slots=True)
class SegmentAction:
    segment: Segment
    action: Action
    reason: Reason

    @property
    def needs_render(self) -> bool:
        return self.action is Action.RENDER


def _digest(payload: Any) -> str:
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return "sha256:" + hashlib.sha256(data.encode("utf-8")).hexdigest()


def global_config_hash(config: Config) -> str:
    """Digest over every setting that affects all rendered segments."""

    return _digest(
        {
            "video": asdict(config.video),
            "audio": asdict(config.audio),
            "encoding": asdict(config.encoding),
            "profiles": {
                name: asdict(profile) for name, profile in sorted(config.profiles.items())
            },
        }
    )


def _collect_placeholders(value: Any, found: set[str]) -> None:
    if isinstance(value, str):
        found.update(_PLACEHOLDER_RE.findall(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_placeholders(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_placeholders(item, found)


def referenced_fields(segment: Segment) -> dict[str, str]:
    """Return the custom fields that overlay templates actually use."""

    names: set[str] = set()
    _collect_placeholders(segment.overlay_segments, names)
    return {
        key: value
        for key, value in sorted(segment.custom_fields.items())
        if key in names or key.lower() in names
    }


def segment_input_hash(segment: Segment, template: str | None = None) -> str:
    """Digest over the inputs that shape a single rendered segment."""

    return _digest(
        {
            "source_identity": segment.source_identity,
            "profile_name": segment.overlay_profile_name,
            "default_style": segment.overlay_default_style,
            "segments": segment.overlay_segments,
            "template": template if template is not None else segment.filename_template,
            "duration_seconds": segment.duration_seconds,
            "custom_fields": referenced_fields(segment),
        }
    )


def _decide(
    state: RenderState,
    segment: Segment,
    config_hash: str,
    template: str | None,
) -> Reason:
    prior = state.get(segment.output_path)
    if prior is None:
        return Reason.NEW
    if config_hash != state.global_config_hash:
        return Reason.CONFIG_CHANGED
    if segment_input_hash(segment, template) != prior.input_hash:
        return Reason.INPUT_CHANGED
    if not Path(segment.output_path).exists():
        return Reason.OUTPUT_MISSING
    return Reason.UP_TO_DATE


def detect_changes(
    state: RenderState,
    segments: Sequence[Segment],
    config: Config,
    template: str | None = None,
    force: bool = False,
) -> list[SegmentAction]:
    """Classify every segment as render or skip, in input order."""

    if force:
        return [SegmentAction(seg, Action.RENDER, Reason.FORCED) for seg in segments]
    config_hash = global_config_hash(config)
    actions: list[SegmentAction] = []
    for seg in segments:
        reason = _decide(state, seg, config_hash, template)
        action = Action.SKIP if reason is Reason.UP_TO_DATE else Action.RENDER
        actions.append(SegmentAction(seg, action, reason))
    return actions


def prune(state: RenderState, current_keys: Iterable[str]) -> int:
    """Drop stored segment states whose output is no longer planned."""

    keep = set(current_keys)
    stale = [key for key in state.segments if key not in keep]
    for key in stale:
        del state.segments[key]
    return len(stale)
