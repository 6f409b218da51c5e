"""Project configuration and path layout for reelcache."""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict

from .errors import ValidationError

DEFAULT_CONFIG_DIR = Path(os.path.expanduser("~")) / ".reelcache"
CONFIG_DIR = DEFAULT_CONFIG_DIR
_CONFIG_DIR_OVERRIDE: ContextVar[Path | None] = ContextVar(
    "reelcache_config_dir_override",
    default=None,
)
PROJECT_CONFIG_FILENAME = "reelcache.json"
META_DIRNAME = ".reelcache"
INDEX_FILENAME = "index.json"
RENDER_STATE_FILENAME = "render-state.json"
ENV_HOME = "REELCACHE_HOME"
ENV_LIBRARY = "REELCACHE_LIBRARY"

DEFAULT_FILENAME_TEMPLATE = "$ID"
DEFAULT_SEGMENT_TEMPLATE = "$INDEX_PAD3_$TITLE"
DEFAULT_YTDLP = "yt-dlp"
DEFAULT_FFPROBE = "ffprobe"
DEFAULT_FFMPEG = "ffmpeg"
MANAGED_TOOLS: tuple[str, ...] = (DEFAULT_YTDLP, DEFAULT_FFPROBE, DEFAULT_FFMPEG)


@dataclass
class VideoSettings:
    width: int = 1920
    height: int = 1080
    fps: int = 30
    codec: str = "libx264"
    crf: int = 20
    preset: str = "medium"


@dataclass
class AudioSettings:
    codec: str = "aac"
    bitrate_kbps: int = 192
    sample_rate: int = 48_000
    channels: int = 2
    loudnorm: bool = True


@dataclass
class EncodingSettings:
    pixel_format: str = "yuv420p"
    container: str = "mp4"
    extra_args: list[str] = field(default_factory=list)


@dataclass
class OverlayProfile:
    """Overlay styling consumed verbatim by the renderer."""

    default_style: dict[str, Any] = field(default_factory=dict)
    segments: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ToolSettings:
    path: str | None = None
    proxy: str | None = None


@dataclass
class LibrarySettings:
    shared: bool = False
    path: str | None = None


@dataclass
class Config:
    video: VideoSettings = field(default_factory=VideoSettings)
    audio: AudioSettings = field(default_factory=AudioSettings)
    encoding: EncodingSettings = field(default_factory=EncodingSettings)
    profiles: dict[str, OverlayProfile] = field(default_factory=dict)
    tools: dict[str, ToolSettings] = field(default_factory=dict)
    library: LibrarySettings = field(default_factory=LibrarySettings)
    filename_template: str = DEFAULT_FILENAME_TEMPLATE
    segment_template: str = DEFAULT_SEGMENT_TEMPLATE
    cookies_file: str | None = None

    def tool_path(self, name: str) -> str:
        settings = self.tools.get(name)
        if settings is not None and settings.path:
            return settings.path
        return name

    def tool_proxy(self, name: str) -> str | None:
        settings = self.tools.get(name)
        if settings is None:
            return None
        return settings.proxy or None


@dataclass(slots=True)
class ProjectPaths:
    """Canonical locations for a project and the shared library."""

    root: Path
    config_file: Path
    cookies_file: Path
    meta_dir: Path
    logs_dir: Path
    segments_dir: Path
    render_state_file: Path
    local_cache_dir: Path
    local_index_file: Path
    library_dir: Path
    library_sources_dir: Path
    library_index_file: Path
    shared: bool = False

    @property
    def cache_dir(self) -> Path:
        return self.library_sources_dir if self.shared else self.local_cache_dir

    @property
    def index_file(self) -> Path:
        return self.library_index_file if self.shared else self.local_index_file

    def ensure_meta_dirs(self) -> None:
        for directory in (self.meta_dir, self.logs_dir, self.cache_dir):
            directory.mkdir(parents=True, exist_ok=True)


def _as_int(raw: Any, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _as_str(raw: Any, default: str) -> str:
    if raw is None:
        return default
    value = str(raw).strip()
    return value or default


def _parse_video(raw: object) -> VideoSettings:
    if not isinstance(raw, dict):
        return VideoSettings()
    base = VideoSettings()
    return VideoSettings(
        width=_as_int(raw.get("width"), base.width),
        height=_as_int(raw.get("height"), base.height),
        fps=_as_int(raw.get("fps"), base.fps),
        codec=_as_str(raw.get("codec"), base.codec),
        crf=_as_int(raw.get("crf"), base.crf),
        preset=_as_str(raw.get("preset"), base.preset),
    )


def _parse_audio(raw: object) -> AudioSettings:
    if not isinstance(raw, dict):
        return AudioSettings()
    base = AudioSettings()
    return AudioSettings(
        codec=_as_str(raw.get("codec"), base.codec),
        bitrate_kbps=_as_int(raw.get("bitrate_kbps"), base.bitrate_kbps),
        sample_rate=_as_int(raw.get("sample_rate"), base.sample_rate),
        channels=_as_int(raw.get("channels"), base.channels),
        loudnorm=bool(raw.get("loudnorm", base.loudnorm)),
    )


def _parse_encoding(raw: object) -> EncodingSettings:
    if not isinstance(raw, dict):
        return EncodingSettings()
    base = EncodingSettings()
    extra = raw.get("extra_args") or []
    return EncodingSettings(
        pixel_format=_as_str(raw.get("pixel_format"), base.pixel_format),
        container=_as_str(raw.get("container"), base.container),
        extra_args=[str(arg) for arg in extra] if isinstance(extra, list) else [],
    )


def _parse_profiles(raw: object) -> dict[str, OverlayProfile]:
    if not isinstance(raw, dict):
        return {}
    profiles: dict[str, OverlayProfile] = {}
    for name, value in raw.items():
        if not isinstance(value, dict):
            continue
        style = value.get("default_style")
        segments = value.get("segments")
        profiles[str(name)] = OverlayProfile(
            default_style=dict(style) if isinstance(style, dict) else {},
            segments=[dict(seg) for seg in segments if isinstance(seg, dict)]
            if isinstance(segments, list)
            else [],
        )
    return profiles


def _parse_tools(raw: object) -> dict[str, ToolSettings]:
    if not isinstance(raw, dict):
        return {}
    tools: dict[str, ToolSettings] = {}
    for name, value in raw.items():
        if not isinstance(value, dict):
            continue
        path = (value.get("path") or "").strip() or None
        proxy = (value.get("proxy") or "").strip() or None
        tools[str(name)] = ToolSettings(path=path, proxy=proxy)
    return tools


def _parse_library(raw: object) -> LibrarySettings:
    if not isinstance(raw, dict):
        return LibrarySettings()
    return LibrarySettings(
        shared=bool(raw.get("shared", False)),
        path=(raw.get("path") or "").strip() or None,
    )


def config_from_mapping(raw: Dict[str, Any]) -> Config:
    """Build a Config from parsed JSON, ignoring unknown keys."""

    downloads = raw.get("downloads") if isinstance(raw.get("downloads"), dict) else {}
    outputs = raw.get("outputs") if isinstance(raw.get("outputs"), dict) else {}
    files = raw.get("files") if isinstance(raw.get("files"), dict) else {}
    return Config(
        video=_parse_video(raw.get("video")),
        audio=_parse_audio(raw.get("audio")),
        encoding=_parse_encoding(raw.get("encoding")),
        profiles=_parse_profiles(raw.get("profiles")),
        tools=_parse_tools(raw.get("tools")),
        library=_parse_library(raw.get("library")),
        filename_template=_as_str(
            downloads.get("filename_template"), DEFAULT_FILENAME_TEMPLATE
        ),
        segment_template=_as_str(
            outputs.get("segment_template"), DEFAULT_SEGMENT_TEMPLATE
        ),
        cookies_file=(files.get("cookies") or "").strip() or None,
    )


def load_config(path: Path | str) -> Config:
    """Load the project config, returning defaults when the file is missing."""

    config_file = Path(path)
    if not config_file.exists():
        return Config()
    try:
        raw = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(f"invalid config {config_file}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValidationError(f"invalid config {config_file}: expected a JSON object")
    return config_from_mapping(raw)


def save_config(config: Config, path: Path | str) -> None:
    config_file = Path(path)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data: Dict[str, Any] = {
        "video": asdict(config.video),
        "audio": asdict(config.audio),
        "encoding": asdict(config.encoding),
        "downloads": {"filename_template": config.filename_template},
        "outputs": {"segment_template": config.segment_template},
    }
    if config.profiles:
        data["profiles"] = {
            name: asdict(profile) for name, profile in sorted(config.profiles.items())
        }
    tools: Dict[str, Any] = {}
    for name, settings in sorted(config.tools.items()):
        entry = {key: value for key, value in asdict(settings).items() if value}
        if entry:
            tools[name] = entry
    if tools:
        data["tools"] = tools
    library: Dict[str, Any] = {"shared": bool(config.library.shared)}
    if config.library.path:
        library["path"] = config.library.path
    data["library"] = library
    if config.cookies_file:
        data["files"] = {"cookies": config.cookies_file}
    config_file.write_text(
        json.dumps(data, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def config_dir() -> Path:
    """Return the user-level reelcache directory."""

    override = _CONFIG_DIR_OVERRIDE.get()
    if override is not None:
        return override
    env_home = os.environ.get(ENV_HOME, "").strip()
    if env_home:
        return Path(env_home).expanduser().resolve()
    return CONFIG_DIR


@contextmanager
def config_dir_context(path: Path | str | None):
    """Temporarily override the user-level directory for the current context."""

    if path is None:
        yield
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    token = _CONFIG_DIR_OVERRIDE.set(dir_path)
    try:
        yield
    finally:
        _CONFIG_DIR_OVERRIDE.reset(token)


def resolve_library_dir(config: Config) -> Path:
    """Resolve the shared library root: env var, then config, then the default."""

    override = os.environ.get(ENV_LIBRARY, "").strip()
    if override:
        return Path(override).expanduser().resolve()
    if config.library.path:
        return Path(config.library.path).expanduser().resolve()
    return config_dir() / "library"


def _resolve_project_path(root: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    if candidate.is_absolute():
        return candidate
    return root / candidate


def resolve_project_paths(root: Path | str, config: Config | None = None) -> ProjectPaths:
    """Return every project location, honoring library sharing from *config*."""

    root_path = Path(root).expanduser().resolve()
    if config is None:
        config = load_config(root_path / PROJECT_CONFIG_FILENAME)
    meta_dir = root_path / META_DIRNAME
    library_dir = resolve_library_dir(config)
    cookies = (
        _resolve_project_path(root_path, config.cookies_file)
        if config.cookies_file
        else root_path / "cookies.txt"
    )
    return ProjectPaths(
        root=root_path,
        config_file=root_path / PROJECT_CONFIG_FILENAME,
        cookies_file=cookies,
        meta_dir=meta_dir,
        logs_dir=root_path / "logs",
        segments_dir=root_path / "segments",
        render_state_file=meta_dir / RENDER_STATE_FILENAME,
        local_cache_dir=root_path / "cache",
        local_index_file=meta_dir / INDEX_FILENAME,
        library_dir=library_dir,
        library_sources_dir=library_dir / "sources",
        library_index_file=library_dir / INDEX_FILENAME,
        shared=bool(config.library.shared),
    )
