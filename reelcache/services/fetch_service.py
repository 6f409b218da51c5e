"""Download, copy and probe helpers wrapping yt-dlp and ffprobe."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TextIO
from urllib import error, request
from urllib.parse import urlparse

from ..cache import ProbeMetadata, SourceType, hash_identifier, short_key
from ..config import (
    DEFAULT_FFPROBE,
    DEFAULT_FILENAME_TEMPLATE,
    DEFAULT_YTDLP,
    Config,
    ProjectPaths,
)
from ..errors import NotFoundError, ToolExecutionError
from ..runner import CancelToken, Runner, ToolRunner
from ..utils import (
    apply_filename_template,
    cleanup_filename,
    file_exists,
    is_within,
    link_or_copy,
    sanitize_segment,
)
from .source_service import Row, SourceInfo

logger = logging.getLogger(__name__)

PROXY_LOOKUP_URL = "https://ipwho.is"
PROXY_LOOKUP_TIMEOUT = 5.0
REMOTE_ID_PLACEHOLDER = "%(id)s"
_BANNER_PREFIX = "[reelcache]"


@dataclass(slots=True)
class FetchResult:
    path: Path
    size_bytes: int
    etag: str = ""
    notes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProxyLocation:
    ip: str = ""
    country: str = ""
    region: str = ""
    city: str = ""

    def describe(self) -> str:
        return ", ".join(part for part in (self.city, self.region, self.country) if part)


class ProxyLocator(Protocol):
    def locate(self, proxy: str, timeout: float) -> ProxyLocation:
        ...


class IpWhoIsLocator:
    """Looks up the public exit address of a proxy through ipwho.is."""

    def __init__(self, url: str = PROXY_LOOKUP_URL) -> None:
        self.url = url

    def locate(self, proxy: str, timeout: float) -> ProxyLocation:
        opener = request.build_opener(request.ProxyHandler({"http": proxy, "https": proxy}))
        try:
            with opener.open(self.url, timeout=timeout) as response:
                if not 200 <= response.status < 300:
                    raise RuntimeError(f"unexpected status: HTTP {response.status}")
                payload = response.read().decode("utf-8")
        except error.URLError as exc:
            raise RuntimeError(f"request failed: {exc}") from exc
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RuntimeError("invalid lookup response") from exc
        if not isinstance(data, dict):
            raise RuntimeError("invalid lookup response")
        if data.get("success") is False and data.get("message"):
            raise RuntimeError(f"lookup error: {data['message']}")
        return ProxyLocation(
            ip=str(data.get("ip") or ""),
            country=str(data.get("country") or ""),
            region=str(data.get("region") or ""),
            city=str(data.get("city") or ""),
        )


def write_proxy_banner(
    log: TextIO,
    proxy: str | None,
    locator: ProxyLocator,
    timeout: float = PROXY_LOOKUP_TIMEOUT,
) -> None:
    """Describe the configured proxy at the top of a fetch log."""
    if not proxy or not proxy.strip():
        return
    log.write(f"{_BANNER_PREFIX} yt-dlp proxy: {proxy}\n")
    try:
        location = locator.locate(proxy, timeout)
    except Exception as exc:  # the banner is informational only
        log.write(f"{_BANNER_PREFIX} proxy lookup failed: {exc}\n")
        return
    desc = location.describe()
    if location.ip and desc:
        log.write(f"{_BANNER_PREFIX} proxy exit IP {location.ip} ({desc})\n")
    elif location.ip:
        log.write(f"{_BANNER_PREFIX} proxy exit IP {location.ip}\n")
    elif desc:
        log.write(f"{_BANNER_PREFIX} proxy location {desc}\n")
    else:
        log.write(f"{_BANNER_PREFIX} proxy location unknown\n")


def _local_id(source: SourceInfo, hash10: str) -> str:
    if source.local_path is not None:
        stem = sanitize_segment(source.local_path.stem)
        if stem:
            return stem
    return sanitize_segment(hash10) or "source"


def filename_template_values(
    row: Row, source: SourceInfo
) -> tuple[dict[str, str], dict[str, str]]:
    """Return the ``$TOKEN`` values for remote and local cache filenames."""

    key = hash_identifier(source.identifier)
    hash10 = short_key(source.identifier)
    duration = str(row.duration_seconds) if row.duration_seconds > 0 else ""
    index_padded = f"{row.index:03d}"
    title = sanitize_segment(row.title)
    artist = sanitize_segment(row.artist)
    name = sanitize_segment(row.name)
    start = sanitize_segment(row.start_raw)
    host = ""
    if source.source_type is SourceType.URL:
        try:
            host = urlparse(source.raw).hostname or ""
        except ValueError:
            host = ""
    source_id = sanitize_segment(source.identifier)
    common = {
        "INDEX": index_padded,
        "INDEX_PAD3": index_padded,
        "INDEX_RAW": str(row.index),
        "ROW_ID": str(row.index),
        "HASH": key,
        "HASH10": hash10,
        "KEY": key,
        "KEY10": hash10,
        "TITLE": title,
        "ARTIST": artist,
        "NAME": name,
        "START": start,
        "DURATION": duration,
        "SOURCE_HOST": sanitize_segment(host),
        "SOURCE_ID": source_id,
        "CANONICAL_ID": source_id or sanitize_segment(key),
        "PLAN_TITLE": title,
        "PLAN_ARTIST": artist,
        "PLAN_NAME": name,
        "PLAN_START": start,
        "PLAN_DURATION": duration,
    }
    remote = dict(common, ID=REMOTE_ID_PLACEHOLDER)
    local = dict(common, ID=_local_id(source, hash10))
    return remote, local


def build_filename_base(row: Row, source: SourceInfo, template: str | None = None) -> str:
    """Expand the filename template for *source*, falling back to ``NNN_<hash10>``."""

    remote, local = filename_template_values(row, source)
    values = remote if source.source_type is SourceType.URL else local
    base = cleanup_filename(apply_filename_template(template or DEFAULT_FILENAME_TEMPLATE, values))
    if not base:
        base = f"{row.index:03d}_{short_key(source.identifier)}"
    return base


class FetchEngine:
    """Fetches sources into the cache directory and probes cached files."""

    def __init__(
        self,
        cache_dir: Path,
        logs_dir: Path,
        *,
        runner: Runner | None = None,
        ytdlp: str = DEFAULT_YTDLP,
        ffprobe: str = DEFAULT_FFPROBE,
        cookies_file: Path | None = None,
        proxy: str | None = None,
        locator: ProxyLocator | None = None,
        filename_template: str = DEFAULT_FILENAME_TEMPLATE,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.logs_dir = Path(logs_dir)
        self.runner: Runner = runner or ToolRunner()
        self.ytdlp = ytdlp
        self.ffprobe = ffprobe
        self.cookies_file = cookies_file
        self.proxy = proxy
        self.locator: ProxyLocator = locator or IpWhoIsLocator()
        self.filename_template = filename_template or DEFAULT_FILENAME_TEMPLATE

    @classmethod
    def from_config(
        cls,
        paths: ProjectPaths,
        config: Config,
        *,
        runner: Runner | None = None,
        locator: ProxyLocator | None = None,
    ) -> "FetchEngine":
        cookies = paths.cookies_file if file_exists(paths.cookies_file) else None
        if cookies is not None:
            logger.info("using cookies file: %s", cookies)
        return cls(
            paths.cache_dir,
            paths.logs_dir,
            runner=runner,
            ytdlp=config.tool_path(DEFAULT_YTDLP),
            ffprobe=config.tool_path(DEFAULT_FFPROBE),
            cookies_file=cookies,
            proxy=config.tool_proxy(DEFAULT_YTDLP),
            locator=locator,
            filename_template=config.filename_template,
        )

    def fetch_log_path(self, row: Row) -> Path:
        return self.logs_dir / f"fetch_{row.index:03d}.log"

    def probe_log_path(self, row: Row) -> Path:
        return self.logs_dir / f"probe_{row.index:03d}.log"

    def filename_base(self, row: Row, source: SourceInfo) -> str:
        return build_filename_base(row, source, self.filename_template)

    def _marker(self, prefix: str) -> Path:
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=".txt", dir=self.logs_dir)
        os.close(fd)
        return Path(name)

    def fetch_remote(
        self,
        row: Row,
        identifier: str,
        dest_base_name: str,
        cancel: CancelToken | None = None,
    ) -> FetchResult:
        """Download *identifier* with yt-dlp into the cache directory."""

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.fetch_log_path(row)
        with log_path.open("w", encoding="utf-8") as log:
            write_proxy_banner(log, self.proxy, self.locator)

        path_marker = self._marker("yt-dlp-path-")
        id_marker = self._marker("yt-dlp-id-")
        try:
            args = [
                self.ytdlp,
                "--no-playlist",
                "--no-progress",
                "--force-overwrites",
                "--output",
                str(self.cache_dir / f"{dest_base_name}.%(ext)s"),
                "--print-to-file",
                "after_move:filepath",
                str(path_marker),
                "--print-to-file",
                "after_move:id",
                str(id_marker),
            ]
            if self.cookies_file is not None:
                args.extend(["--cookies", str(self.cookies_file)])
            if self.proxy:
                args.extend(["--proxy", self.proxy])
            args.append(identifier)

            logger.debug("yt-dlp row=%d source=%s", row.index, identifier)
            result = self.runner.run(args, log_path=log_path, cancel=cancel)
            if result.returncode != 0:
                raise ToolExecutionError(
                    f"yt-dlp exited with status {result.returncode}", log_path
                )
            reported = _first_line(path_marker)
            etag = _first_line(id_marker)
        finally:
            path_marker.unlink(missing_ok=True)
            id_marker.unlink(missing_ok=True)

        if not reported:
            raise ToolExecutionError("yt-dlp did not report an output path", log_path)
        target = Path(reported)
        if not target.is_absolute():
            target = self.cache_dir / target
        target = Path(os.path.abspath(target))
        if not is_within(target, self.cache_dir):
            raise ToolExecutionError(
                f"downloaded path {target} is outside {self.cache_dir}", log_path
            )
        try:
            size = target.stat().st_size
        except OSError as exc:
            raise ToolExecutionError(f"stat downloaded file: {exc}", log_path) from exc
        return FetchResult(
            path=target,
            size_bytes=size,
            etag=etag,
            notes=["downloaded via yt-dlp"],
        )

    def fetch_local(
        self,
        row: Row,
        source_path: Path,
        dest_base_name: str,
        *,
        identifier: str = "",
        owned_path: str = "",
    ) -> FetchResult:
        """Hardlink or copy a local file into the cache directory.

        A file already sitting at ``<base><ext>`` is replaced only when it is
        *owned_path* (the entry's previous cached file). Otherwise the name is
        suffixed with the identifier's short key so another entry's media is
        never overwritten.
        """

        source_path = Path(source_path)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        suffix = source_path.suffix
        target = self.cache_dir / f"{dest_base_name}{suffix}"
        if (
            identifier
            and os.path.lexists(target)
            and not _same_path(target, source_path)
            and not (owned_path and _same_path(target, owned_path))
        ):
            target = self.cache_dir / f"{dest_base_name}_{short_key(identifier)}{suffix}"
        logger.debug(
            "cache copy row=%d source=%s target=%s", row.index, source_path, target
        )
        try:
            if _same_path(target, source_path):
                note = f"already in cache at {source_path}"
            else:
                target.unlink(missing_ok=True)
                linked = link_or_copy(source_path, target)
                note = f"{'hardlinked' if linked else 'copied'} from {source_path}"
            size = target.stat().st_size
        except OSError as exc:
            raise NotFoundError(
                f"cannot read local source {source_path}: {exc}", source_path
            ) from exc
        return FetchResult(path=target, size_bytes=size, notes=[note])

    def probe(
        self,
        row: Row,
        path: Path,
        cancel: CancelToken | None = None,
    ) -> ProbeMetadata:
        """Run ffprobe on *path* and parse its JSON report."""

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.probe_log_path(row)
        log_path.write_text("", encoding="utf-8")
        args = [
            self.ffprobe,
            "-v",
            "error",
            "-show_format",
            "-show_streams",
            "-print_format",
            "json",
            str(path),
        ]
        logger.debug("ffprobe row=%d target=%s", row.index, path)
        result = self.runner.run(args, log_path=log_path, cancel=cancel, capture_stdout=True)
        if result.stdout:
            with log_path.open("a", encoding="utf-8") as log:
                log.write(result.stdout)
        if result.returncode != 0:
            raise ToolExecutionError(
                f"ffprobe exited with status {result.returncode}", log_path
            )
        return parse_probe_output(result.stdout, log_path)


def parse_probe_output(stdout: str, log_path: Path | None = None) -> ProbeMetadata:
    text = (stdout or "").strip()
    if not text:
        raise ToolExecutionError("ffprobe produced no output", log_path)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(f"decode ffprobe output: {exc}", log_path) from exc
    if not isinstance(parsed, dict):
        raise ToolExecutionError("ffprobe output is not a JSON object", log_path)
    fmt = parsed.get("format")
    streams = parsed.get("streams")
    if not isinstance(fmt, dict) or not isinstance(streams, list):
        raise ToolExecutionError("ffprobe output lacks format or streams", log_path)
    try:
        duration = float(fmt.get("duration") or 0.0)
    except (TypeError, ValueError):
        duration = 0.0
    return ProbeMetadata(
        format_name=str(fmt.get("format_name") or ""),
        format_long_name=str(fmt.get("format_long_name") or ""),
        duration_seconds=duration,
        streams=streams,
        format_raw=fmt,
        raw=parsed,
    )


def _first_line(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return ""
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _same_path(left: Path | str, right: Path | str) -> bool:
    return os.path.abspath(left) == os.path.abspath(right)
