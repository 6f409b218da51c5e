from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from reelcache.cache import short_key
from reelcache.errors import NotFoundError, ToolExecutionError
from reelcache.runner import RunResult
from reelcache.services import fetch_service
from reelcache.services.fetch_service import FetchEngine, ProxyLocation
from reelcache.services.source_service import Row, classify

PROBE_JSON = {
    "format": {"format_name": "mov,mp4", "format_long_name": "QuickTime / MOV", "duration": "12.5"},
    "streams": [{"codec_type": "video"}, {"codec_type": "audio"}],
}


class FakeRunner:
    """Imitates yt-dlp (writes the file and marker files) and ffprobe."""

    def __init__(self, *, video_id="abc123", fetch_status=0, probe_status=0, report_path=None):
        self.video_id = video_id
        self.fetch_status = fetch_status
        self.probe_status = probe_status
        self.report_path = report_path
        self.calls: list[list[str]] = []

    def run(self, args, *, log_path, cancel=None, capture_stdout=False):
        self.calls.append(list(args))
        if capture_stdout:
            if self.probe_status:
                return RunResult(self.probe_status)
            return RunResult(0, json.dumps(PROBE_JSON))
        if self.fetch_status:
            return RunResult(self.fetch_status)
        template = args[args.index("--output") + 1]
        target = Path(template.replace("%(id)s", self.video_id).replace("%(ext)s", "mp4"))
        target.write_bytes(b"downloaded-bytes")
        markers = [args[i + 2] for i, arg in enumerate(args) if arg == "--print-to-file"]
        Path(markers[0]).write_text(f"{self.report_path or target}\n", encoding="utf-8")
        Path(markers[1]).write_text(f"{self.video_id}\n", encoding="utf-8")
        return RunResult(0)


class FakeLocator:
    def __init__(self, location=None, error=None):
        self.location = location
        self.error = error
        self.calls = []

    def locate(self, proxy, timeout):
        self.calls.append((proxy, timeout))
        if self.error is not None:
            raise self.error
        return self.location


def _engine(tmp_path, runner, **kwargs) -> FetchEngine:
    return FetchEngine(tmp_path / "cache", tmp_path / "logs", runner=runner, **kwargs)


def test_build_filename_base_for_remote_and_local(tmp_path):
    clip = tmp_path / "My Clip.mov"
    clip.write_bytes(b"x")
    row = Row(index=7, link="https://youtu.be/abc123", title="Live at Home!")

    remote = classify(row.link, tmp_path)
    local = classify(str(clip), tmp_path)

    assert fetch_service.build_filename_base(row, remote) == "%(id)s"
    assert fetch_service.build_filename_base(row, local) == "My_Clip"
    assert fetch_service.build_filename_base(row, remote, "$INDEX_$TITLE") == "007_Live_at_Home_"
    assert fetch_service.build_filename_base(row, remote, "$ARTIST") == f"007_{short_key(remote.identifier)}"


def test_fetch_remote_reports_path_and_etag(tmp_path):
    runner = FakeRunner()
    engine = _engine(tmp_path, runner)
    row = Row(index=1, link="https://youtu.be/abc123")

    result = engine.fetch_remote(row, row.link, "%(id)s")

    assert result.path == tmp_path / "cache" / "abc123.mp4"
    assert result.size_bytes == len(b"downloaded-bytes")
    assert result.etag == "abc123"
    assert result.notes == ["downloaded via yt-dlp"]
    args = runner.calls[0]
    assert args[0] == "yt-dlp"
    assert args[-1] == row.link
    assert "--proxy" not in args
    assert sorted(p.name for p in (tmp_path / "logs").iterdir()) == ["fetch_001.log"]


def test_fetch_remote_nonzero_exit(tmp_path):
    engine = _engine(tmp_path, FakeRunner(fetch_status=2))
    row = Row(index=3, link="https://youtu.be/abc123")

    with pytest.raises(ToolExecutionError) as excinfo:
        engine.fetch_remote(row, row.link, "%(id)s")

    assert excinfo.value.log_path == tmp_path / "logs" / "fetch_003.log"
    assert "status 2" in str(excinfo.value)


def test_fetch_remote_rejects_path_outside_cache(tmp_path):
    runner = FakeRunner(report_path=str(tmp_path / "elsewhere.mp4"))
    engine = _engine(tmp_path, runner)
    row = Row(index=1, link="https://youtu.be/abc123")

    with pytest.raises(ToolExecutionError, match="outside"):
        engine.fetch_remote(row, row.link, "%(id)s")


def test_fetch_remote_writes_proxy_banner(tmp_path):
    locator = FakeLocator(ProxyLocation(ip="203.0.113.9", country="Germany", city="Berlin"))
    runner = FakeRunner()
    engine = _engine(tmp_path, runner, proxy="http://proxy:8080", locator=locator)
    row = Row(index=1, link="https://youtu.be/abc123")

    engine.fetch_remote(row, row.link, "%(id)s")

    log = (tmp_path / "logs" / "fetch_001.log").read_text(encoding="utf-8")
    assert "[reelcache] yt-dlp proxy: http://proxy:8080" in log
    assert "[reelcache] proxy exit IP 203.0.113.9 (Berlin, Germany)" in log
    assert locator.calls[0][0] == "http://proxy:8080"
    args = runner.calls[0]
    assert args[args.index("--proxy") + 1] == "http://proxy:8080"


def test_proxy_banner_survives_lookup_failure():
    log = io.StringIO()
    fetch_service.write_proxy_banner(log, "http://p:1", FakeLocator(error=RuntimeError("boom")))
    assert log.getvalue().splitlines() == [
        "[reelcache] yt-dlp proxy: http://p:1",
        "[reelcache] proxy lookup failed: boom",
    ]

    silent = io.StringIO()
    fetch_service.write_proxy_banner(silent, None, FakeLocator())
    assert silent.getvalue() == ""


def test_fetch_local_links_into_cache(tmp_path):
    source = tmp_path / "media" / "clip.mov"
    source.parent.mkdir()
    source.write_bytes(b"local-bytes")
    engine = _engine(tmp_path, FakeRunner())

    result = engine.fetch_local(Row(index=1, link=str(source)), source, "clip")

    assert result.path == tmp_path / "cache" / "clip.mov"
    assert result.path.read_bytes() == b"local-bytes"
    assert result.notes[0].endswith(f"from {source}")
    assert source.exists()


def test_fetch_local_never_overwrites_another_entry(tmp_path):
    source = tmp_path / "b" / "clip.mov"
    source.parent.mkdir()
    source.write_bytes(b"new")
    taken = tmp_path / "cache" / "clip.mov"
    taken.parent.mkdir()
    taken.write_bytes(b"someone else")
    engine = _engine(tmp_path, FakeRunner())
    row = Row(index=2, link=str(source))

    result = engine.fetch_local(row, source, "clip", identifier=str(source))
    replaced = engine.fetch_local(
        row, source, "clip", identifier=str(source), owned_path=str(taken)
    )

    assert result.path == tmp_path / "cache" / f"clip_{short_key(str(source))}.mov"
    assert result.path.read_bytes() == b"new"
    assert replaced.path == taken
    assert taken.read_bytes() == b"new"


def test_fetch_local_copy_failure_is_not_found(tmp_path, monkeypatch):
    source = tmp_path / "clip.mov"
    source.write_bytes(b"x")
    engine = _engine(tmp_path, FakeRunner())

    def deny(src, dest):
        raise PermissionError(13, "Permission denied", str(src))

    monkeypatch.setattr(fetch_service, "link_or_copy", deny)

    with pytest.raises(NotFoundError) as excinfo:
        engine.fetch_local(Row(index=1, link=str(source)), source, "clip", identifier=str(source))
    assert excinfo.value.path == source
    assert "Permission denied" in str(excinfo.value)


def test_probe_parses_ffprobe_json(tmp_path):
    target = tmp_path / "cache" / "clip.mp4"
    target.parent.mkdir()
    target.write_bytes(b"x")
    runner = FakeRunner()
    engine = _engine(tmp_path, runner)

    probe = engine.probe(Row(index=2, link="x"), target)

    assert probe.format_name == "mov,mp4"
    assert probe.duration_seconds == 12.5
    assert len(probe.streams) == 2
    assert runner.calls[0][0] == "ffprobe"
    assert runner.calls[0][-1] == str(target)
    assert "mov,mp4" in (tmp_path / "logs" / "probe_002.log").read_text(encoding="utf-8")


def test_probe_failure_raises(tmp_path):
    engine = _engine(tmp_path, FakeRunner(probe_status=1))
    with pytest.raises(ToolExecutionError):
        engine.probe(Row(index=1, link="x"), tmp_path / "clip.mp4")


@pytest.mark.parametrize(
    "stdout",
    ["", "not json", "[]", json.dumps({"format": {}})],
)
def test_parse_probe_output_rejects_unusable_reports(stdout):
    with pytest.raises(ToolExecutionError):
        fetch_service.parse_probe_output(stdout)
