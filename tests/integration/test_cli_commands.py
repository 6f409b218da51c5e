from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from reelcache import __version__
from reelcache.cache import CacheIndex, Entry, SourceType, load_index, save_index
from reelcache.cli import app
from reelcache.config import Config
from reelcache.render_state import RenderState, load_render_state
from reelcache.runner import RunResult
from reelcache.services.change_service import Segment, global_config_hash
from reelcache.services.fetch_service import FetchEngine
from reelcache.services.system_service import DoctorCheckResult

URL = "https://youtu.be/abc123"


class FakeRunner:
    def __init__(self, probe_status=0, fetch_status=0):
        self.probe_status = probe_status
        self.fetch_status = fetch_status

    def run(self, args, *, log_path, cancel=None, capture_stdout=False):
        if capture_stdout:
            if self.probe_status:
                return RunResult(self.probe_status)
            payload = {"format": {"format_name": "mp4", "duration": "42"}, "streams": []}
            return RunResult(0, json.dumps(payload))
        if self.fetch_status:
            return RunResult(self.fetch_status)
        template = args[args.index("--output") + 1]
        target = Path(template.replace("%(id)s", "abc123").replace("%(ext)s", "mp4"))
        target.write_bytes(b"video")
        markers = [args[i + 2] for i, arg in enumerate(args) if arg == "--print-to-file"]
        Path(markers[0]).write_text(str(target), encoding="utf-8")
        Path(markers[1]).write_text("abc123", encoding="utf-8")
        return RunResult(0)


@pytest.fixture
def project(tmp_path, monkeypatch):
    root = tmp_path / "proj"
    root.mkdir()
    monkeypatch.setenv("REELCACHE_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("REELCACHE_LIBRARY", raising=False)
    monkeypatch.setattr("reelcache.cli.console", Console(width=400))
    return root


def _use_runner(monkeypatch, runner):
    original = FetchEngine.from_config.__func__

    def from_config(cls, paths, config, **kwargs):
        return original(cls, paths, config, runner=runner)

    monkeypatch.setattr(FetchEngine, "from_config", classmethod(from_config))


def _invoke(root: Path, *args: str):
    return CliRunner().invoke(app, ["-C", str(root), *args])


def test_version_flag():
    result = CliRunner().invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_fetch_requires_links(project):
    result = _invoke(project, "fetch")
    assert result.exit_code == 1
    assert "No source references" in result.stdout


def test_fetch_downloads_then_hits_cache(project, monkeypatch):
    _use_runner(monkeypatch, FakeRunner())

    first = _invoke(project, "fetch", URL)
    second = _invoke(project, "fetch", URL)

    assert first.exit_code == 0, first.stdout
    assert "row 001 downloaded" in first.stdout
    assert "(probed 42.0s)" in first.stdout
    assert "index saved to ./.reelcache/index.json" in first.stdout
    assert second.exit_code == 0
    assert "row 001 cached" in second.stdout
    assert "usage recorded in ./.reelcache/index.json" in second.stdout
    index = load_index(project / ".reelcache" / "index.json")
    entry = index.get(URL)
    assert entry.cached_path == str(project.resolve() / "cache" / "abc123.mp4")
    assert entry.last_used_at is not None
    assert entry.last_used_at >= entry.retrieved_at


def test_fetch_from_file_reports_failed_rows(project, monkeypatch):
    _use_runner(monkeypatch, FakeRunner())
    (project / "clip.mov").write_bytes(b"local")
    refs = project / "refs.txt"
    refs.write_text("# sources\nclip.mov\n\nmissing.mov\n", encoding="utf-8")

    result = _invoke(project, "fetch", "--from-file", str(refs))

    assert result.exit_code == 1
    assert "row 001 copied" in result.stdout
    assert "row 002 missing.mov" in result.stdout
    assert "1 resolved, 1 failed" in result.stdout
    assert len(load_index(project / ".reelcache" / "index.json")) == 1


def test_fetch_keeps_going_past_a_directory(project, monkeypatch):
    _use_runner(monkeypatch, FakeRunner())
    (project / "first.mov").write_bytes(b"one")
    (project / "second.mov").write_bytes(b"two")
    (project / "footage").mkdir()

    result = _invoke(project, "fetch", "first.mov", "footage", "second.mov")

    assert result.exit_code == 1
    assert "row 002 footage: local source is not a file" in result.stdout
    assert "2 resolved, 1 failed; index saved" in result.stdout
    assert len(load_index(project / ".reelcache" / "index.json")) == 2


def test_lookup_hit_and_miss(project, monkeypatch):
    _use_runner(monkeypatch, FakeRunner())
    _invoke(project, "fetch", URL)

    hit = _invoke(project, "lookup", URL)
    miss = _invoke(project, "lookup", "https://example.com/nothing")

    assert hit.exit_code == 0
    assert f"identifier: {URL}" in hit.stdout
    assert "duration: 42.0s" in hit.stdout
    assert miss.exit_code == 1
    assert "No cached entry" in miss.stdout


def test_migrate_moves_project_cache_into_library(project, tmp_path, monkeypatch):
    monkeypatch.setenv("REELCACHE_LIBRARY", str(tmp_path / "library"))
    cache_dir = project / "cache"
    cache_dir.mkdir()
    clip = cache_dir / "video.mp4"
    clip.write_bytes(b"payload")
    index = CacheIndex()
    index.set_entry(Entry(identifier="youtube:abc123", source_type=SourceType.URL, cached_path=str(clip)))
    save_index(project / ".reelcache" / "index.json", index)

    dry = _invoke(project, "migrate", "--dry-run")
    assert dry.exit_code == 0
    assert "Migration (dry run): 1 moved" in dry.stdout
    assert clip.exists()

    real = _invoke(project, "migrate")
    assert real.exit_code == 0
    assert "Migration complete: 1 moved" in real.stdout
    assert "Local cache directory is now empty" in real.stdout
    library = load_index(tmp_path / "library" / "index.json")
    assert library.get("youtube:abc123").cached_path.endswith("video.mp4")

    again = _invoke(project, "migrate")
    assert "nothing to migrate" in again.stdout


def test_prune_dry_run_then_real(project):
    old = project / "cache" / "old.mp4"
    old.parent.mkdir()
    old.write_bytes(b"x" * 10)
    index = CacheIndex()
    index.set_entry(
        Entry(
            identifier="https://a.example/old",
            source_type=SourceType.URL,
            cached_path=str(old),
            retrieved_at=datetime.now(timezone.utc) - timedelta(days=200),
            size_bytes=10,
        )
    )
    index_file = project / ".reelcache" / "index.json"
    save_index(index_file, index)

    dry = _invoke(project, "prune", "--older-than", "90d", "--dry-run")
    assert dry.exit_code == 0
    assert "would prune https://a.example/old (10 B)" in dry.stdout
    assert old.exists()

    real = _invoke(project, "prune", "--older-than", "90d")
    assert real.exit_code == 0
    assert "Prune complete: 1 removed" in real.stdout
    assert not old.exists()
    assert len(load_index(index_file)) == 0


def test_prune_rejects_bad_age(project):
    result = _invoke(project, "prune", "--older-than", "soon")
    assert result.exit_code == 1
    assert "Invalid --older-than" in result.stdout


def test_verify_reports_and_fixes(project, monkeypatch):
    monkeypatch.setattr("reelcache.cli.find_command_on_path", lambda command: "/usr/bin/ffprobe")
    _use_runner(monkeypatch, FakeRunner(probe_status=1))
    bad = project / "cache" / "bad.mp4"
    bad.parent.mkdir()
    bad.write_bytes(b"garbage")
    index = CacheIndex()
    index.set_entry(Entry(identifier=URL, source_type=SourceType.URL, cached_path=str(bad)))
    index_file = project / ".reelcache" / "index.json"
    save_index(index_file, index)

    checked = _invoke(project, "verify")
    assert checked.exit_code == 1
    assert "CORRUPT" in checked.stdout
    assert "0 valid, 0 missing, 1 corrupt, 0 fixed" in checked.stdout

    fixed = _invoke(project, "verify", "--fix")
    assert fixed.exit_code == 0
    assert "1 corrupt, 1 fixed" in fixed.stdout
    assert load_index(index_file).get(URL).cached_path == ""


def test_verify_requires_ffprobe(project, monkeypatch):
    monkeypatch.setattr("reelcache.cli.find_command_on_path", lambda command: None)
    result = _invoke(project, "verify")
    assert result.exit_code == 1
    assert "ffprobe" in result.stdout


def _write_segments(project: Path) -> Path:
    segments = [
        {
            "index": index,
            "source_identity": URL,
            "output_path": str(project / "segments" / f"{index:03d}.mp4"),
            "filename_template": "$INDEX_PAD3",
            "duration_seconds": 30,
        }
        for index in (1, 2)
    ]
    path = project / "segments.json"
    path.write_text(json.dumps(segments), encoding="utf-8")
    return path


def test_plan_reports_new_then_up_to_date(project):
    segments_file = _write_segments(project)

    first = _invoke(project, "plan", str(segments_file))
    assert first.exit_code == 0
    assert "new segment" in first.stdout
    assert "2 to render, 0 up to date" in first.stdout

    state = RenderState(global_config_hash=global_config_hash(Config()))
    for raw in json.loads(segments_file.read_text(encoding="utf-8")):
        segment = Segment.from_dict(raw)
        state.record(segment)
        Path(segment.output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(segment.output_path).write_bytes(b"rendered")
    state.segments["/old/output.mp4"] = state.segments[str(project / "segments" / "001.mp4")]
    state.save(project / ".reelcache" / "render-state.json")

    second = _invoke(project, "plan", str(segments_file), "--prune")
    assert second.exit_code == 0
    assert "0 to render, 2 up to date" in second.stdout
    assert "Pruned 1 stale render state entry." in second.stdout
    assert "/old/output.mp4" not in load_render_state(project / ".reelcache" / "render-state.json").segments

    forced = _invoke(project, "plan", str(segments_file), "--force")
    assert "2 to render, 0 up to date" in forced.stdout
    assert "forced" in forced.stdout


def test_plan_anchors_relative_outputs_at_project_root(project, tmp_path, monkeypatch):
    root = project.resolve()
    raw = [
        {
            "index": index,
            "source_identity": URL,
            "output_path": f"segments/{index:03d}.mp4",
            "filename_template": "$INDEX_PAD3",
        }
        for index in (1, 2)
    ]
    segments_file = project / "segments.json"
    segments_file.write_text(json.dumps(raw), encoding="utf-8")
    state = RenderState(global_config_hash=global_config_hash(Config()))
    for item in raw:
        segment = Segment.from_dict(dict(item, output_path=str(root / item["output_path"])))
        state.record(segment)
        Path(segment.output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(segment.output_path).write_bytes(b"rendered")
    state.save(project / ".reelcache" / "render-state.json")
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)

    result = _invoke(project, "plan", str(segments_file))

    assert result.exit_code == 0
    assert "output missing" not in result.stdout
    assert "0 to render, 2 up to date" in result.stdout
    assert "./segments/001.mp4" in result.stdout


def test_plan_rejects_invalid_segments(project):
    path = project / "segments.json"
    path.write_text(json.dumps({"index": 1}), encoding="utf-8")
    result = _invoke(project, "plan", str(path))
    assert result.exit_code == 1
    assert "Unable to read segments" in result.stdout


def test_doctor_reports_results(project, monkeypatch):
    passing = [
        DoctorCheckResult(name="yt-dlp", passed=True, message="`yt-dlp` found at /usr/bin/yt-dlp"),
        DoctorCheckResult(name="Cache Dir", passed=True, message="cache is writable"),
    ]
    monkeypatch.setattr("reelcache.cli.run_all_doctor_checks", lambda paths, config: passing)
    ok = _invoke(project, "doctor")
    assert ok.exit_code == 0
    assert "All checks passed." in ok.stdout

    failing = passing + [
        DoctorCheckResult(name="ffmpeg", passed=False, message="`ffmpeg` not found on PATH", detail="Install ffmpeg"),
    ]
    monkeypatch.setattr("reelcache.cli.run_all_doctor_checks", lambda paths, config: failing)
    bad = _invoke(project, "doctor")
    assert bad.exit_code == 1
    assert "1 check(s) failed." in bad.stdout
    assert "Install ffmpeg" in bad.stdout
