from __future__ import annotations

import os

from reelcache.config import Config, LibrarySettings, ToolSettings, resolve_project_paths
from reelcache.services import system_service


def _executable(path):
    path.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    os.chmod(path, 0o755)
    return path


def test_find_command_on_path_checks_explicit_paths(tmp_path):
    tool = _executable(tmp_path / "ffprobe")
    plain = tmp_path / "not-executable"
    plain.write_text("x", encoding="utf-8")

    assert system_service.find_command_on_path(str(tool)) == str(tool)
    assert system_service.find_command_on_path(str(plain)) is None
    assert system_service.find_command_on_path("reelcache-missing-tool-xyz") is None


def test_check_tool_uses_configured_path(tmp_path):
    tool = _executable(tmp_path / "yt-dlp")
    config = Config(tools={"yt-dlp": ToolSettings(path=str(tool))})

    found = system_service.check_tool("yt-dlp", config)
    missing = system_service.check_tool("reelcache-missing-tool-xyz", Config())

    assert found.passed
    assert str(tool) in found.message
    assert not missing.passed
    assert missing.detail


def test_check_directory_creates_missing_dir(tmp_path):
    target = tmp_path / "cache"

    created = system_service.check_directory("Cache Dir", target)
    writable = system_service.check_directory("Cache Dir", target)

    assert created.passed and "Created" in created.message
    assert writable.passed and "writable" in writable.message
    assert list(target.iterdir()) == []


def test_run_all_doctor_checks_includes_library_when_shared(tmp_path, monkeypatch):
    monkeypatch.setenv("REELCACHE_LIBRARY", str(tmp_path / "library"))
    config = Config(library=LibrarySettings(shared=True))
    paths = resolve_project_paths(tmp_path / "proj", config)

    results = system_service.run_all_doctor_checks(
        paths, config, tools=("reelcache-missing-tool-xyz",)
    )

    assert [result.name for result in results] == [
        "reelcache-missing-tool-xyz",
        "Config",
        "Cache Dir",
        "Library",
    ]
    assert [result.passed for result in results] == [False, True, True, True]
    assert results[1].message == "Using default configuration"


def test_run_all_doctor_checks_skips_absent_library(tmp_path, monkeypatch):
    monkeypatch.setenv("REELCACHE_LIBRARY", str(tmp_path / "library"))
    paths = resolve_project_paths(tmp_path / "proj", Config())

    results = system_service.run_all_doctor_checks(paths, Config(), tools=())

    assert [result.name for result in results] == ["Config", "Cache Dir"]
