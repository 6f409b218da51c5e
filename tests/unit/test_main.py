from __future__ import annotations

import runpy
import sys

import pytest

import reelcache


def test_get_version_matches_dunder():
    assert reelcache.get_version() == reelcache.__version__


def test_main_invokes_run(monkeypatch):
    import reelcache.__main__ as reelcache_main

    called = {}

    def fake_run():
        called["ok"] = True

    monkeypatch.setattr("reelcache.__main__.run", fake_run)

    reelcache_main.main()

    assert called["ok"] is True


def test_module_runs_as_script(monkeypatch):
    import reelcache.cli

    called = {"ok": False}

    def fake_run() -> None:
        called["ok"] = True

    monkeypatch.setattr(reelcache.cli, "run", fake_run)

    sys.modules.pop("reelcache.__main__", None)

    with pytest.raises(SystemExit) as exc:
        runpy.run_module("reelcache.__main__", run_name="__main__")

    assert called["ok"] is True
    assert exc.value.code is None
