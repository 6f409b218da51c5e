"""Diagnostics for external tools and cache directories."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from ..config import MANAGED_TOOLS, Config, ProjectPaths
from ..text import Messages


@dataclass
class DoctorCheckResult:
    """Result of a single doctor check."""

    name: str
    passed: bool
    message: str
    detail: str | None = None


def find_command_on_path(command: str) -> Optional[str]:
    """Return the resolved path for *command*; explicit paths are checked directly."""

    if os.sep in command or (os.altsep and os.altsep in command):
        candidate = Path(command).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        return None
    return shutil.which(command)


def check_tool(name: str, config: Config) -> DoctorCheckResult:
    """Check that an external tool can be found."""
    command = config.tool_path(name)
    path = find_command_on_path(command)
    if path:
        return DoctorCheckResult(
            name=name,
            passed=True,
            message=Messages.DOCTOR_TOOL_FOUND.format(tool=name, path=path),
        )
    return DoctorCheckResult(
        name=name,
        passed=False,
        message=Messages.DOCTOR_TOOL_MISSING.format(tool=command),
        detail=Messages.DOCTOR_TOOL_MISSING_DETAIL.format(tool=name),
    )


def check_config_exists(paths: ProjectPaths) -> DoctorCheckResult:
    """Check if the project config file exists."""
    if paths.config_file.exists():
        return DoctorCheckResult(
            name="Config",
            passed=True,
            message=Messages.DOCTOR_CONFIG_EXISTS.format(path=paths.config_file),
        )
    return DoctorCheckResult(
        name="Config",
        passed=True,
        message=Messages.DOCTOR_CONFIG_DEFAULT,
        detail=str(paths.config_file),
    )


def check_directory(name: str, directory: Path) -> DoctorCheckResult:
    """Check if *directory* exists (creating it when needed) and is writable."""
    if not directory.exists():
        try:
            directory.mkdir(parents=True, exist_ok=True)
            return DoctorCheckResult(
                name=name,
                passed=True,
                message=Messages.DOCTOR_DIR_CREATED.format(path=directory),
            )
        except OSError as exc:
            return DoctorCheckResult(
                name=name,
                passed=False,
                message=Messages.DOCTOR_DIR_CANNOT_CREATE.format(path=directory),
                detail=str(exc),
            )

    test_file = directory / ".doctor_test"
    try:
        test_file.write_text("test", encoding="utf-8")
        test_file.unlink()
        return DoctorCheckResult(
            name=name,
            passed=True,
            message=Messages.DOCTOR_DIR_WRITABLE.format(path=directory),
        )
    except OSError as exc:
        return DoctorCheckResult(
            name=name,
            passed=False,
            message=Messages.DOCTOR_DIR_NOT_WRITABLE.format(path=directory),
            detail=str(exc),
        )


def run_all_doctor_checks(
    paths: ProjectPaths,
    config: Config,
    *,
    tools: Sequence[str] = MANAGED_TOOLS,
) -> list[DoctorCheckResult]:
    """Run all doctor checks and return results."""
    results = [check_tool(name, config) for name in tools]
    results.append(check_config_exists(paths))
    results.append(check_directory("Cache Dir", paths.cache_dir))
    if paths.shared or paths.library_dir.exists():
        results.append(check_directory("Library", paths.library_sources_dir))
    return results
