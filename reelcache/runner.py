"""Cancellable subprocess execution with per-invocation log files."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol, Sequence

from .errors import OperationCancelled, ToolExecutionError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class CancelToken:
    """Cooperative cancellation flag with an optional monotonic deadline."""

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self.deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds, returning early (True) once cancelled."""
        if self.deadline is not None:
            timeout = max(0.0, min(timeout, self.deadline - time.monotonic()))
        self._event.wait(timeout)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("operation cancelled")


@dataclass(slots=True)
class RunResult:
    returncode: int
    stdout: str = ""


class Runner(Protocol):
    def run(
        self,
        args: Sequence[str],
        *,
        log_path: Path,
        cancel: CancelToken | None = None,
        capture_stdout: bool = False,
    ) -> RunResult:
        ...


class ToolRunner:
    """Runs external tools, appending their stderr (and stdout when not captured) to a log."""

    def run(
        self,
        args: Sequence[str],
        *,
        log_path: Path,
        cancel: CancelToken | None = None,
        capture_stdout: bool = False,
    ) -> RunResult:
        if not args:
            raise ValueError("args must not be empty")
        token = cancel or CancelToken()
        token.raise_if_cancelled()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        command = shlex.join(str(arg) for arg in args)
        logger.debug("run: %s (log %s)", command, log_path)
        with log_path.open("a", encoding="utf-8") as log:
            log.write(f"# {datetime.now().isoformat(timespec='seconds')}\n$ {command}\n")
            log.flush()
            try:
                proc = subprocess.Popen(
                    [str(arg) for arg in args],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE if capture_stdout else log,
                    stderr=log,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as exc:
                log.write(f"failed to start: {exc}\n")
                raise ToolExecutionError(f"start {args[0]}: {exc}", log_path) from exc
            stdout = self._wait(proc, token, log_path)
            log.write(f"exit status {proc.returncode}\n")
        return RunResult(returncode=proc.returncode, stdout=stdout or "")

    @staticmethod
    def _wait(proc: subprocess.Popen, token: CancelToken, log_path: Path) -> str | None:
        while True:
            if token.cancelled:
                proc.kill()
                proc.communicate()
                logger.debug("killed pid %s after cancellation", proc.pid)
                raise OperationCancelled(f"cancelled (see {log_path})")
            try:
                stdout, _ = proc.communicate(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                continue
            return stdout
