"""Logging setup for the reelcache CLI.

The console handler prints to stderr at WARNING (DEBUG with ``--verbose``).
When a log directory is given every session also gets its own
``YYYYmmdd-HHMMSS.log`` file capturing DEBUG records.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "reelcache"
_FILE_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"
_CONSOLE_FORMAT = "%(name)s: %(message)s"
_HANDLER_MARKER = "_reelcache_handler"


def _clear_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def session_log_name(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}.log"


def configure_logging(
    *,
    verbose: bool = False,
    log_dir: Path | None = None,
    console: Console | None = None,
) -> Path | None:
    """Install reelcache's handlers and return the session log path, if any.

    Calling this again replaces the handlers installed by a previous call.
    """

    logger = logging.getLogger(PACKAGE_LOGGER)
    _clear_handlers(logger)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    setattr(console_handler, _HANDLER_MARKER, True)
    logger.addHandler(console_handler)

    session_file: Path | None = None
    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            session_file = log_dir / session_log_name()
            file_handler = logging.FileHandler(session_file, mode="a", encoding="utf-8")
        except OSError as exc:
            logger.warning("session log disabled: %s", exc)
            session_file = None
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            setattr(file_handler, _HANDLER_MARKER, True)
            logger.addHandler(file_handler)

    logger.debug("logging configured: verbose=%s session=%s", verbose, session_file)
    return session_file
