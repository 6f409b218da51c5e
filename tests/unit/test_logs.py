import io
import logging
from datetime import datetime

from rich.console import Console

from reelcache.logs import PACKAGE_LOGGER, configure_logging, session_log_name


def test_session_log_name_is_timestamped():
    assert session_log_name(datetime(2024, 2, 3, 4, 5, 6)) == "20240203-040506.log"


def test_configure_logging_writes_session_file(tmp_path):
    session = configure_logging(log_dir=tmp_path / "logs", console=Console(file=io.StringIO()))

    logging.getLogger("reelcache.services.fetch_service").debug("row 1 fetched")
    for handler in logging.getLogger(PACKAGE_LOGGER).handlers:
        handler.flush()

    assert session is not None
    assert session.parent == tmp_path / "logs"
    assert "row 1 fetched" in session.read_text(encoding="utf-8")


def test_configure_logging_console_level_and_reconfigure(tmp_path):
    quiet = io.StringIO()
    configure_logging(console=Console(file=quiet, width=200))
    logger = logging.getLogger("reelcache.cli")
    logger.info("hidden detail")
    logger.warning("visible warning")
    assert "hidden detail" not in quiet.getvalue()
    assert "visible warning" in quiet.getvalue()

    loud = io.StringIO()
    configure_logging(verbose=True, console=Console(file=loud, width=200))
    logger.debug("debug detail")
    assert "debug detail" in loud.getvalue()
    assert len(logging.getLogger(PACKAGE_LOGGER).handlers) == 1
