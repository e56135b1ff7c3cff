"""Logging setup."""
import logging
import sys

from cronarchive.config import config

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger for console output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or config.LOG_LEVEL).upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
