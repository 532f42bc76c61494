"""Selection of log level, output and format from configuration strings."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

DEFAULT_LOG_LEVEL = logging.INFO
TEXT_DATE_FORMAT = "%d/%m/%Y %H:%M:%S"

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def parse_log_level(level: str) -> int:
    """Map a level name to a logging level, defaulting to INFO."""
    return _LEVELS.get(level, DEFAULT_LOG_LEVEL)


def parse_log_output(name: str) -> TextIO:
    """Return the stream logs are written to; every choice currently means stdout."""
    return sys.stdout


def parse_log_formatter(name: str) -> logging.Formatter:
    """Return a formatter: "text" gives full timestamps and padded levels."""
    if name == "text":
        return logging.Formatter(
            "%(asctime)s %(levelname)-7s %(message)s",
            datefmt=TEXT_DATE_FORMAT,
        )
    return logging.Formatter('time="%(asctime)s" level=%(levelname)s msg="%(message)s"')