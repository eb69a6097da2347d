"""Logging setup for the seatflow package."""

from __future__ import annotations

import logging
import sys
import time
from typing import Optional

from seatflow.utils.config import get_settings


PACKAGE_LOGGER = "seatflow"

_configured = False


class UTCFormatter(logging.Formatter):
    """Stamps records in UTC, the same basis as stored event timestamps."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03dZ | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Attach one stdout handler to the package logger.

    Only the ``seatflow`` hierarchy is configured so uvicorn keeps its own
    access and error loggers.
    """
    global _configured
    if _configured:
        return

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel((level or get_settings().log_level).upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(UTCFormatter())
    package_logger.addHandler(handler)
    package_logger.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
