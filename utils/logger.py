"""Structured logging; no global state beyond logging tree."""

from __future__ import annotations

import logging
import sys
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module/component. No side effects."""
    return logging.getLogger(name)


def setup_logging(
    level: str = "INFO",
    format_string: str | None = None,
    stream: Any = None,
) -> None:
    """
    Configure root logger once. Safe to call from main or tests.
    Chatty HTTP libraries are held at WARNING unless level is DEBUG.
    """
    numeric = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format=format_string or LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=stream or sys.stdout,
        force=True,
    )
    if numeric > logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("PIL").setLevel(logging.WARNING)


def log_structured(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """Emit a log record with extra keys for structured aggregation; keys also appended to the message."""
    if kwargs:
        msg = f"{msg} " + " ".join(f"{k}={v}" for k, v in kwargs.items())
    logger.log(level, msg, extra={f"ctx_{k}": v for k, v in kwargs.items()})
