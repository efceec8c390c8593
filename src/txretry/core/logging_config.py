"""Central logging configuration utilities.

A single composition-root driven `configure_logging` wires separate
stdout/stderr sinks and injects the current execution id into all log
records. Core code never mutates global logging; it only emits via
`LoggingPort` or standard module loggers.

The execution id is set by RetryExecutor for the duration of one `run`
call, so records emitted by observers and units of work of concurrent runs
can be told apart.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional
import contextvars

# Execution id context variable (populated per run by RetryExecutor)
execution_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "execution_id", default="-"
)

DEFAULT_FORMAT = (
    "[%(asctime)s] %(levelname)s %(name)s %(execution_id)s: %(message)s"
)


def coerce_level(level: int | str | None) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    key = str(level).upper().strip()
    mapping = logging.getLevelNamesMapping()
    return mapping.get(key, logging.INFO)


class _ExecutionIdFilter(logging.Filter):
    """Stamp every record with the id of the run that emitted it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.execution_id = execution_id_var.get()
        return True


class _LevelRangeFilter(logging.Filter):
    """Pass records with `low <= levelno <= high`."""

    def __init__(self, low: int = logging.NOTSET, high: int = logging.CRITICAL):
        super().__init__()
        self.low = low
        self.high = high

    def filter(self, record: logging.LogRecord) -> bool:
        return self.low <= record.levelno <= self.high


def _stream_handler(stream, level_filter: _LevelRangeFilter, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level_filter.low)
    handler.addFilter(level_filter)
    handler.addFilter(_ExecutionIdFilter())
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: int | str | None = None,
    fmt: Optional[str] = None,
    quiet_drivers: bool = True,
) -> None:
    """Install stdout (up to INFO) and stderr (WARNING and up) sinks on the root logger.

    Calling it again replaces the handlers installed before. With
    `quiet_drivers` the SQLAlchemy engine/pool loggers and the session
    provider adapters only report warnings.
    """
    numeric_level = coerce_level(level)
    formatter = logging.Formatter(fmt or DEFAULT_FORMAT)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    root.addHandler(_stream_handler(sys.stdout, _LevelRangeFilter(logging.DEBUG, logging.INFO), formatter))
    root.addHandler(_stream_handler(sys.stderr, _LevelRangeFilter(logging.WARNING), formatter))

    if quiet_drivers:
        for name in ("sqlalchemy.engine", "sqlalchemy.pool", "txretry.adapters"):
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("txretry").debug(
        "Logging configured level=%s quiet_drivers=%s", numeric_level, quiet_drivers
    )
