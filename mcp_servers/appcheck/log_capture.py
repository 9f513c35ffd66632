"""Bridge from stdlib logging into the log store, plus scoped capture.

Emissions marked with ``extra=INTERNAL_EXTRA`` are dropped before ingestion so
the core's own chatter never shows up in what callers read back.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from .log_buffer import LogLevel, LogRecord, LogStore, get_log_store, timestamp

INTERNAL_ATTR = "appcheck_internal"
INTERNAL_EXTRA = {INTERNAL_ATTR: True}

NOTICE = 25
ALERT = 60
EMERGENCY = 70

logging.addLevelName(NOTICE, "NOTICE")
logging.addLevelName(ALERT, "ALERT")
logging.addLevelName(EMERGENCY, "EMERGENCY")

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class BufferLogHandler(logging.Handler):
    """logging.Handler that ingests formatted records into a LogStore."""

    def __init__(self, store: LogStore | None = None, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._store = store
        self.setFormatter(logging.Formatter(DEFAULT_FORMAT))

    @property
    def store(self) -> LogStore:
        return self._store if self._store is not None else get_log_store()

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, INTERNAL_ATTR, False):
            return
        try:
            message = self.format(record)
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        self.store.ingest(LogRecord(LogLevel.from_levelno(record.levelno), message, timestamp()))


def install_log_capture(
    logger: logging.Logger | None = None,
    *,
    store: LogStore | None = None,
    level: int = logging.NOTSET,
) -> BufferLogHandler:
    """Attach a BufferLogHandler (idempotent per logger/store pair)."""
    target = logger if logger is not None else logging.getLogger()
    for handler in target.handlers:
        if isinstance(handler, BufferLogHandler) and handler._store is store:  # noqa: SLF001
            return handler
    handler = BufferLogHandler(store, level)
    target.addHandler(handler)
    return handler


def uninstall_log_capture(handler: BufferLogHandler, logger: logging.Logger | None = None) -> None:
    target = logger if logger is not None else logging.getLogger()
    target.removeHandler(handler)


@dataclass
class ScopedLogs:
    started_at: datetime
    lines: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.lines


@contextmanager
def capture_logs(
    limit: int = 30,
    *,
    store: LogStore | None = None,
    level: str | LogLevel | None = None,
    pattern: str | re.Pattern[str] | None = None,
) -> Generator[ScopedLogs, None, None]:
    """Clear the store, run the block, then read back only what it logged.

    The read happens even if the block raises. Unrelated work logging at the
    same time will show up too; there is no per-operation isolation.
    """
    target = store if store is not None else get_log_store()
    target.clear()
    scoped = ScopedLogs(started_at=timestamp())
    try:
        yield scoped
    finally:
        scoped.lines = target.query(limit, level=level, pattern=pattern)


def format_scoped_logs(lines: list[str]) -> str:
    if not lines:
        return "logs: (clean, no output during operation)"
    return "logs_during_operation:\n" + "\n".join(lines)


__all__ = [
    "ALERT",
    "BufferLogHandler",
    "EMERGENCY",
    "INTERNAL_ATTR",
    "INTERNAL_EXTRA",
    "NOTICE",
    "ScopedLogs",
    "capture_logs",
    "format_scoped_logs",
    "install_log_capture",
    "uninstall_log_capture",
]
