"""Bounded in-memory log store with scoped reads.

Two index-aligned ring buffers (records and timestamps) of the same capacity.
Writers and clearers are serialized by one lock; `clear()` swaps in fresh
rings so a reader sees either the old generation or the new one, never a mix.

Typical use:

    log_store.clear()
    do_one_operation()
    lines = log_store.query(30, level="error")
"""

from __future__ import annotations

import re
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from .errors import InvalidLogFilter

DEFAULT_CAPACITY = 1024


class LogLevel(str, Enum):
    EMERGENCY = "emergency"
    ALERT = "alert"
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    NOTICE = "notice"
    INFO = "info"
    DEBUG = "debug"

    @classmethod
    def parse(cls, value: str | LogLevel) -> LogLevel:
        if isinstance(value, LogLevel):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            names = ", ".join(level.value for level in cls)
            raise InvalidLogFilter(f"unknown log level {value!r} (expected one of: {names})") from exc

    @classmethod
    def from_levelno(cls, levelno: int) -> LogLevel:
        """Map a stdlib logging level number onto the eight syslog-style levels."""
        if levelno >= 70:
            return cls.EMERGENCY
        if levelno >= 60:
            return cls.ALERT
        if levelno >= 50:
            return cls.CRITICAL
        if levelno >= 40:
            return cls.ERROR
        if levelno >= 30:
            return cls.WARNING
        if levelno >= 25:
            return cls.NOTICE
        if levelno >= 20:
            return cls.INFO
        return cls.DEBUG


@dataclass(frozen=True, slots=True)
class LogRecord:
    level: LogLevel
    message: str
    timestamp: datetime


def timestamp() -> datetime:
    """Current UTC time. Take one before an operation and pass it as `since` afterwards."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _compile_pattern(pattern: str | re.Pattern[str] | None) -> re.Pattern[str] | None:
    if pattern is None:
        return None
    if isinstance(pattern, re.Pattern):
        return pattern
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise InvalidLogFilter(f"invalid grep pattern {pattern!r}: {exc}") from exc


class LogStore:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if int(capacity) < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = int(capacity)
        self._lock = threading.Lock()
        self._entries, self._timestamps = self._fresh_rings()

    def _fresh_rings(self) -> tuple[deque[tuple[LogLevel, str]], deque[datetime]]:
        return deque(maxlen=self.capacity), deque(maxlen=self.capacity)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def ingest(self, record: LogRecord) -> None:
        with self._lock:
            self._entries.append((record.level, record.message))
            self._timestamps.append(_as_utc(record.timestamp))

    def log(self, level: str | LogLevel, message: str, *, at: datetime | None = None) -> LogRecord:
        record = LogRecord(LogLevel.parse(level), str(message), at or timestamp())
        self.ingest(record)
        return record

    def clear(self) -> None:
        entries, timestamps = self._fresh_rings()
        with self._lock:
            self._entries = entries
            self._timestamps = timestamps

    def snapshot(self) -> list[LogRecord]:
        with self._lock:
            entries = list(self._entries)
            timestamps = list(self._timestamps)
        return [LogRecord(level, message, ts) for (level, message), ts in zip(entries, timestamps)]

    def query(
        self,
        limit: int,
        *,
        level: str | LogLevel | None = None,
        pattern: str | re.Pattern[str] | None = None,
        since: datetime | None = None,
    ) -> list[str]:
        """Messages matching every given filter, last `limit` in chronological order."""
        level_filter = LogLevel.parse(level) if level is not None else None
        regex = _compile_pattern(pattern)
        cutoff = _as_utc(since) if since is not None else None

        records = self.snapshot()
        if cutoff is not None:
            records = [r for r in records if r.timestamp > cutoff]
        if level_filter is not None:
            records = [r for r in records if r.level == level_filter]
        if regex is not None:
            records = [r for r in records if regex.search(r.message)]

        if limit <= 0:
            return []
        return [r.message for r in records[-int(limit) :]]

    def query_since(self, limit: int, since: datetime, pattern: str | None = None) -> list[str]:
        return self.query(limit, pattern=pattern, since=since)


log_store = LogStore()


def configure_log_store(capacity: int) -> LogStore:
    """Replace the process-wide store (used at startup when the capacity is configured)."""
    global log_store
    if capacity != log_store.capacity:
        log_store = LogStore(capacity)
    return log_store


def get_log_store() -> LogStore:
    return log_store


__all__ = [
    "DEFAULT_CAPACITY",
    "LogLevel",
    "LogRecord",
    "LogStore",
    "configure_log_store",
    "get_log_store",
    "log_store",
    "timestamp",
]
