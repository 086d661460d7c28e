"""Audit log for environment overrides.

Every apply, restore and ordering violation is recorded as a structured
entry, giving tests a trail of what happened to which variable, in what
order, and on which thread.

- **LogLevel** — severity levels ordered for filtering (DEBUG < CRITICAL).
- **LogEntry** — a single structured record (level, message, source, key).
- **Logger** — a bounded, thread-safe log with filtering and clearing.

Design choices:
    - **IntEnum for levels** so they compare naturally with ``<``.
    - **Frozen dataclass for entries** — log records should be immutable.
    - **Bounded deque** — the log lives for the whole test session, so
      the oldest entries drop once capacity is reached.
"""

import os
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum

DEFAULT_CAPACITY = 1000


class LogLevel(IntEnum):
    """Severity levels for log entries."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3
    CRITICAL = 4


def _current_thread_name() -> str:
    return threading.current_thread().name


@dataclass(frozen=True)
class LogEntry:
    """A single structured log record.

    Attributes:
        level: The severity of this event.
        message: A human-readable description of what happened.
        source: The step that generated the event ("override",
            "restore" or "ordering").
        key: The environment variable involved.
        thread: Name of the thread that produced the event.

    """

    level: LogLevel
    message: str
    source: str
    key: str
    thread: str = field(default_factory=_current_thread_name)

    def __str__(self) -> str:
        """Format as ``[LEVEL] source(key): message``."""
        return f"[{self.level.name}] {self.source}({self.key}): {self.message}"


class Logger:
    """Bounded audit log with filtering.

    Appends and reads are serialized by an internal lock, so entries
    written from several threads never corrupt the buffer.
    """

    def __init__(self, *, capacity: int = DEFAULT_CAPACITY) -> None:
        """Create an empty logger holding at most *capacity* entries."""
        self._lock = threading.Lock()
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def _reinit_after_fork(self) -> None:
        """Replace the lock in a freshly forked child; entries are kept."""
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        """Return the maximum number of retained entries."""
        maxlen = self._entries.maxlen
        assert maxlen is not None  # noqa: S101
        return maxlen

    @capacity.setter
    def capacity(self, value: int) -> None:
        """Resize the buffer, keeping the newest entries."""
        if value < 1:
            msg = f"Log capacity must be positive, got {value}"
            raise ValueError(msg)
        with self._lock:
            self._entries = deque(self._entries, maxlen=value)

    @property
    def entries(self) -> list[LogEntry]:
        """Return all retained entries in chronological order."""
        with self._lock:
            return list(self._entries)

    def log(self, level: LogLevel, message: str, *, source: str, key: str) -> None:
        """Append a new entry to the log.

        Args:
            level: Severity of the event.
            message: Human-readable event description.
            source: Step that generated the event.
            key: Environment variable involved.

        """
        entry = LogEntry(level=level, message=message, source=source, key=key)
        with self._lock:
            self._entries.append(entry)

    def filter(
        self,
        *,
        min_level: LogLevel | None = None,
        source: str | None = None,
        key: str | None = None,
    ) -> list[LogEntry]:
        """Return entries matching the given criteria.

        Args:
            min_level: If set, only return entries at or above this level.
            source: If set, only return entries from this source.
            key: If set, only return entries about this variable.

        Returns:
            A filtered list of log entries.

        """
        result = self.entries
        if min_level is not None:
            result = [e for e in result if e.level >= min_level]
        if source is not None:
            result = [e for e in result if e.source == source]
        if key is not None:
            result = [e for e in result if e.key == key]
        return result

    def clear(self) -> None:
        """Remove all log entries."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        """Return the number of retained entries."""
        with self._lock:
            return len(self._entries)


audit_log = Logger()

if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=audit_log._reinit_after_fork)  # noqa: SLF001
