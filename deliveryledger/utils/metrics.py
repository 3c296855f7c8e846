"""
Timing helpers for request processing and reconciliation runs.
"""
import time
from datetime import datetime, timezone
from typing import Optional


class Timer:
    """Simple timer for measuring operation latency."""

    def __init__(self):
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> "Timer":
        self._start = time.monotonic()
        return self

    def stop(self) -> int:
        """Stop timer and return elapsed milliseconds."""
        self._end = time.monotonic()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> int:
        if self._start is None:
            return 0
        end = self._end or time.monotonic()
        return int((end - self._start) * 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as some drivers return them) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Whole seconds from start to end. None when either is missing or the delta is negative."""
    start, end = as_utc(start), as_utc(end)
    if start is None or end is None:
        return None
    delta = int((end - start).total_seconds())
    if delta < 0:
        return None
    return delta
