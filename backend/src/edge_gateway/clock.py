"""
Clock sources for the gateway.

All window arithmetic is done in integer epoch milliseconds so that the same
numbers can be handed to an external store unchanged.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol


def ms_to_datetime(ms: int) -> datetime:
    """Convert epoch milliseconds into an aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def ms_to_iso(ms: int) -> str:
    """ISO-8601 rendering with millisecond precision and a trailing Z."""
    return ms_to_datetime(ms).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ClockSource(Protocol):
    def now_ms(self) -> int:
        ...

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock used in production."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    def now(self) -> datetime:
        return ms_to_datetime(self.now_ms())


class ManualClock:
    """Deterministic clock for tests; only moves when told to."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = int(start_ms)

    def now_ms(self) -> int:
        return self._now

    def now(self) -> datetime:
        return ms_to_datetime(self._now)

    def advance(self, ms: int) -> int:
        self._now += int(ms)
        return self._now

    def set(self, ms: int) -> None:
        self._now = int(ms)
