"""
Sliding-window arithmetic.

Pure functions over a window of arrival timestamps (epoch ms). Store backends
call into these so that the admit/deny decision is identical whether the window
lives in process memory or in Redis.

A timestamp t is inside the window ending at `now` when now - window_ms < t <= now.
"""

from __future__ import annotations

import math
from typing import Deque, Optional

from .models import RateLimitPolicy, RateLimitResult


def window_start(window_ms: int, now: int) -> int:
    """Exclusive lower bound of the window."""
    return now - window_ms


def purge(timestamps: Deque[int], window_ms: int, now: int) -> int:
    """Drop timestamps with t <= now - window_ms from the left. Returns how many were removed."""
    start = window_start(window_ms, now)
    removed = 0
    while timestamps and timestamps[0] <= start:
        timestamps.popleft()
        removed += 1
    return removed


def retry_after_seconds(reset_at: int, now: int) -> int:
    """Whole seconds until reset, rounded up, never below 1."""
    return max(1, math.ceil((reset_at - now) / 1000))


def remaining_for(policy: RateLimitPolicy, used: int) -> int:
    return max(0, policy.max_requests - used)


def build_result(
    policy: RateLimitPolicy,
    admitted: bool,
    used: int,
    oldest: Optional[int],
    now: int,
) -> RateLimitResult:
    """
    Assemble a RateLimitResult.

    `used` is the number of timestamps in the window after the decision (including
    the current request when admitted). `oldest` is the earliest timestamp still in
    the window, or None for an empty window.
    """
    reset_at = (oldest if oldest is not None else now) + policy.window_ms
    if admitted:
        return RateLimitResult(
            success=True,
            remaining=remaining_for(policy, used),
            limit=policy.max_requests,
            reset_at=reset_at,
        )
    return RateLimitResult(
        success=False,
        remaining=remaining_for(policy, used),
        limit=policy.max_requests,
        reset_at=reset_at,
        retry_after=retry_after_seconds(reset_at, now),
    )


def slide(timestamps: Deque[int], policy: RateLimitPolicy, now: int) -> RateLimitResult:
    """
    Read, purge, decide and append in one step.

    The caller is responsible for making this atomic with respect to other
    requests for the same key.
    """
    purge(timestamps, policy.window_ms, now)
    used = len(timestamps)
    if used >= policy.max_requests:
        return build_result(policy, False, used, timestamps[0], now)
    timestamps.append(now)
    return build_result(policy, True, used + 1, timestamps[0], now)


def count_in_window(timestamps: Deque[int], window_ms: int, now: int) -> int:
    """Number of timestamps inside the window, without mutating."""
    start = window_start(window_ms, now)
    return sum(1 for t in timestamps if start < t <= now)
