"""
Storage backends for the edge gateway.

These provide a minimal abstraction layer so that the in-process store used for
single-instance and test deployments can be swapped for a shared store (Redis)
without changing the decision logic in window.py.

- RateLimitStore: per-key sliding windows; `hit` is atomic per key.
- EventSink: best-effort destination for security events.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
import zlib
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

from .clock import ms_to_iso
from .errors import StorageUnavailable
from .models import RateLimitPolicy, RateLimitResult, RateLimitWindow, SecurityEvent
from .window import build_result, count_in_window, purge, slide

logger = logging.getLogger(__name__)


class RateLimitStore(ABC):
    """Keyed sliding-window counters."""

    # PUBLIC_INTERFACE
    @abstractmethod
    def hit(self, key: str, policy: RateLimitPolicy, now_ms: int) -> RateLimitResult:
        """Record one request for `key` if the window has room; atomic per key."""

    # PUBLIC_INTERFACE
    @abstractmethod
    def peek(self, key: str, policy: RateLimitPolicy, now_ms: int) -> RateLimitResult:
        """Report the window state for `key` without consuming a slot."""

    # PUBLIC_INTERFACE
    @abstractmethod
    def reset(self, key: str) -> None:
        """Forget all state for `key`."""

    def snapshot(self, now_ms: int) -> Dict[str, Dict[str, Any]]:
        """Observability view of tracked keys. Backends may return an empty map."""
        return {}


class _Shard:
    __slots__ = ("lock", "windows", "ops")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.windows: Dict[str, RateLimitWindow] = {}
        self.ops = 0


class InMemoryRateLimitStore(RateLimitStore):
    """
    Process-local store, partitioned into shards with one lock each.

    Only correct for a single instance. Windows are purged lazily when touched;
    every `sweep_every` operations on a shard, windows idle for longer than
    window + grace are dropped from that shard.
    """

    def __init__(self, shards: int = 16, grace_ms: int = 60_000, sweep_every: int = 256) -> None:
        if shards <= 0:
            raise ValueError("shards must be positive")
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]
        self._grace_ms = grace_ms
        self._sweep_every = max(1, sweep_every)

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    def _sweep(self, shard: _Shard, now_ms: int) -> None:
        stale = [
            k for k, w in shard.windows.items()
            if w.newest() is None or w.newest() <= now_ms - w.window_ms - self._grace_ms
        ]
        for k in stale:
            del shard.windows[k]
        if stale:
            logger.debug("Swept %d idle rate-limit windows", len(stale))

    def hit(self, key: str, policy: RateLimitPolicy, now_ms: int) -> RateLimitResult:
        shard = self._shard_for(key)
        with shard.lock:
            window = shard.windows.get(key)
            if window is None:
                window = RateLimitWindow(identifier=key, window_ms=policy.window_ms)
                shard.windows[key] = window
            window.window_ms = policy.window_ms
            result = slide(window.timestamps, policy, now_ms)
            shard.ops += 1
            if shard.ops % self._sweep_every == 0:
                self._sweep(shard, now_ms)
        return result

    def peek(self, key: str, policy: RateLimitPolicy, now_ms: int) -> RateLimitResult:
        shard = self._shard_for(key)
        with shard.lock:
            window = shard.windows.get(key)
            if window is None:
                return build_result(policy, True, 0, None, now_ms)
            purge(window.timestamps, policy.window_ms, now_ms)
            used = len(window.timestamps)
            oldest = window.timestamps[0] if used else None
        return build_result(policy, used < policy.max_requests, used, oldest, now_ms)

    def reset(self, key: str) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            shard.windows.pop(key, None)

    def snapshot(self, now_ms: int) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for shard in self._shards:
            with shard.lock:
                for key, window in shard.windows.items():
                    newest = window.newest()
                    out[key] = {
                        "recent_hits": count_in_window(window.timestamps, window.window_ms, now_ms),
                        "window_ms": window.window_ms,
                        "last_hit_at": ms_to_iso(newest) if newest is not None else None,
                    }
        return out

    def __len__(self) -> int:
        return sum(len(s.windows) for s in self._shards)


# Mirrors window.slide: purge t <= now - window, then admit if used < limit.
# Returns {admitted, used_after, oldest_score_or_-1}.
_SLIDE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local ttl = tonumber(ARGV[5])
local consume = tonumber(ARGV[6])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local used = redis.call('ZCARD', key)
local admitted = 0
if consume == 1 and used < limit then
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, ttl)
  used = used + 1
  admitted = 1
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local oldest_score = -1
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end
return {admitted, used, oldest_score}
"""


class RedisRateLimitStore(RateLimitStore):
    """
    Shared store for multi-instance deployments.

    Each key is a sorted set of arrival timestamps scored in ms. The whole
    read-purge-append step runs as one Lua script, so concurrent requests on any
    instance cannot both take the last slot. Keys expire after window + grace.
    """

    def __init__(self, client: Redis, key_prefix: str = "ratelimit:", grace_ms: int = 60_000) -> None:
        self._client = client
        self._prefix = key_prefix
        self._grace_ms = grace_ms
        self._script = client.register_script(_SLIDE_SCRIPT)

    # PUBLIC_INTERFACE
    @classmethod
    def from_url(cls, url: str, timeout_ms: int = 50, **kwargs: Any) -> "RedisRateLimitStore":
        """Build a store whose socket operations give up after `timeout_ms`."""
        timeout = timeout_ms / 1000.0
        client = Redis.from_url(url, socket_timeout=timeout, socket_connect_timeout=timeout)
        return cls(client, **kwargs)

    def _run(self, key: str, policy: RateLimitPolicy, now_ms: int, consume: bool) -> RateLimitResult:
        member = f"{now_ms}-{uuid.uuid4().hex[:12]}"
        try:
            admitted, used, oldest = self._script(
                keys=[self._prefix + key],
                args=[
                    now_ms,
                    policy.window_ms,
                    policy.max_requests,
                    member,
                    policy.window_ms + self._grace_ms,
                    1 if consume else 0,
                ],
            )
        except RedisError as exc:
            raise StorageUnavailable(cause=exc) from exc
        oldest_ms: Optional[int] = int(oldest) if int(oldest) >= 0 else None
        used = int(used)
        allowed = bool(int(admitted)) if consume else used < policy.max_requests
        return build_result(policy, allowed, used, oldest_ms, now_ms)

    def hit(self, key: str, policy: RateLimitPolicy, now_ms: int) -> RateLimitResult:
        return self._run(key, policy, now_ms, consume=True)

    def peek(self, key: str, policy: RateLimitPolicy, now_ms: int) -> RateLimitResult:
        return self._run(key, policy, now_ms, consume=False)

    def reset(self, key: str) -> None:
        try:
            self._client.delete(self._prefix + key)
        except RedisError as exc:
            raise StorageUnavailable(cause=exc) from exc


# ============================================
# Event sinks
# ============================================

class EventSink(Protocol):
    def append(self, event: SecurityEvent) -> None:
        ...


class InMemoryEventSink:
    """In-memory sink; keeps the most recent `max_events` events."""

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    # PUBLIC_INTERFACE
    def append(self, event: SecurityEvent) -> None:
        """Store an event."""
        with self._lock:
            self._events.append(event)

    # PUBLIC_INTERFACE
    def list(self) -> List[SecurityEvent]:
        """Events in arrival order."""
        with self._lock:
            return list(self._events)


class LoggingEventSink:
    """Writes each event as one JSON line to the audit logger."""

    def __init__(self, logger_name: str = "edge_gateway.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    def append(self, event: SecurityEvent) -> None:
        self._logger.info(json.dumps(event.to_dict(), default=str))
