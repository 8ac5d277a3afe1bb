"""
Security event monitor.

Keeps a bounded, insertion-ordered log of SecurityEvents, answers queries and
statistics over it, and derives attack patterns on demand.

Persistence to an external EventSink is fire-and-forget on a single background
worker: log_event never waits for the sink, and sink failures are logged and
dropped. At most `max_pending` events wait for the sink; beyond that new events
skip the sink (they still enter the log) and are counted in `dropped_events`.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional

from .anomaly_detector import AttackPatternDetector
from .clock import ClockSource, SystemClock
from .models import AttackPattern, SecurityEvent, SecurityEventType, Severity
from .storage import EventSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 1000
DEFAULT_MAX_PENDING = 1000
TOP_OFFENDERS = 10
RECENT_ACTIVITY = 10

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


def _newest_first(events: Iterable[SecurityEvent], limit: Optional[int]) -> List[SecurityEvent]:
    # reversed() first so equal timestamps keep newest-inserted first (sort is stable)
    ordered = sorted(reversed(list(events)), key=lambda e: e.timestamp, reverse=True)
    return ordered if limit is None else ordered[: max(0, limit)]


class SecurityMonitor:
    """
    Bounded FIFO of security events plus aggregation and pattern detection.

    Construct one per gateway; there is no module-level instance.
    """

    def __init__(
        self,
        max_events: int = DEFAULT_MAX_EVENTS,
        sink: Optional[EventSink] = None,
        clock: Optional[ClockSource] = None,
        detector: Optional[AttackPatternDetector] = None,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        if max_pending <= 0:
            raise ValueError("max_pending must be positive")
        self.max_events = max_events
        self.max_pending = max_pending
        self.dropped_events = 0
        self._pending = 0
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._clock = clock or SystemClock()
        self._detector = detector or AttackPatternDetector()
        self._sink = sink
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="security-sink") if sink is not None else None
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def _snapshot(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    # PUBLIC_INTERFACE
    def log_event(self, event: SecurityEvent) -> None:
        """Append an event (evicting the oldest beyond max_events) and hand it to the sink."""
        with self._lock:
            self._events.append(event)
        logger.log(
            _LOG_LEVELS.get(event.severity, logging.WARNING),
            "Security event %s (%s) from %s on %s %s: %s",
            event.type.value,
            event.severity.value,
            event.client_ip,
            event.method or "-",
            event.endpoint or "-",
            event.reason or "-",
        )
        self._dispatch(event)

    # PUBLIC_INTERFACE
    def record(
        self,
        type: SecurityEventType,
        severity: Severity,
        client_ip: str,
        user_agent: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SecurityEvent:
        """Build an event stamped with the monitor's clock and log it."""
        event = SecurityEvent(
            timestamp=self._clock.now(),
            type=type,
            severity=severity,
            client_ip=client_ip or "unknown",
            user_agent=user_agent,
            endpoint=endpoint,
            method=method,
            reason=reason,
        )
        self.log_event(event)
        return event

    def _dispatch(self, event: SecurityEvent) -> None:
        if self._executor is None:
            return
        with self._lock:
            full = self._pending >= self.max_pending
            if full:
                self.dropped_events += 1
            else:
                self._pending += 1
        if full:
            logger.warning("Security event sink backlog full (%d pending), event not persisted", self.max_pending)
            return
        try:
            future = self._executor.submit(self._sink.append, event)
        except RuntimeError as exc:
            # executor already shut down
            with self._lock:
                self._pending -= 1
            logger.error("Security event sink unavailable: %s", exc)
            return
        future.add_done_callback(self._on_sink_done)

    def _on_sink_done(self, future: Future) -> None:
        with self._lock:
            self._pending -= 1
        exc = future.exception()
        if exc is not None:
            logger.error("Security event sink failed: %s: %s", type(exc).__name__, exc)

    # PUBLIC_INTERFACE
    def get_recent_events(self, limit: int = 50) -> List[SecurityEvent]:
        """Newest first."""
        return _newest_first(self._snapshot(), limit)

    # PUBLIC_INTERFACE
    def get_events_by_type(self, event_type: SecurityEventType, limit: int = 50) -> List[SecurityEvent]:
        return _newest_first((e for e in self._snapshot() if e.type == event_type), limit)

    # PUBLIC_INTERFACE
    def get_events_by_severity(self, severity: Severity, limit: int = 50) -> List[SecurityEvent]:
        return _newest_first((e for e in self._snapshot() if e.severity == severity), limit)

    # PUBLIC_INTERFACE
    def get_security_stats(self) -> Dict[str, Any]:
        """
        Aggregate counters over the whole log.

        Returns total_events, per-type and per-severity counts, the ten IPs with the
        most events (descending) and the ten most recent events.
        """
        events = self._snapshot()
        by_type = {t.value: 0 for t in SecurityEventType}
        by_severity = {s.value: 0 for s in Severity}
        offenders: Counter = Counter()
        for event in events:
            by_type[event.type.value] += 1
            by_severity[event.severity.value] += 1
            offenders[event.client_ip] += 1
        return {
            "total_events": len(events),
            "events_by_type": by_type,
            "events_by_severity": by_severity,
            "top_offenders": offenders.most_common(TOP_OFFENDERS),
            "recent_activity": _newest_first(events, RECENT_ACTIVITY),
        }

    # PUBLIC_INTERFACE
    def detect_attack_patterns(self) -> List[AttackPattern]:
        """Patterns over the last hour of events."""
        return self._detector.detect(self._snapshot(), self._clock.now())

    # PUBLIC_INTERFACE
    def clear_old_events(self, older_than_hours: float = 24) -> int:
        """Drop events older than the horizon. Returns how many were removed."""
        cutoff = self._clock.now() - timedelta(hours=older_than_hours)
        with self._lock:
            kept = [e for e in self._events if e.timestamp >= cutoff]
            removed = len(self._events) - len(kept)
            self._events.clear()
            self._events.extend(kept)
        if removed:
            logger.info("Purged %d security events older than %sh", removed, older_than_hours)
        return removed

    # PUBLIC_INTERFACE
    def close(self, wait: bool = True) -> None:
        """Stop the sink worker; pending writes are flushed when wait=True."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
