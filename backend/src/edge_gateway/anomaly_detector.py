"""
Attack Pattern Detector

Groups recent security events by source IP and flags campaigns using fixed
thresholds. A campaign is raised when one IP's count for a type is strictly
greater than the threshold:
- auth_failure           > 10  -> brute_force_auth (high)
- xss_attempt            > 5   -> xss_attack_campaign (critical)
- sql_injection_attempt  > 3   -> sql_injection_campaign (critical)

No state is kept between calls; patterns are derived from whatever slice of the
event log the caller passes in.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List

from .models import AttackPattern, SecurityEvent, SecurityEventType, Severity

DETECTION_WINDOW = timedelta(milliseconds=3_600_000)


@dataclass(frozen=True)
class PatternRule:
    pattern: str
    event_type: SecurityEventType
    threshold: int
    severity: Severity
    label: str


PATTERN_RULES: List[PatternRule] = [
    PatternRule("brute_force_auth", SecurityEventType.AUTH_FAILURE, 10, Severity.HIGH, "authentication failures"),
    PatternRule("xss_attack_campaign", SecurityEventType.XSS_ATTEMPT, 5, Severity.CRITICAL, "XSS attempts"),
    PatternRule("sql_injection_campaign", SecurityEventType.SQL_INJECTION_ATTEMPT, 3, Severity.CRITICAL, "SQL injection attempts"),
]


class AttackPatternDetector:
    """Applies PATTERN_RULES to a window of events."""

    def __init__(self, window: timedelta = DETECTION_WINDOW) -> None:
        self._window = window

    # PUBLIC_INTERFACE
    def detect(self, events: Iterable[SecurityEvent], now: datetime) -> List[AttackPattern]:
        """
        Return one AttackPattern per rule that has at least one offending IP.

        Only events with timestamp >= now - window are considered.
        """
        cutoff = now - self._window
        recent = [e for e in events if e.timestamp >= cutoff]

        patterns: List[AttackPattern] = []
        for rule in PATTERN_RULES:
            per_ip = Counter(e.client_ip for e in recent if e.type == rule.event_type)
            offenders = {ip for ip, count in per_ip.items() if count > rule.threshold}
            if not offenders:
                continue
            worst = max(per_ip[ip] for ip in offenders)
            patterns.append(
                AttackPattern(
                    pattern=rule.pattern,
                    severity=rule.severity,
                    description=(
                        f"{len(offenders)} IP(s) exceeded {rule.threshold} {rule.label} "
                        f"in the last hour (max {worst} from a single IP)."
                    ),
                    affected_ips=offenders,
                )
            )
        return patterns
