"""
Domain models for the edge request-admission gateway.

These are internal models representing core entities. They are not Pydantic models and
are intended for use within the gateway logic and storage layers.

Note:
- Public HTTP payloads are provided via Pydantic schemas in schemas.py.
- Timestamps on the rate-limit path are integer epoch milliseconds.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, List, Mapping, Optional, Set

from .clock import ms_to_iso


class Severity(str, Enum):
    """Severity levels for security events."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventType(str, Enum):
    """Kinds of security events the gateway records."""
    AUTH_FAILURE = "auth_failure"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    XSS_ATTEMPT = "xss_attempt"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    CSRF_FAILURE = "csrf_failure"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    BLOCKED_REQUEST = "blocked_request"


class GatewayStage(str, Enum):
    START = "start"
    SCREEN = "screen"
    CSRF_CHECK = "csrf_check"
    AUTH_CHECK = "auth_check"
    RATE_LIMIT_CHECK = "rate_limit_check"
    ADMITTED = "admitted"
    DENIED = "denied"


class DenialReason(str, Enum):
    """Machine-readable reason codes returned to clients."""
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    AUTH_FAILURE = "auth_failure"
    CSRF_FAILURE = "csrf_failure"
    BLOCKED_IP = "blocked_ip"
    COUNTRY_NOT_ALLOWED = "country_not_allowed"
    REQUEST_TOO_LARGE = "request_too_large"
    XSS_ATTEMPT = "xss_attempt"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    STORAGE_UNAVAILABLE = "storage_unavailable"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable window size and request budget."""
    window_ms: int
    max_requests: int

    def __post_init__(self) -> None:
        # imported lazily: errors.py depends on this module
        from .errors import MalformedPolicy

        for name in ("window_ms", "max_requests"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise MalformedPolicy(f"{name} must be a positive integer, got {value!r}")

    def to_dict(self) -> Dict[str, int]:
        return {"window_ms": self.window_ms, "max_requests": self.max_requests}


@dataclass(frozen=True)
class PolicyRule:
    """
    One row of the ordered policy table.

    A rule matches when the path equals `exact` or starts with `prefix` and the
    method filter allows it. `methods` restricts to listed methods, `exclude_methods`
    removes methods. A rule with neither `exact` nor `prefix` matches every path.
    """
    name: str
    policy: RateLimitPolicy
    exact: Optional[str] = None
    prefix: Optional[str] = None
    methods: Optional[FrozenSet[str]] = None
    exclude_methods: FrozenSet[str] = frozenset()

    def matches(self, path: str, method: str) -> bool:
        m = (method or "").upper()
        if self.exact is not None and path != self.exact:
            return False
        if self.prefix is not None and not path.startswith(self.prefix):
            return False
        if self.methods is not None and m not in self.methods:
            return False
        return m not in self.exclude_methods


@dataclass
class RateLimitWindow:
    """Per-identifier arrival timestamps, oldest first."""
    identifier: str
    window_ms: int
    timestamps: Deque[int] = field(default_factory=deque)

    def newest(self) -> Optional[int]:
        return self.timestamps[-1] if self.timestamps else None


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    remaining: int
    limit: int
    reset_at: int  # epoch ms
    retry_after: Optional[int] = None  # seconds, only set on denial
    # set when the store failed and the limiter admitted anyway
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": ms_to_iso(self.reset_at),
        }
        if self.retry_after is not None:
            out["retry_after"] = self.retry_after
        if self.degraded:
            out["degraded"] = True
        return out


@dataclass(frozen=True)
class SecurityEvent:
    """An immutable record of a failed gateway check."""
    timestamp: datetime
    type: SecurityEventType
    severity: Severity
    client_ip: str
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "severity": self.severity.value,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "endpoint": self.endpoint,
            "method": self.method,
            "reason": self.reason,
        }


@dataclass
class AttackPattern:
    """Derived from the recent event log; never stored."""
    pattern: str
    severity: Severity
    description: str
    affected_ips: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern,
            "severity": self.severity.value,
            "description": self.description,
            "affected_ips": sorted(self.affected_ips),
        }


@dataclass(frozen=True)
class SessionStatus:
    authenticated: bool
    subject_id: Optional[str] = None
    # failure code when not authenticated; never contains token material
    reason: Optional[str] = None


@dataclass
class GatewayRequest:
    """Transport-independent view of an inbound request."""
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: str = ""
    peer_ip: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class GatewayVerdict:
    """Outcome of one pass through the gateway pipeline."""
    admitted: bool
    stage: GatewayStage
    identifier: str
    client_ip: str
    subject_id: Optional[str] = None
    status_code: int = 200
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None
    headers: Dict[str, str] = field(default_factory=dict)
    trail: List[GatewayStage] = field(default_factory=list)

    def body(self) -> Dict[str, Any]:
        """JSON body for a denial response."""
        out: Dict[str, Any] = {
            "success": False,
            "error": self.reason.value if self.reason else None,
            "message": self.message,
        }
        if self.rate_limit is not None and self.rate_limit.retry_after is not None:
            out["retry_after"] = self.rate_limit.retry_after
        return out
