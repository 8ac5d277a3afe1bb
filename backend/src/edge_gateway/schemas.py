"""
Pydantic schemas for the edge gateway operator API.

These schemas define the public API interfaces for responses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .models import SecurityEventType, Severity


# PUBLIC_INTERFACE
class HealthResponse(BaseModel):
    """Health check response."""
    message: str = Field(..., description="Service health message.")
    storage_backend: str = Field(..., description="Rate-limit storage backend in use.")
    fail_open: bool = Field(..., description="Whether storage errors admit requests.")


# PUBLIC_INTERFACE
class SecurityEventResponse(BaseModel):
    """A recorded security event."""
    timestamp: datetime = Field(..., description="When the event was recorded (UTC).")
    type: SecurityEventType = Field(..., description="Event type.")
    severity: Severity = Field(..., description="Event severity.")
    client_ip: str = Field(..., description="Source IP address.")
    user_agent: Optional[str] = Field(None, description="Client User-Agent.")
    endpoint: Optional[str] = Field(None, description="Request path.")
    method: Optional[str] = Field(None, description="HTTP method.")
    reason: Optional[str] = Field(None, description="Why the request was denied.")


# PUBLIC_INTERFACE
class OffenderResponse(BaseModel):
    ip: str = Field(..., description="Source IP address.")
    count: int = Field(..., description="Number of events from this IP.")


# PUBLIC_INTERFACE
class SecurityStatsResponse(BaseModel):
    """Aggregated counters over the event log."""
    total_events: int = Field(..., description="Events currently held in the log.")
    events_by_type: Dict[str, int] = Field(default_factory=dict, description="Counts per event type.")
    events_by_severity: Dict[str, int] = Field(default_factory=dict, description="Counts per severity.")
    top_offenders: List[OffenderResponse] = Field(default_factory=list, description="Top 10 IPs by event count.")
    recent_activity: List[SecurityEventResponse] = Field(default_factory=list, description="10 most recent events.")


# PUBLIC_INTERFACE
class AttackPatternResponse(BaseModel):
    """A detected attack campaign."""
    pattern: str = Field(..., description="Pattern tag.")
    severity: Severity = Field(..., description="Pattern severity.")
    description: str = Field(..., description="Human readable summary.")
    affected_ips: List[str] = Field(default_factory=list, description="IPs above the threshold.")


# PUBLIC_INTERFACE
class PurgeRequest(BaseModel):
    """Remove events older than the given horizon."""
    older_than_hours: float = Field(24, gt=0, description="Age horizon in hours.")


# PUBLIC_INTERFACE
class PurgeResponse(BaseModel):
    removed: int = Field(..., description="Number of events removed.")
    remaining: int = Field(..., description="Events left in the log.")


# PUBLIC_INTERFACE
class RateLimitLookupResponse(BaseModel):
    """Window state for one caller under the rule a request would select."""
    rule: str = Field(..., description="Selected rule name.")
    identifier: str = Field(..., description="Subject id or client IP.")
    window_ms: int = Field(..., description="Window length in milliseconds.")
    max_requests: int = Field(..., description="Requests allowed per window.")
    success: bool = Field(..., description="Whether the next request would be admitted.")
    remaining: int = Field(..., description="Requests left in the window.")
    limit: int = Field(..., description="Same as max_requests.")
    reset_at: str = Field(..., description="When the oldest counted request leaves the window (ISO 8601).")
    retry_after: Optional[int] = Field(None, description="Seconds to wait, when the next request would be denied.")
