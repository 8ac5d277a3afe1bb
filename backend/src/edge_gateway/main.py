from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from .config import GatewaySettings, get_settings
from .errors import GatewayError
from .gateway import Gateway
from .logging_config import setup_logging
from .middleware import GatewayMiddleware, build_gateway
from .models import SecurityEvent, SecurityEventType, Severity
from .schemas import (
    AttackPatternResponse,
    HealthResponse,
    OffenderResponse,
    PurgeRequest,
    PurgeResponse,
    RateLimitLookupResponse,
    SecurityEventResponse,
    SecurityStatsResponse,
)

openapi_tags = [
    {"name": "health", "description": "Service health and info."},
    {"name": "security", "description": "Security events, statistics and attack patterns."},
    {"name": "rate_limits", "description": "Rate limiting state."},
]

# Operator endpoints need the operator bearer token; they are screened but do not
# consume rate-limit budget.
OPERATOR_PATHS = ("/security", "/rate-limits")


def _event_response(e: SecurityEvent) -> SecurityEventResponse:
    return SecurityEventResponse(
        timestamp=e.timestamp,
        type=e.type,
        severity=e.severity,
        client_ip=e.client_ip,
        user_agent=e.user_agent,
        endpoint=e.endpoint,
        method=e.method,
        reason=e.reason,
    )


def _gateway(request: Request) -> Gateway:
    return request.app.state.gateway


# PUBLIC_INTERFACE
def create_app(settings: Optional[GatewaySettings] = None, gateway: Optional[Gateway] = None) -> FastAPI:
    """Build the FastAPI app with the gateway middleware and operator endpoints."""
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, production=settings.is_production, log_file=settings.LOG_FILE)
    gateway = gateway or build_gateway(settings, rate_limit_exempt=OPERATOR_PATHS, operator_prefixes=OPERATOR_PATHS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        gateway.monitor.close()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Request-admission gateway: rate limiting, session and CSRF checks, security monitoring.",
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.settings = settings
    app.add_middleware(GatewayMiddleware, gateway=gateway)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, **exc.to_dict()})

    # PUBLIC_INTERFACE
    @app.get("/", response_model=HealthResponse, summary="Health check", tags=["health"])
    def health_check():
        """
        Health Check
        Returns a simple message indicating the service is running.
        """
        return HealthResponse(
            message="Healthy",
            storage_backend=settings.STORAGE_BACKEND,
            fail_open=gateway.rate_limiter.fail_open,
        )

    # PUBLIC_INTERFACE
    @app.get(
        "/security/events",
        response_model=List[SecurityEventResponse],
        summary="List security events",
        description="Recent security events, newest first, optionally filtered by type or severity.",
        tags=["security"],
    )
    def list_security_events(
        request: Request,
        type: Optional[SecurityEventType] = Query(default=None, description="Filter by event type."),
        severity: Optional[Severity] = Query(default=None, description="Filter by severity."),
        limit: int = Query(default=50, ge=1, le=1000, description="Maximum number of events."),
    ):
        """
        List security events.

        Parameters:
        - type: optional event type filter (takes precedence over severity)
        - severity: optional severity filter
        - limit: maximum number of events returned
        """
        monitor = _gateway(request).monitor
        if type is not None:
            events = monitor.get_events_by_type(type, limit)
        elif severity is not None:
            events = monitor.get_events_by_severity(severity, limit)
        else:
            events = monitor.get_recent_events(limit)
        return [_event_response(e) for e in events]

    # PUBLIC_INTERFACE
    @app.get(
        "/security/stats",
        response_model=SecurityStatsResponse,
        summary="Security statistics",
        description="Counts by type and severity, top offending IPs and recent activity.",
        tags=["security"],
    )
    def security_stats(request: Request):
        """Aggregate statistics over the event log."""
        stats = _gateway(request).monitor.get_security_stats()
        return SecurityStatsResponse(
            total_events=stats["total_events"],
            events_by_type=stats["events_by_type"],
            events_by_severity=stats["events_by_severity"],
            top_offenders=[OffenderResponse(ip=ip, count=count) for ip, count in stats["top_offenders"]],
            recent_activity=[_event_response(e) for e in stats["recent_activity"]],
        )

    # PUBLIC_INTERFACE
    @app.get(
        "/security/patterns",
        response_model=List[AttackPatternResponse],
        summary="Detected attack patterns",
        description="Campaigns detected over the last hour of events.",
        tags=["security"],
    )
    def attack_patterns(request: Request):
        """Run pattern detection over the last hour."""
        return [AttackPatternResponse(**p.to_dict()) for p in _gateway(request).monitor.detect_attack_patterns()]

    # PUBLIC_INTERFACE
    @app.post(
        "/security/events/purge",
        response_model=PurgeResponse,
        summary="Purge old events",
        description="Remove events older than the given number of hours.",
        tags=["security"],
    )
    def purge_events(request: Request, payload: Optional[PurgeRequest] = None):
        """Remove aged events; defaults to the configured retention."""
        monitor = _gateway(request).monitor
        hours = payload.older_than_hours if payload is not None else settings.EVENT_RETENTION_HOURS
        removed = monitor.clear_old_events(hours)
        return PurgeResponse(removed=removed, remaining=len(monitor))

    # PUBLIC_INTERFACE
    @app.get("/rate-limits/status", summary="Rate limit status", tags=["rate_limits"])
    def rate_limit_status(request: Request):
        """Return tracked windows grouped by endpoint class."""
        return _gateway(request).rate_limiter.status()

    # PUBLIC_INTERFACE
    @app.get(
        "/rate-limits/lookup",
        response_model=RateLimitLookupResponse,
        summary="Look up one caller's window",
        description="The rule and remaining budget a request would hit, without consuming it.",
        tags=["rate_limits"],
    )
    def rate_limit_lookup(
        request: Request,
        identifier: str = Query(..., min_length=1, description="Subject id or client IP."),
        path: str = Query(..., min_length=1, description="Request path to classify."),
        method: str = Query(default="GET", description="HTTP method to classify."),
    ):
        """
        Read-only view of a single window.

        A store outage surfaces as 503 through the GatewayError handler.
        """
        rule, result = _gateway(request).rate_limiter.peek(path, method, identifier)
        return RateLimitLookupResponse(
            rule=rule.name,
            identifier=identifier,
            **rule.policy.to_dict(),
            **result.to_dict(),
        )

    return app


app = create_app()
