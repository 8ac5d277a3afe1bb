"""
Starlette middleware wrapping the Gateway, plus the factory that wires it from settings.
"""

from __future__ import annotations

from typing import Optional, Sequence

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from .clock import ClockSource, SystemClock
from .config import GatewaySettings
from .gateway import Gateway, RouteTable
from .headers import security_headers
from .logging_config import generate_request_id, set_client_ip, set_request_id
from .models import GatewayRequest, GatewayVerdict
from .monitor import SecurityMonitor
from .rate_limit import RateLimiter
from .session import SessionValidator
from .storage import (
    EventSink,
    InMemoryRateLimitStore,
    LoggingEventSink,
    RateLimitStore,
    RedisRateLimitStore,
)
from .threat_intel import ThreatScreen


def to_gateway_request(request: HTTPConnection) -> GatewayRequest:
    """Accepts a Request or a WebSocket; an upgrade is evaluated as a GET."""
    return GatewayRequest(
        method=getattr(request, "method", "GET"),
        path=request.url.path,
        headers=dict(request.headers),
        query=request.url.query,
        peer_ip=request.client.host if request.client else None,
    )


def denial_response(verdict: GatewayVerdict) -> Response:
    if verdict.status_code == 302:
        return RedirectResponse(url=verdict.headers["Location"], status_code=302)
    return JSONResponse(status_code=verdict.status_code, content=verdict.body(), headers=verdict.headers)


class GatewayMiddleware(BaseHTTPMiddleware):
    """
    Runs every request through the Gateway before the route handler.

    BaseHTTPMiddleware only sees `http` scopes. A WebSocket upgrade on /ws is not
    evaluated here; the socket endpoint evaluates to_gateway_request(websocket), which
    answers 401 (never a login redirect) for a missing session.

    PUBLIC_INTERFACE
    """

    def __init__(self, app, gateway: Gateway) -> None:
        """
        Initialize the middleware with a gateway instance.
        """
        super().__init__(app)
        self._gateway = gateway

    async def dispatch(self, request: Request, call_next) -> Response:
        """
        Evaluate the request; deny with the verdict's status, or forward and
        decorate the response with rate-limit and security headers.
        """
        set_request_id(request.headers.get("x-request-id") or generate_request_id())
        gw_request = to_gateway_request(request)
        # store access can block briefly, keep it off the event loop
        verdict = await run_in_threadpool(self._gateway.evaluate, gw_request)
        set_client_ip(verdict.client_ip)

        if not verdict.admitted:
            response = denial_response(verdict)
        else:
            request.state.identifier = verdict.identifier
            request.state.subject_id = verdict.subject_id
            response = await call_next(request)
            for name, value in verdict.headers.items():
                response.headers[name] = value

        for name, value in security_headers(api=self._gateway.routes.is_api_style(gw_request.path)).items():
            response.headers.setdefault(name, value)
        return response


# PUBLIC_INTERFACE
def build_gateway(
    settings: GatewaySettings,
    clock: Optional[ClockSource] = None,
    store: Optional[RateLimitStore] = None,
    sink: Optional[EventSink] = None,
    rate_limit_exempt: Sequence[str] = (),
    operator_prefixes: Sequence[str] = (),
) -> Gateway:
    """Factory for a Gateway wired from settings; used from main.py and tests."""
    clock = clock or SystemClock()
    if store is None:
        if settings.STORAGE_BACKEND == "redis":
            store = RedisRateLimitStore.from_url(settings.REDIS_URL, timeout_ms=settings.STORAGE_TIMEOUT_MS)
        else:
            store = InMemoryRateLimitStore()

    limiter = RateLimiter(store=store, table=settings.policy_table(), clock=clock, fail_open=settings.FAIL_OPEN)
    monitor = SecurityMonitor(
        max_events=settings.MAX_EVENTS,
        sink=sink if sink is not None else LoggingEventSink(),
        clock=clock,
    )
    screen = None
    if settings.SCREENING_ENABLED:
        screen = ThreatScreen.build(
            settings.blocked_ips,
            allowed_countries=settings.allowed_countries,
            max_request_bytes=settings.MAX_REQUEST_BYTES,
        )

    return Gateway(
        rate_limiter=limiter,
        sessions=SessionValidator(settings.SECRET_KEY, clock=clock),
        monitor=monitor,
        screen=screen,
        routes=RouteTable(settings.protected_prefixes, settings.public_prefixes, tuple(operator_prefixes)),
        login_path=settings.LOGIN_PATH or None,
        rate_limit_exempt=rate_limit_exempt,
        trusted_proxies=settings.trusted_proxies,
        operator_token=settings.OPERATOR_TOKEN,
    )
