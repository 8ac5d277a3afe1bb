"""
Request-admission pipeline.

Every inbound request runs through a fixed sequence of stages:

    START -> SCREEN -> CSRF_CHECK (state-changing methods)
          -> AUTH_CHECK (session on protected routes, operator token on operator routes)
          -> RATE_LIMIT_CHECK -> ADMITTED

Any stage may raise a GatewayDenial; the first one short-circuits the pipeline,
is recorded as exactly one SecurityEvent and becomes a DENIED verdict. Business
handlers only ever see ADMITTED verdicts.

Forwarded client headers (CF-Connecting-IP, X-Forwarded-For, CF-IPCountry) are
only honoured when the socket peer is a configured trusted proxy.
"""

from __future__ import annotations

import hmac
import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .csrf import CSRF_HEADER, CSRFGuard
from .errors import (
    AuthenticationFailure,
    CSRFViolation,
    GatewayDenial,
    RateLimitExceeded,
    StorageDenial,
    StorageUnavailable,
)
from .headers import is_api_path
from .models import GatewayRequest, GatewayStage, GatewayVerdict, RateLimitResult, SessionStatus
from .monitor import SecurityMonitor
from .rate_limit import RateLimiter, rate_limit_headers
from .session import SessionValidator
from .threat_intel import ThreatScreen

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
WEBSOCKET_PATH = "/ws"

DEFAULT_PROTECTED_PREFIXES: Tuple[str, ...] = ("/api/", WEBSOCKET_PATH)
DEFAULT_PUBLIC_PREFIXES: Tuple[str, ...] = ("/api/auth/", "/api/public/", "/api/health")

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


@dataclass(frozen=True)
class RouteTable:
    """
    Which paths need a session, and which are operator-only.
    Public prefixes win over protected ones.
    """
    protected_prefixes: Tuple[str, ...] = DEFAULT_PROTECTED_PREFIXES
    public_prefixes: Tuple[str, ...] = DEFAULT_PUBLIC_PREFIXES
    operator_prefixes: Tuple[str, ...] = ()

    def is_protected(self, path: str) -> bool:
        if any(path.startswith(p) for p in self.public_prefixes):
            return False
        return any(path.startswith(p) for p in self.protected_prefixes)

    def is_operator(self, path: str) -> bool:
        return any(_under(path, p) for p in self.operator_prefixes)

    def is_api_style(self, path: str) -> bool:
        """JSON-only routes: denials get a status code, never a login redirect."""
        return is_api_path(path) or _under(path, WEBSOCKET_PATH) or self.is_operator(path)


# PUBLIC_INTERFACE
def parse_networks(entries: Iterable[str]) -> Tuple[Network, ...]:
    """Addresses or CIDR blocks; raises ValueError on an unparseable entry."""
    return tuple(ipaddress.ip_network(e.strip(), strict=False) for e in entries if e and e.strip())


def _is_trusted(peer: str, trusted_proxies: Sequence[Network]) -> bool:
    if not peer or not trusted_proxies:
        return False
    try:
        address = ipaddress.ip_address(peer)
    except ValueError:
        return False
    return any(address in network for network in trusted_proxies)


# PUBLIC_INTERFACE
def resolve_client_ip(request: GatewayRequest, trusted_proxies: Sequence[Network] = ()) -> str:
    """
    The socket peer, unless it is a trusted proxy: then CF-Connecting-IP, then
    the first X-Forwarded-For hop.
    """
    peer = (request.peer_ip or "").strip()
    if _is_trusted(peer, trusted_proxies):
        cf_ip = (request.header("cf-connecting-ip") or "").strip()
        if cf_ip:
            return cf_ip
        xff = request.header("x-forwarded-for")
        if xff:
            first = xff.split(",")[0].strip()
            if first:
                return first
    return peer or UNKNOWN


# PUBLIC_INTERFACE
def resolve_country(request: GatewayRequest, trusted_proxies: Sequence[Network] = ()) -> Optional[str]:
    """ISO country code from CF-IPCountry, only when set by a trusted proxy."""
    if not _is_trusted((request.peer_ip or "").strip(), trusted_proxies):
        return None
    return (request.header("cf-ipcountry") or "").strip().upper() or None


class Gateway:
    """
    Orchestrates screening, CSRF, session and rate-limit checks.

    The SecurityMonitor is injected and owned here; nothing else writes to it.
    Operator routes require `Authorization: Bearer <operator_token>`; with no
    token configured they are closed to everyone.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        sessions: SessionValidator,
        monitor: SecurityMonitor,
        csrf: Optional[CSRFGuard] = None,
        screen: Optional[ThreatScreen] = None,
        routes: Optional[RouteTable] = None,
        login_path: Optional[str] = "/login",
        rate_limit_exempt: Sequence[str] = (),
        trusted_proxies: Iterable[str] = (),
        operator_token: Optional[str] = None,
    ) -> None:
        self._limiter = rate_limiter
        self._sessions = sessions
        self.monitor = monitor
        self._csrf = csrf or CSRFGuard()
        self._screen = screen
        self._routes = routes or RouteTable()
        self._login_path = login_path
        self._exempt = tuple(rate_limit_exempt)
        self._trusted_proxies = parse_networks(trusted_proxies)
        self._operator_token = operator_token or None

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def routes(self) -> RouteTable:
        return self._routes

    def _rate_limit_exempt(self, path: str) -> bool:
        return any(_under(path, p) for p in self._exempt)

    # PUBLIC_INTERFACE
    def evaluate(self, request: GatewayRequest) -> GatewayVerdict:
        """Run the pipeline for one request and return its verdict."""
        method = (request.method or "").upper()
        path = request.path or "/"
        client_ip = resolve_client_ip(request, self._trusted_proxies)
        identifier = client_ip
        subject_id: Optional[str] = None
        result: Optional[RateLimitResult] = None
        trail: List[GatewayStage] = [GatewayStage.START]

        try:
            if self._screen is not None:
                trail.append(GatewayStage.SCREEN)
                self._screen.screen(request, client_ip, resolve_country(request, self._trusted_proxies))

            cookie_header = request.header("cookie")

            if CSRFGuard.requires_check(method):
                trail.append(GatewayStage.CSRF_CHECK)
                if not self._csrf.validate(cookie_header, request.header(CSRF_HEADER)):
                    raise CSRFViolation("csrf token missing or mismatched")

            trail.append(GatewayStage.AUTH_CHECK)
            if self._routes.is_operator(path):
                self._check_operator(request.header("authorization"))
            session = self._resolve_session(path, cookie_header)
            subject_id = session.subject_id
            identifier = subject_id or client_ip or UNKNOWN

            if not self._rate_limit_exempt(path):
                trail.append(GatewayStage.RATE_LIMIT_CHECK)
                try:
                    result = self._limiter.check(path, method, identifier)
                except StorageUnavailable:
                    raise StorageDenial("rate limit store unavailable, failing closed")
                if not result.success:
                    raise RateLimitExceeded(result, f"limit {result.limit} reached")
        except GatewayDenial as denial:
            trail.append(GatewayStage.DENIED)
            return self._deny(request, denial, client_ip, identifier, subject_id, trail)

        trail.append(GatewayStage.ADMITTED)
        return GatewayVerdict(
            admitted=True,
            stage=GatewayStage.ADMITTED,
            identifier=identifier,
            client_ip=client_ip,
            subject_id=subject_id,
            rate_limit=result,
            headers=rate_limit_headers(result) if result is not None else {},
            trail=trail,
        )

    def _check_operator(self, authorization: Optional[str]) -> None:
        if self._operator_token is None:
            raise AuthenticationFailure("operator access disabled")
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(
            token.strip().encode("utf-8"), self._operator_token.encode("utf-8")
        ):
            raise AuthenticationFailure("operator token missing or invalid")

    def _resolve_session(self, path: str, cookie_header: Optional[str]) -> SessionStatus:
        """
        Protected routes require a valid session. Public routes still pick up the
        subject when one is present, but a bad session there is not a failure.
        """
        session = self._sessions.validate(cookie_header)
        if self._routes.is_protected(path) and not session.authenticated:
            raise AuthenticationFailure(session.reason)
        return session

    def _deny(
        self,
        request: GatewayRequest,
        denial: GatewayDenial,
        client_ip: str,
        identifier: str,
        subject_id: Optional[str],
        trail: List[GatewayStage],
    ) -> GatewayVerdict:
        path = request.path or "/"
        self.monitor.record(
            type=denial.event_type,
            severity=denial.severity,
            client_ip=client_ip,
            user_agent=request.header("user-agent"),
            endpoint=path,
            method=(request.method or "").upper(),
            reason=denial.detail,
        )

        status_code = denial.status_code
        headers = {}
        result = None
        if isinstance(denial, RateLimitExceeded):
            result = denial.result
            headers.update(rate_limit_headers(result))
        elif (
            isinstance(denial, AuthenticationFailure)
            and self._login_path
            and not self._routes.is_api_style(path)
        ):
            status_code = 302
            headers["Location"] = self._login_path

        return GatewayVerdict(
            admitted=False,
            stage=GatewayStage.DENIED,
            identifier=identifier,
            client_ip=client_ip,
            subject_id=subject_id,
            status_code=status_code,
            reason=denial.reason,
            message=denial.message,
            rate_limit=result,
            headers=headers,
            trail=trail,
        )
