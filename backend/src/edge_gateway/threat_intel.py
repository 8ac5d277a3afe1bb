"""
Request screening (static heuristics).

Runs before the CSRF/session/rate-limit stages and rejects requests that are
obviously hostile:
- Source IP on the configured block list
- Origin country outside the configured allow-list (when one is set)
- Declared body larger than the configured maximum
- XSS signatures in the path or query string (script tags, event handlers, js: URLs)
- SQL injection signatures in the query string
- Scanner/automation User-Agents on authentication endpoints

No network calls; patterns are matched against the URL-decoded request line only.
Bodies are not inspected here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional
from urllib.parse import unquote_plus

from .errors import (
    BlockedRequest,
    CountryNotAllowed,
    RequestTooLarge,
    SQLInjectionAttempt,
    SuspiciousActivity,
    XSSAttempt,
)
from .models import GatewayRequest

DEFAULT_MAX_REQUEST_BYTES = 10 * 1024 * 1024  # 10 MiB

_XSS_PATTERNS = [
    re.compile(r"(?i)<\s*script\b"),
    re.compile(r"(?i)<\s*/\s*script\s*>"),
    re.compile(r"(?i)\b(?:javascript|vbscript)\s*:"),
    re.compile(r"(?i)data:(?:text/html|application/javascript)"),
    re.compile(r"(?i)[\s\"'/]on[a-z]+\s*="),
    re.compile(r"(?i)<\s*(?:iframe|object|embed|link|meta|form|svg)\b"),
    re.compile(r"(?i)expression\s*\("),
    re.compile(r"(?i)(?:%3c|&#x3c;|&#60;)\s*script"),
]

_SQLI_PATTERNS = [
    re.compile(r"(?i)\bunion\b(?:\s+all)?\s+select\b"),
    re.compile(r"(?i)['\"]\s*(?:or|and)\s+['\"]?\w+['\"]?\s*=\s*['\"]?\w+"),
    re.compile(r"(?i)\bor\s+1\s*=\s*1\b"),
    re.compile(r"(?i);\s*(?:drop|delete|truncate|alter|insert|update|exec)\b"),
    re.compile(r"(?i)['\"]\s*(?:--|#|/\*)"),
    re.compile(r"(?i)\b(?:sleep|benchmark|pg_sleep)\s*\("),
    re.compile(r"(?i)\binformation_schema\b"),
]

_SCANNER_UA = re.compile(
    r"(?i)(bot|crawler|scraper|spider|curl|wget|python|java/|go-http|libwww|httpclient|okhttp|nikto|sqlmap)"
)


def _decode(text: str) -> str:
    # decode twice to catch double-encoded payloads
    once = unquote_plus(text or "")
    return unquote_plus(once)


# PUBLIC_INTERFACE
def detect_xss(text: str) -> bool:
    """True when the (decoded) text contains a cross-site scripting signature."""
    blob = _decode(text)
    return any(p.search(blob) for p in _XSS_PATTERNS)


# PUBLIC_INTERFACE
def detect_sql_injection(text: str) -> bool:
    """True when the (decoded) text contains a SQL injection signature."""
    blob = _decode(text)
    return any(p.search(blob) for p in _SQLI_PATTERNS)


# PUBLIC_INTERFACE
def is_scanner_user_agent(user_agent: Optional[str]) -> bool:
    return bool(user_agent) and bool(_SCANNER_UA.search(user_agent))


@dataclass
class ThreatScreen:
    """
    Pre-screen stage. `screen` returns None for clean requests and raises a
    GatewayDenial subclass for the first matching signal.
    """
    blocked_ips: FrozenSet[str] = field(default_factory=frozenset)
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES
    auth_prefix: str = "/api/auth/"
    # empty means every origin is allowed
    allowed_countries: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls, blocked_ips: Iterable[str] = (), allowed_countries: Iterable[str] = (), **kwargs
    ) -> "ThreatScreen":
        return cls(
            blocked_ips=frozenset(ip.strip() for ip in blocked_ips if ip and ip.strip()),
            allowed_countries=frozenset(c.strip().upper() for c in allowed_countries if c and c.strip()),
            **kwargs,
        )

    # PUBLIC_INTERFACE
    def screen(self, request: GatewayRequest, client_ip: str, country: Optional[str] = None) -> None:
        """
        Raise on the first hostile signal; order is IP, country, size, XSS, SQLi,
        user agent. An unknown country fails an active allow-list.
        """
        if client_ip in self.blocked_ips:
            raise BlockedRequest("ip on block list")

        if self.allowed_countries and (country or "").upper() not in self.allowed_countries:
            raise CountryNotAllowed(f"country {country or 'unknown'} not allowed")

        length = request.header("content-length")
        if length:
            try:
                declared = int(length)
            except ValueError:
                raise RequestTooLarge("unparseable content-length")
            if declared > self.max_request_bytes:
                raise RequestTooLarge(f"content-length {declared} > {self.max_request_bytes}")

        if detect_xss(request.path) or detect_xss(request.query):
            raise XSSAttempt("xss signature in request line")

        if detect_sql_injection(request.query):
            raise SQLInjectionAttempt("sql injection signature in query")

        if request.path.startswith(self.auth_prefix) and is_scanner_user_agent(request.header("user-agent")):
            raise SuspiciousActivity("automation user agent on auth endpoint")
