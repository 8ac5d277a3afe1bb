"""
Session token validation.

The session token is a three-part JWT (header.payload.signature) stored in an
HttpOnly cookie. This module checks structure and expiry; signature checking is
delegated to a TokenVerifier so the gateway never handles signing keys directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http.cookies import CookieError, SimpleCookie
from typing import Any, Dict, Optional, Protocol

from jose import JWTError, jwt

from .clock import ClockSource, SystemClock
from .models import SessionStatus

logger = logging.getLogger(__name__)

SESSION_COOKIE = "__Host-auth_session"
SESSION_COOKIE_FALLBACK = "auth_session"
SUBJECT_CLAIMS = ("sub", "user_id", "userId", "id")


# PUBLIC_INTERFACE
def parse_cookies(header: Optional[str]) -> Dict[str, str]:
    """Parse a Cookie header into a name -> value mapping. Malformed pairs are skipped."""
    if not header:
        return {}
    cookies: Dict[str, str] = {}
    try:
        jar = SimpleCookie()
        jar.load(header)
        cookies.update({name: morsel.value for name, morsel in jar.items()})
    except CookieError:
        pass
    # SimpleCookie stops at the first bad pair; pick up the rest by hand
    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name and name not in cookies:
            cookies[name] = value.strip().strip('"')
    return cookies


def is_well_formed(token: Optional[str]) -> bool:
    """Exactly three non-empty dot-separated segments."""
    if not token:
        return False
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


@dataclass
class VerificationResult:
    valid: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None


class TokenVerifier(Protocol):
    def verify(self, token: str, secret: str) -> VerificationResult:
        ...


class JoseTokenSigner:
    """HS256 JWT signer/verifier backed by python-jose."""

    def __init__(self, algorithm: str = "HS256") -> None:
        self._algorithm = algorithm

    # PUBLIC_INTERFACE
    def sign(self, payload: Dict[str, Any], secret: str) -> str:
        """Sign a claims dict. Datetime `exp` values are converted by jose."""
        return jwt.encode(dict(payload), secret, algorithm=self._algorithm)

    # PUBLIC_INTERFACE
    def verify(self, token: str, secret: str) -> VerificationResult:
        """
        Check the signature only. Expiry is reported, not enforced, so that the
        caller can compare it against its own clock.
        """
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError:
            return VerificationResult(valid=False)
        expires_at = None
        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        return VerificationResult(valid=True, payload=claims, expires_at=expires_at)


class SessionValidator:
    """
    Resolves the caller's session from the Cookie header.

    Never raises for bad input; every negative outcome is a SessionStatus with a
    reason code. The gateway decides whether a failure is a denial.
    """

    def __init__(
        self,
        secret: str,
        verifier: Optional[TokenVerifier] = None,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self._secret = secret
        self._verifier = verifier or JoseTokenSigner()
        self._clock = clock or SystemClock()

    @staticmethod
    def extract_token(cookies: Dict[str, str]) -> Optional[str]:
        return cookies.get(SESSION_COOKIE) or cookies.get(SESSION_COOKIE_FALLBACK)

    # PUBLIC_INTERFACE
    def validate(self, cookie_header: Optional[str]) -> SessionStatus:
        """Return whether the request carries a valid, unexpired session, and for whom."""
        if not cookie_header:
            return SessionStatus(authenticated=False, reason="missing_cookie")
        token = self.extract_token(parse_cookies(cookie_header))
        if token is None:
            return SessionStatus(authenticated=False, reason="missing_session")
        if not is_well_formed(token):
            return SessionStatus(authenticated=False, reason="malformed_token")

        result = self._verifier.verify(token, self._secret)
        if not result.valid:
            return SessionStatus(authenticated=False, reason="invalid_signature")
        if result.expires_at is None:
            return SessionStatus(authenticated=False, reason="missing_expiry")
        if result.expires_at <= self._clock.now():
            return SessionStatus(authenticated=False, reason="expired")

        subject = next((result.payload[c] for c in SUBJECT_CLAIMS if result.payload.get(c)), None)
        if subject is None:
            return SessionStatus(authenticated=False, reason="missing_subject")
        return SessionStatus(authenticated=True, subject_id=str(subject))
