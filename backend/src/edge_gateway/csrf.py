"""
Double-submit cookie CSRF protection.

The token issued at login lives in the `csrf_token` cookie and must be echoed in
the `X-CSRF-Token` header on every state-changing request.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Optional

from .session import parse_cookies

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})


# PUBLIC_INTERFACE
def generate_csrf_token() -> str:
    """32 random bytes, hex-encoded."""
    return secrets.token_hex(32)


class CSRFGuard:
    # PUBLIC_INTERFACE
    @staticmethod
    def requires_check(method: str) -> bool:
        """Only state-changing methods are checked; GET/HEAD/OPTIONS bypass."""
        return (method or "").upper() in STATE_CHANGING_METHODS

    # PUBLIC_INTERFACE
    def validate(self, cookie_header: Optional[str], csrf_header_value: Optional[str]) -> bool:
        """Both tokens present and equal, compared in constant time."""
        cookie_token = parse_cookies(cookie_header).get(CSRF_COOKIE)
        if not cookie_token or not csrf_header_value:
            return False
        return hmac.compare_digest(cookie_token.encode("utf-8"), csrf_header_value.encode("utf-8"))
