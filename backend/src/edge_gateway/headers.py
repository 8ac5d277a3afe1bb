"""
Security response headers.

Page responses get the full Content-Security-Policy the portal front-end needs;
API responses get `default-src 'none'` since they never render markup.
"""

from __future__ import annotations

from typing import Dict

PAGE_CSP = " ".join(
    [
        "default-src 'self';",
        "script-src 'self';",
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com;",
        "img-src 'self' data: https:;",
        "font-src 'self' https://fonts.gstatic.com;",
        "connect-src 'self' https: wss:;",
        "frame-src 'none';",
        "frame-ancestors 'none';",
        "form-action 'self';",
        "base-uri 'self';",
        "manifest-src 'self';",
        "worker-src 'self' blob:;",
        "object-src 'none';",
        "media-src 'self';",
    ]
)

API_CSP = "default-src 'none'; frame-ancestors 'none'"

_COMMON: Dict[str, str] = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": (
        "camera=(), microphone=(), geolocation=(), payment=(), usb=(), "
        "magnetometer=(), gyroscope=(), accelerometer=()"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Cross-Origin-Embedder-Policy": "require-corp",
    "X-XSS-Protection": "1; mode=block",
}


# PUBLIC_INTERFACE
def security_headers(api: bool) -> Dict[str, str]:
    """Headers for every response; `api` selects the stricter CSP."""
    headers = dict(_COMMON)
    headers["Content-Security-Policy"] = API_CSP if api else PAGE_CSP
    return headers


def is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")
