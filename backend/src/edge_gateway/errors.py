"""
Exceptions for the edge gateway.

Denials (rate limit, session, CSRF, screening) are raised by pipeline stages and
caught inside Gateway.evaluate, which turns them into a DENIED verdict. They never
reach business handlers.

MalformedPolicy is a programming/configuration error and is raised at load time.
StorageUnavailable is an infrastructure error; the rate limiter decides whether it
admits or denies based on the fail-open setting.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .models import DenialReason, SecurityEventType, Severity


# Indonesian user-facing messages, keyed by reason code.
MESSAGES: Dict[DenialReason, str] = {
    DenialReason.RATE_LIMIT_EXCEEDED: "Terlalu banyak permintaan. Silakan coba lagi dalam {retry_after} detik.",
    DenialReason.AUTH_FAILURE: "Sesi Anda tidak valid atau telah berakhir. Silakan masuk kembali.",
    DenialReason.CSRF_FAILURE: "Token keamanan (CSRF) tidak valid. Muat ulang halaman lalu coba lagi.",
    DenialReason.BLOCKED_IP: "Akses dari alamat IP Anda diblokir.",
    DenialReason.COUNTRY_NOT_ALLOWED: "Akses dari wilayah Anda tidak diizinkan.",
    DenialReason.REQUEST_TOO_LARGE: "Ukuran permintaan melebihi batas yang diizinkan.",
    DenialReason.XSS_ATTEMPT: "Permintaan mengandung konten yang tidak diizinkan.",
    DenialReason.SQL_INJECTION_ATTEMPT: "Permintaan mengandung konten yang tidak diizinkan.",
    DenialReason.SUSPICIOUS_ACTIVITY: "Permintaan ditolak karena aktivitas mencurigakan.",
    DenialReason.STORAGE_UNAVAILABLE: "Layanan sedang tidak tersedia. Silakan coba lagi nanti.",
}


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "GATEWAY_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class MalformedPolicy(GatewayError, ValueError):
    """Rate-limit policy or rule table is invalid."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, code="MALFORMED_POLICY")


class StorageUnavailable(GatewayError):
    """The rate-limit store could not be read or written in time."""

    status_code = 503

    def __init__(self, message: str = "Rate limit storage unavailable", cause: Optional[BaseException] = None):
        details = {"cause": type(cause).__name__} if cause is not None else {}
        super().__init__(message, code="STORAGE_UNAVAILABLE", details=details)


# ============================================
# Pipeline denials
# ============================================

class GatewayDenial(GatewayError):
    """A pipeline stage refused the request."""

    status_code: int = 403
    reason: DenialReason = DenialReason.SUSPICIOUS_ACTIVITY
    event_type: SecurityEventType = SecurityEventType.BLOCKED_REQUEST
    severity: Severity = Severity.MEDIUM

    def __init__(self, detail: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        message = MESSAGES[self.reason].format(**(details or {}))
        super().__init__(message, code=self.reason.value, details=details)
        # internal explanation for the event log; never shown to clients
        self.detail = detail or self.reason.value


class RateLimitExceeded(GatewayDenial):
    status_code = 429
    reason = DenialReason.RATE_LIMIT_EXCEEDED
    event_type = SecurityEventType.RATE_LIMIT_EXCEEDED
    severity = Severity.MEDIUM

    def __init__(self, result, detail: Optional[str] = None):
        self.result = result
        super().__init__(detail, details={"retry_after": result.retry_after or 1})


class AuthenticationFailure(GatewayDenial):
    status_code = 401
    reason = DenialReason.AUTH_FAILURE
    event_type = SecurityEventType.AUTH_FAILURE
    severity = Severity.MEDIUM


class CSRFViolation(GatewayDenial):
    status_code = 403
    reason = DenialReason.CSRF_FAILURE
    event_type = SecurityEventType.CSRF_FAILURE
    severity = Severity.HIGH


class BlockedRequest(GatewayDenial):
    status_code = 403
    reason = DenialReason.BLOCKED_IP
    event_type = SecurityEventType.BLOCKED_REQUEST
    severity = Severity.HIGH


class CountryNotAllowed(GatewayDenial):
    status_code = 403
    reason = DenialReason.COUNTRY_NOT_ALLOWED
    event_type = SecurityEventType.BLOCKED_REQUEST
    severity = Severity.MEDIUM


class RequestTooLarge(GatewayDenial):
    status_code = 413
    reason = DenialReason.REQUEST_TOO_LARGE
    event_type = SecurityEventType.BLOCKED_REQUEST
    severity = Severity.MEDIUM


class XSSAttempt(GatewayDenial):
    status_code = 403
    reason = DenialReason.XSS_ATTEMPT
    event_type = SecurityEventType.XSS_ATTEMPT
    severity = Severity.HIGH


class SQLInjectionAttempt(GatewayDenial):
    status_code = 403
    reason = DenialReason.SQL_INJECTION_ATTEMPT
    event_type = SecurityEventType.SQL_INJECTION_ATTEMPT
    severity = Severity.HIGH


class SuspiciousActivity(GatewayDenial):
    status_code = 403
    reason = DenialReason.SUSPICIOUS_ACTIVITY
    event_type = SecurityEventType.SUSPICIOUS_ACTIVITY
    severity = Severity.MEDIUM


class StorageDenial(GatewayDenial):
    """Fail-closed outcome when the rate-limit store is down."""

    status_code = 503
    reason = DenialReason.STORAGE_UNAVAILABLE
    event_type = SecurityEventType.BLOCKED_REQUEST
    severity = Severity.CRITICAL
