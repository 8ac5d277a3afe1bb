import json
from functools import lru_cache
from typing import Any, List, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import MalformedPolicy
from .gateway import parse_networks
from .rate_limit import DEFAULT_RULES, PolicyTable


def parse_list(v: Any) -> List[str]:
    """Parse a list from JSON or a comma-separated string"""
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        return [str(item).strip() for item in v if str(item).strip()]
    if isinstance(v, str):
        if v.startswith('['):
            try:
                return [str(item).strip() for item in json.loads(v)]
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in v.split(',') if item.strip()]
    return []


class GatewaySettings(BaseSettings):
    """Gateway settings - all configurable via environment variables (GATEWAY_*)"""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "Edge Gateway"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Session signing key, shared with the login service
    SECRET_KEY: str = Field(..., min_length=32, validation_alias=AliasChoices("SECRET_KEY", "GATEWAY_SECRET_KEY"))

    # ==========================================
    # Rate limiting
    # ==========================================
    STORAGE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    STORAGE_TIMEOUT_MS: int = 50
    # Admit when the store is down; set False to deny instead
    FAIL_OPEN: bool = True
    # JSON list of {"name", "window_ms", "max_requests", "exact"|"prefix", "methods", "exclude_methods"}
    RATE_LIMIT_RULES: Optional[str] = None

    # ==========================================
    # Screening
    # ==========================================
    SCREENING_ENABLED: bool = True
    BLOCKED_IPS: str = ""
    MAX_REQUEST_BYTES: int = 10 * 1024 * 1024
    # ISO codes read from CF-IPCountry, e.g. "ID"; empty disables the check
    ALLOWED_COUNTRIES: str = ""

    # ==========================================
    # Client identity
    # ==========================================
    # Peers (addresses or CIDR) whose CF-Connecting-IP / X-Forwarded-For / CF-IPCountry are believed
    TRUSTED_PROXIES: str = ""

    # ==========================================
    # Routes
    # ==========================================
    PROTECTED_PREFIXES: str = "/api/,/ws"
    PUBLIC_PREFIXES: str = "/api/auth/,/api/public/,/api/health"
    LOGIN_PATH: str = "/login"
    # Bearer token for /security and /rate-limits; unset closes them
    OPERATOR_TOKEN: Optional[str] = Field(default=None, min_length=32)

    # ==========================================
    # Security monitor
    # ==========================================
    MAX_EVENTS: int = 1000
    EVENT_RETENTION_HOURS: float = 24

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def _check_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError("STORAGE_BACKEND must be 'memory' or 'redis'")
        return v

    @field_validator("STORAGE_TIMEOUT_MS", "MAX_EVENTS", "MAX_REQUEST_BYTES")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("TRUSTED_PROXIES")
    @classmethod
    def _check_proxies(cls, v: str) -> str:
        parse_networks(parse_list(v))
        return v

    @property
    def blocked_ips(self) -> List[str]:
        return parse_list(self.BLOCKED_IPS)

    @property
    def allowed_countries(self) -> List[str]:
        return [c.upper() for c in parse_list(self.ALLOWED_COUNTRIES)]

    @property
    def trusted_proxies(self) -> List[str]:
        return parse_list(self.TRUSTED_PROXIES)

    @property
    def protected_prefixes(self) -> Tuple[str, ...]:
        return tuple(parse_list(self.PROTECTED_PREFIXES))

    @property
    def public_prefixes(self) -> Tuple[str, ...]:
        return tuple(parse_list(self.PUBLIC_PREFIXES))

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def policy_table(self) -> PolicyTable:
        """Rule table from RATE_LIMIT_RULES, or the built-in table. Raises MalformedPolicy."""
        if not self.RATE_LIMIT_RULES:
            return PolicyTable(DEFAULT_RULES)
        try:
            raw = json.loads(self.RATE_LIMIT_RULES)
        except json.JSONDecodeError as exc:
            raise MalformedPolicy(f"RATE_LIMIT_RULES is not valid JSON: {exc.msg}") from exc
        if isinstance(raw, dict):
            return PolicyTable.from_config(raw.get("rules", []), default=raw.get("default"))
        if not isinstance(raw, list):
            raise MalformedPolicy("RATE_LIMIT_RULES must be a JSON list or object")
        return PolicyTable.from_config(raw)


@lru_cache
def get_settings() -> GatewaySettings:
    return GatewaySettings()
