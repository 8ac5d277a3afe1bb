"""
Unit Tests for Gateway Settings
"""
import json

import pytest
from pydantic import ValidationError

from edge_gateway.config import GatewaySettings, parse_list
from edge_gateway.errors import MalformedPolicy


def _settings(**overrides):
    overrides.setdefault("SECRET_KEY", "s" * 40)
    return GatewaySettings(_env_file=None, **overrides)


class TestParseList:
    @pytest.mark.parametrize("value,expected", [
        ("10.0.0.1, 10.0.0.2", ["10.0.0.1", "10.0.0.2"]),
        ('["10.0.0.1", "10.0.0.2"]', ["10.0.0.1", "10.0.0.2"]),
        (["/api/", " /ws "], ["/api/", "/ws"]),
        ("", []),
        (None, []),
    ])
    def test_formats(self, value, expected):
        assert parse_list(value) == expected


class TestGatewaySettings:
    """Test defaults and environment overrides"""

    def test_defaults(self):
        settings = _settings()

        assert settings.STORAGE_BACKEND == "memory"
        assert settings.STORAGE_TIMEOUT_MS == 50
        assert settings.FAIL_OPEN is True
        assert settings.MAX_EVENTS == 1000
        assert settings.protected_prefixes == ("/api/", "/ws")
        assert settings.public_prefixes == ("/api/auth/", "/api/public/", "/api/health")
        assert settings.blocked_ips == []

    def test_secret_key_required_length(self):
        with pytest.raises(ValidationError):
            _settings(SECRET_KEY="too-short")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("GATEWAY_FAIL_OPEN", "false")
        monkeypatch.setenv("GATEWAY_STORAGE_BACKEND", "Redis")
        monkeypatch.setenv("GATEWAY_BLOCKED_IPS", "203.0.113.1,203.0.113.2")
        monkeypatch.setenv("GATEWAY_ENVIRONMENT", "production")

        settings = _settings()

        assert settings.FAIL_OPEN is False
        assert settings.STORAGE_BACKEND == "redis"
        assert settings.blocked_ips == ["203.0.113.1", "203.0.113.2"]
        assert settings.is_production is True

    def test_secret_key_from_unprefixed_env(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "k" * 48)
        assert GatewaySettings(_env_file=None).SECRET_KEY == "k" * 48

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            _settings(STORAGE_BACKEND="memcached")

    def test_edge_identity_settings(self):
        settings = _settings(TRUSTED_PROXIES="10.0.0.0/8, 2001:db8::1", ALLOWED_COUNTRIES="id,sg")

        assert settings.trusted_proxies == ["10.0.0.0/8", "2001:db8::1"]
        assert settings.allowed_countries == ["ID", "SG"]
        assert settings.OPERATOR_TOKEN is None

    def test_bad_trusted_proxy_rejected(self):
        with pytest.raises(ValidationError):
            _settings(TRUSTED_PROXIES="10.0.0.0/8,proxy.internal")

    def test_short_operator_token_rejected(self):
        with pytest.raises(ValidationError):
            _settings(OPERATOR_TOKEN="letmein")

    @pytest.mark.parametrize("field", ["STORAGE_TIMEOUT_MS", "MAX_EVENTS", "MAX_REQUEST_BYTES"])
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError):
            _settings(**{field: 0})


class TestPolicyTableConfig:
    def test_builtin_table(self):
        table = _settings().policy_table()

        assert table.select("/api/auth/login", "POST").policy.max_requests == 5
        assert table.default.policy.max_requests == 100

    def test_json_list(self):
        rules = [{"name": "search", "window_ms": 10_000, "max_requests": 3, "prefix": "/api/search"}]

        table = _settings(RATE_LIMIT_RULES=json.dumps(rules)).policy_table()

        assert table.select("/api/search/q", "GET").name == "search"
        assert table.select("/api/auth/login", "POST").name == "default"

    def test_json_object_with_default(self):
        raw = {"rules": [], "default": {"window_ms": 1_000, "max_requests": 2}}

        table = _settings(RATE_LIMIT_RULES=json.dumps(raw)).policy_table()

        assert table.select("/anything", "GET").policy.max_requests == 2

    @pytest.mark.parametrize("raw", [
        "{not json",
        '"a string"',
        '[{"name": "x", "window_ms": 0, "max_requests": 1}]',
    ])
    def test_bad_rules_raise(self, raw):
        with pytest.raises(MalformedPolicy):
            _settings(RATE_LIMIT_RULES=raw).policy_table()
