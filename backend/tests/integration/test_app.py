"""
Integration Tests for the HTTP Surface
Tests the middleware, security headers and operator endpoints through the ASGI app
"""
import json
from contextlib import asynccontextmanager

import pytest
from fastapi import Request
from httpx import ASGITransport, AsyncClient

from edge_gateway.config import GatewaySettings
from edge_gateway.headers import API_CSP, PAGE_CSP
from edge_gateway.main import OPERATOR_PATHS, create_app
from edge_gateway.middleware import build_gateway
from edge_gateway.session import SESSION_COOKIE, JoseTokenSigner

CSRF = "ab" * 32
OPERATOR_TOKEN = "operator-token-for-testing-only-0123456789"
OPERATOR = {"Authorization": f"Bearer {OPERATOR_TOKEN}"}
BROWSER = {"User-Agent": "Mozilla/5.0 (X11; Linux x86_64)"}


@asynccontextmanager
async def _client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _build_app(settings, clock, sink, store=None):
    gateway = build_gateway(
        settings,
        clock=clock,
        store=store,
        sink=sink,
        rate_limit_exempt=OPERATOR_PATHS,
        operator_prefixes=OPERATOR_PATHS,
    )
    app = create_app(settings, gateway=gateway)

    @app.get("/api/me")
    def me(request: Request):
        return {"subject": request.state.subject_id, "identifier": request.state.identifier}

    @app.post("/api/projects")
    def create_project():
        return {"created": True}

    return app


@pytest.fixture
def settings(secret):
    # ASGITransport connects from 127.0.0.1, standing in for the edge proxy
    return GatewaySettings(
        _env_file=None,
        SECRET_KEY=secret,
        OPERATOR_TOKEN=OPERATOR_TOKEN,
        TRUSTED_PROXIES="127.0.0.1",
        BLOCKED_IPS="203.0.113.66",
        RATE_LIMIT_RULES=json.dumps({
            "rules": [{"name": "auth", "window_ms": 60_000, "max_requests": 5, "prefix": "/api/auth/"}],
            "default": {"window_ms": 60_000, "max_requests": 3},
        }),
    )


@pytest.fixture
def app(settings, clock, sink):
    app = _build_app(settings, clock, sink)
    yield app
    app.state.gateway.monitor.close()


@pytest.fixture
async def client(app):
    async with _client(app) as ac:
        yield ac


@pytest.fixture
def session_cookie(secret, clock):
    token = JoseTokenSigner().sign({"sub": "user-42", "exp": clock.now_ms() // 1000 + 900}, secret)
    return f"{SESSION_COOKIE}={token}"


class TestHealthAndHeaders:
    """Test admitted responses carry rate-limit and security headers"""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json() == {"message": "Healthy", "storage_backend": "memory", "fail_open": True}
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "2"
        assert response.headers["Content-Security-Policy"] == PAGE_CSP
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-XSS-Protection"] == "1; mode=block"
        assert response.headers["Cross-Origin-Embedder-Policy"] == "require-corp"
        assert "max-age=31536000" in response.headers["Strict-Transport-Security"]

    @pytest.mark.asyncio
    async def test_api_responses_use_strict_csp(self, client: AsyncClient, session_cookie):
        response = await client.get("/api/me", headers={"Cookie": session_cookie})

        assert response.status_code == 200
        assert response.json() == {"subject": "user-42", "identifier": "user-42"}
        assert response.headers["Content-Security-Policy"] == API_CSP


class TestDenials:
    """Test denial responses produced by the middleware"""

    @pytest.mark.asyncio
    async def test_rate_limited(self, client: AsyncClient):
        for _ in range(3):
            assert (await client.get("/")).status_code == 200

        response = await client.get("/")

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "rate_limit_exceeded"
        assert body["retry_after"] == 60
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.asyncio
    async def test_auth_required(self, client: AsyncClient):
        response = await client.get("/api/me")

        assert response.status_code == 401
        assert response.json()["error"] == "auth_failure"
        assert response.headers["Content-Security-Policy"] == API_CSP

    @pytest.mark.asyncio
    async def test_csrf_required(self, client: AsyncClient, session_cookie):
        response = await client.post("/api/projects", headers={"Cookie": session_cookie})
        assert response.status_code == 403
        assert response.json()["error"] == "csrf_failure"

    @pytest.mark.asyncio
    async def test_csrf_accepted(self, client: AsyncClient, session_cookie):
        response = await client.post(
            "/api/projects",
            headers={"Cookie": f"{session_cookie}; csrf_token={CSRF}", "X-CSRF-Token": CSRF},
        )
        assert response.status_code == 200
        assert response.json() == {"created": True}

    @pytest.mark.asyncio
    async def test_blocked_ip_behind_proxy(self, client: AsyncClient):
        response = await client.get("/", headers={"X-Forwarded-For": "203.0.113.66"})
        assert response.status_code == 403
        assert response.json()["error"] == "blocked_ip"

    @pytest.mark.asyncio
    async def test_denials_reach_sink(self, app, client: AsyncClient, sink):
        await client.get("/api/me")
        app.state.gateway.monitor.close(wait=True)

        assert [e.type.value for e in sink.list()] == ["auth_failure"]


class TestUntrustedPeer:
    """Forwarded headers from a peer that is not a trusted proxy are ignored"""

    @pytest.mark.asyncio
    async def test_rotating_forwarded_ip_shares_one_budget(self, settings, clock, sink):
        app = _build_app(settings.model_copy(update={"TRUSTED_PROXIES": ""}), clock, sink)

        async with _client(app) as client:
            statuses = [
                (await client.get("/api/auth/session", headers={"CF-Connecting-IP": f"1.2.3.{i}", **BROWSER})).status_code
                for i in range(8)
            ]
        app.state.gateway.monitor.close()

        assert statuses.count(429) == 3


class TestOperatorAccess:
    """Operator endpoints need the operator bearer token"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/security/events", "/security/stats", "/security/patterns", "/rate-limits/status"])
    async def test_anonymous_read_rejected(self, client: AsyncClient, path):
        response = await client.get(path)

        assert response.status_code == 401
        assert response.json()["error"] == "auth_failure"
        assert response.headers["Content-Security-Policy"] == API_CSP

    @pytest.mark.asyncio
    async def test_anonymous_purge_cannot_erase_log(self, client: AsyncClient, clock):
        for _ in range(11):
            await client.get("/api/me")
        clock.advance(2_000)

        response = await client.post(
            "/security/events/purge",
            json={"older_than_hours": 1e-7},
            headers={"Cookie": f"csrf_token={CSRF}", "X-CSRF-Token": CSRF},
        )
        patterns = (await client.get("/security/patterns", headers=OPERATOR)).json()

        assert response.status_code == 401
        assert [p["pattern"] for p in patterns] == ["brute_force_auth"]

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, client: AsyncClient):
        response = await client.get("/security/events", headers={"Authorization": "Bearer guess"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_closed_without_configured_token(self, settings, clock, sink):
        app = _build_app(settings.model_copy(update={"OPERATOR_TOKEN": None}), clock, sink)

        async with _client(app) as client:
            response = await client.get("/security/stats", headers=OPERATOR)
        app.state.gateway.monitor.close()

        assert response.status_code == 401


class TestOperatorEndpoints:
    """Test the security monitor and rate-limit views"""

    @pytest.mark.asyncio
    async def test_events_and_stats(self, client: AsyncClient):
        await client.get("/api/me", headers={"User-Agent": "pytest-client"})

        events = (await client.get("/security/events", headers=OPERATOR)).json()
        stats = (await client.get("/security/stats", headers=OPERATOR)).json()

        assert len(events) == 1
        assert events[0]["type"] == "auth_failure"
        assert events[0]["user_agent"] == "pytest-client"
        assert stats["total_events"] == 1
        assert stats["events_by_type"]["auth_failure"] == 1
        assert stats["top_offenders"] == [{"ip": "127.0.0.1", "count": 1}]

    @pytest.mark.asyncio
    async def test_event_filters(self, client: AsyncClient):
        await client.get("/api/me")
        await client.get("/?q=<script>")

        by_type = (await client.get("/security/events", params={"type": "xss_attempt"}, headers=OPERATOR)).json()
        by_severity = (await client.get("/security/events", params={"severity": "medium"}, headers=OPERATOR)).json()

        assert [e["type"] for e in by_type] == ["xss_attempt"]
        assert [e["type"] for e in by_severity] == ["auth_failure"]

    @pytest.mark.asyncio
    async def test_operator_endpoints_not_rate_limited(self, client: AsyncClient):
        for _ in range(10):
            response = await client.get("/security/stats", headers=OPERATOR)
            assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers
        assert response.headers["Content-Security-Policy"] == API_CSP

    @pytest.mark.asyncio
    async def test_attack_patterns(self, client: AsyncClient):
        for _ in range(11):
            await client.get("/api/me")

        patterns = (await client.get("/security/patterns", headers=OPERATOR)).json()

        assert len(patterns) == 1
        assert patterns[0]["pattern"] == "brute_force_auth"
        assert patterns[0]["severity"] == "high"
        assert patterns[0]["affected_ips"] == ["127.0.0.1"]

    @pytest.mark.asyncio
    async def test_purge_requires_csrf(self, client: AsyncClient):
        response = await client.post("/security/events/purge", json={"older_than_hours": 1}, headers=OPERATOR)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_purge(self, client: AsyncClient, clock):
        await client.get("/api/me")
        clock.advance(2 * 3_600_000)
        await client.get("/api/me")

        response = await client.post(
            "/security/events/purge",
            json={"older_than_hours": 1},
            headers={"Cookie": f"csrf_token={CSRF}", "X-CSRF-Token": CSRF, **OPERATOR},
        )

        assert response.status_code == 200
        assert response.json() == {"removed": 1, "remaining": 1}

    @pytest.mark.asyncio
    async def test_rate_limit_status(self, client: AsyncClient, session_cookie):
        await client.get("/")
        await client.get("/api/me", headers={"Cookie": session_cookie})
        await client.get("/api/auth/session", headers=BROWSER)

        status = (await client.get("/rate-limits/status", headers=OPERATOR)).json()

        assert set(status) == {"default", "auth"}
        assert status["default"]["policy"] == {"window_ms": 60_000, "max_requests": 3}
        assert status["default"]["identifiers"]["127.0.0.1"]["recent_hits"] == 1
        assert status["default"]["identifiers"]["user-42"]["recent_hits"] == 1
        assert status["auth"]["identifiers"]["127.0.0.1"]["window_ms"] == 60_000

    @pytest.mark.asyncio
    async def test_rate_limit_lookup_does_not_consume(self, client: AsyncClient):
        await client.get("/")
        await client.get("/")
        params = {"identifier": "127.0.0.1", "path": "/"}

        first = (await client.get("/rate-limits/lookup", params=params, headers=OPERATOR)).json()
        second = (await client.get("/rate-limits/lookup", params=params, headers=OPERATOR)).json()

        assert first["rule"] == "default"
        assert first["max_requests"] == 3
        assert first["remaining"] == 1
        assert first["success"] is True
        assert second["remaining"] == 1

    @pytest.mark.asyncio
    async def test_rate_limit_lookup_storage_outage(self, settings, clock, sink, broken_store):
        app = _build_app(settings, clock, sink, store=broken_store)

        async with _client(app) as client:
            response = await client.get(
                "/rate-limits/lookup", params={"identifier": "127.0.0.1", "path": "/"}, headers=OPERATOR
            )
        app.state.gateway.monitor.close()

        assert response.status_code == 503
        assert response.json() == {
            "success": False,
            "code": "STORAGE_UNAVAILABLE",
            "message": "Rate limit storage unavailable",
            "details": {"cause": "ConnectionError"},
        }
