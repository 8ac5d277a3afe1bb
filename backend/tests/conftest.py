"""
Edge Gateway - Test Configuration and Fixtures
"""
import os
from typing import Any, Dict, Optional

import pytest

# Set testing environment before the app module reads settings
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-testing-only-0123456789')
os.environ.setdefault('GATEWAY_ENVIRONMENT', 'testing')

from edge_gateway.clock import ManualClock
from edge_gateway.csrf import CSRFGuard
from edge_gateway.errors import StorageUnavailable
from edge_gateway.gateway import Gateway
from edge_gateway.models import GatewayRequest
from edge_gateway.monitor import SecurityMonitor
from edge_gateway.rate_limit import RateLimiter
from edge_gateway.session import JoseTokenSigner, SessionValidator
from edge_gateway.storage import InMemoryEventSink, InMemoryRateLimitStore, RateLimitStore
from edge_gateway.threat_intel import ThreatScreen

SECRET = os.environ['SECRET_KEY']
START_MS = 1_700_000_000_000
PROXY_NETWORK = "10.0.0.0/8"


class BrokenStore(RateLimitStore):
    """Store whose backend is always down"""

    def hit(self, key, policy, now_ms):
        raise StorageUnavailable(cause=ConnectionError("refused"))

    def peek(self, key, policy, now_ms):
        raise StorageUnavailable(cause=ConnectionError("refused"))

    def reset(self, key):
        raise StorageUnavailable(cause=ConnectionError("refused"))


@pytest.fixture
def broken_store() -> BrokenStore:
    return BrokenStore()


@pytest.fixture
def secret() -> str:
    return SECRET


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START_MS)


@pytest.fixture
def store() -> InMemoryRateLimitStore:
    return InMemoryRateLimitStore()


@pytest.fixture
def limiter(store, clock) -> RateLimiter:
    return RateLimiter(store=store, clock=clock)


@pytest.fixture
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def monitor(clock):
    monitor = SecurityMonitor(clock=clock)
    yield monitor
    monitor.close()


@pytest.fixture
def signer() -> JoseTokenSigner:
    return JoseTokenSigner()


@pytest.fixture
def make_token(signer, clock):
    """Sign a session token that expires `ttl_ms` after the manual clock's now"""
    def _make(subject: Optional[str] = "user-42", ttl_ms: int = 15 * 60 * 1000, secret: str = SECRET, **claims: Any) -> str:
        payload: Dict[str, Any] = dict(claims)
        if subject is not None:
            payload['sub'] = subject
        if ttl_ms is not None:
            payload['exp'] = (clock.now_ms() + ttl_ms) // 1000
        return signer.sign(payload, secret)
    return _make


@pytest.fixture
def sessions(clock) -> SessionValidator:
    return SessionValidator(SECRET, clock=clock)


@pytest.fixture
def gateway(limiter, sessions, monitor) -> Gateway:
    return Gateway(
        rate_limiter=limiter,
        sessions=sessions,
        monitor=monitor,
        csrf=CSRFGuard(),
        screen=ThreatScreen.build(["203.0.113.66"]),
        trusted_proxies=[PROXY_NETWORK],
    )


@pytest.fixture
def make_request():
    def _make(method: str = 'GET', path: str = '/', headers: Optional[Dict[str, str]] = None,
              query: str = '', ip: Optional[str] = '198.51.100.7') -> GatewayRequest:
        return GatewayRequest(method=method, path=path, headers=headers or {}, query=query, peer_ip=ip)
    return _make
