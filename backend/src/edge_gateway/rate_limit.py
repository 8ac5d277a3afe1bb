"""
Sliding-window rate limiting keyed by endpoint class and caller identity.

Design highlights:
- An ordered rule table maps (path, method) to a RateLimitPolicy; first match wins.
- Windows are keyed "<rule name>:<identifier>" so each endpoint class has its own budget.
- Counting and purging happen in RateLimitStore under a per-key critical section.
- Denial is a normal result, not an exception. Only a store failure raises, and
  the limiter resolves that into admit (fail-open) or deny (fail-closed).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .clock import ClockSource, SystemClock, ms_to_iso
from .errors import MalformedPolicy, StorageUnavailable
from .models import PolicyRule, RateLimitPolicy, RateLimitResult
from .storage import RateLimitStore

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000

STRICT = RateLimitPolicy(window_ms=MINUTE_MS, max_requests=5)
UPLOAD = RateLimitPolicy(window_ms=MINUTE_MS, max_requests=10)
WEBSOCKET = RateLimitPolicy(window_ms=MINUTE_MS, max_requests=30)
SENSITIVE = RateLimitPolicy(window_ms=MINUTE_MS, max_requests=20)
GENEROUS = RateLimitPolicy(window_ms=MINUTE_MS, max_requests=100)

DEFAULT_RULES: List[PolicyRule] = [
    PolicyRule(name="auth", policy=STRICT, prefix="/api/auth/"),
    PolicyRule(name="upload", policy=UPLOAD, exact="/api/files/upload"),
    PolicyRule(name="websocket", policy=WEBSOCKET, exact="/ws"),
    PolicyRule(name="sensitive", policy=SENSITIVE, exact="/api/email/send"),
    PolicyRule(name="sensitive", policy=SENSITIVE, prefix="/api/users", exclude_methods=frozenset({"GET"})),
]

DEFAULT_RULE = PolicyRule(name="default", policy=GENEROUS)


def _methods(value: Optional[Iterable[str]]) -> Optional[frozenset]:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    return frozenset(m.upper() for m in value)


class PolicyTable:
    """Ordered rule table with a fallback policy."""

    def __init__(self, rules: Sequence[PolicyRule], default: PolicyRule = DEFAULT_RULE) -> None:
        self._rules = list(rules)
        self._default = default

    # PUBLIC_INTERFACE
    @classmethod
    def from_config(cls, entries: Sequence[Mapping[str, Any]], default: Optional[Mapping[str, Any]] = None) -> "PolicyTable":
        """
        Build a table from plain dicts, e.g. parsed from JSON configuration.

        Each entry needs "name", "window_ms", "max_requests" and at most one of
        "exact"/"prefix"; "methods" and "exclude_methods" are optional lists.
        Raises MalformedPolicy on any invalid entry.
        """
        rules: List[PolicyRule] = []
        for idx, entry in enumerate(entries):
            if not isinstance(entry, Mapping):
                raise MalformedPolicy(f"rule #{idx} must be an object")
            name = entry.get("name")
            if not name or not isinstance(name, str):
                raise MalformedPolicy(f"rule #{idx} is missing a name")
            if entry.get("exact") is not None and entry.get("prefix") is not None:
                raise MalformedPolicy(f"rule {name!r} sets both exact and prefix")
            try:
                policy = RateLimitPolicy(window_ms=entry["window_ms"], max_requests=entry["max_requests"])
            except KeyError as exc:
                raise MalformedPolicy(f"rule {name!r} is missing {exc.args[0]}") from exc
            rules.append(
                PolicyRule(
                    name=name,
                    policy=policy,
                    exact=entry.get("exact"),
                    prefix=entry.get("prefix"),
                    methods=_methods(entry.get("methods")),
                    exclude_methods=_methods(entry.get("exclude_methods")) or frozenset(),
                )
            )
        fallback = DEFAULT_RULE
        if default is not None:
            try:
                fallback = PolicyRule(
                    name=str(default.get("name", "default")),
                    policy=RateLimitPolicy(window_ms=default["window_ms"], max_requests=default["max_requests"]),
                )
            except KeyError as exc:
                raise MalformedPolicy(f"default rule is missing {exc.args[0]}") from exc
        return cls(rules, default=fallback)

    # PUBLIC_INTERFACE
    def select(self, path: str, method: str) -> PolicyRule:
        """Return the first rule matching the request, or the default rule."""
        for rule in self._rules:
            if rule.matches(path, method):
                return rule
        return self._default

    @property
    def rules(self) -> List[PolicyRule]:
        return list(self._rules)

    @property
    def default(self) -> PolicyRule:
        return self._default


# PUBLIC_INTERFACE
def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    """Standard rate-limit response headers; Retry-After only on denial."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": ms_to_iso(result.reset_at),
    }
    if not result.success:
        headers["Retry-After"] = str(result.retry_after if result.retry_after is not None else 1)
    return headers


class RateLimiter:
    """
    Core engine for sliding-window rate limiting.

    Responsibilities:
    - Select the policy for a request from the rule table.
    - Consult the store for the (endpoint class, identifier) window.
    - Resolve store failures according to `fail_open`.
    """

    def __init__(
        self,
        store: RateLimitStore,
        table: Optional[PolicyTable] = None,
        clock: Optional[ClockSource] = None,
        fail_open: bool = True,
    ) -> None:
        self._store = store
        self._table = table or PolicyTable(DEFAULT_RULES)
        self._clock = clock or SystemClock()
        self.fail_open = fail_open

    @property
    def table(self) -> PolicyTable:
        return self._table

    # PUBLIC_INTERFACE
    def decide(self, policy: RateLimitPolicy, identifier: str, now: Optional[int] = None) -> RateLimitResult:
        """
        Admit or deny one request for `identifier` under `policy`.

        Raises StorageUnavailable when the store fails; callers that want the
        configured fail-open/closed behaviour should use `check`.
        """
        if not isinstance(policy, RateLimitPolicy):
            raise MalformedPolicy(f"expected RateLimitPolicy, got {type(policy).__name__}")
        if not identifier:
            raise ValueError("identifier must be a non-empty string")
        now_ms = self._clock.now_ms() if now is None else now
        return self._store.hit(identifier, policy, now_ms)

    # PUBLIC_INTERFACE
    def check(self, path: str, method: str, identifier: str, now: Optional[int] = None) -> RateLimitResult:
        """
        Select the policy for (path, method) and decide for this caller.

        On StorageUnavailable: with fail_open the request is admitted with a
        `degraded` result; otherwise the error propagates for the gateway to deny.
        """
        rule = self._table.select(path, method)
        now_ms = self._clock.now_ms() if now is None else now
        key = f"{rule.name}:{identifier}"
        try:
            return self.decide(rule.policy, key, now_ms)
        except StorageUnavailable as exc:
            logger.critical(
                "Rate limit store unavailable (rule=%s, fail_open=%s): %s",
                rule.name,
                self.fail_open,
                exc.details.get("cause", exc.message),
            )
            if not self.fail_open:
                raise
            return RateLimitResult(
                success=True,
                remaining=rule.policy.max_requests,
                limit=rule.policy.max_requests,
                reset_at=now_ms + rule.policy.window_ms,
                degraded=True,
            )

    # PUBLIC_INTERFACE
    def peek(self, path: str, method: str, identifier: str) -> Tuple[PolicyRule, RateLimitResult]:
        """
        The rule and window state a request from `identifier` would hit, without
        consuming a slot. Store failures propagate regardless of fail_open.
        """
        if not identifier:
            raise ValueError("identifier must be a non-empty string")
        rule = self._table.select(path, method)
        result = self._store.peek(f"{rule.name}:{identifier}", rule.policy, self._clock.now_ms())
        return rule, result

    # PUBLIC_INTERFACE
    def status(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of tracked windows, grouped by endpoint class."""
        policies = {rule.name: rule.policy for rule in [*self._table.rules, self._table.default]}
        out: Dict[str, Dict[str, Any]] = {}
        for key, info in self._store.snapshot(self._clock.now_ms()).items():
            rule_name, _, identifier = key.partition(":")
            entry = out.setdefault(rule_name, {"identifiers": {}})
            if rule_name in policies:
                entry["policy"] = policies[rule_name].to_dict()
            entry["identifiers"][identifier] = info
        return out
