from __future__ import annotations
import logging
import math
import re
import threading
from collections import Counter, defaultdict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from trafficguard.core.concurrency import Clock, StripedLock, system_clock
from trafficguard.detection.recorder import TelemetryRecorder
from trafficguard.protection.credentials import APICredential, CredentialStore, ERR_SCOPE
from trafficguard.protection.endpoints import EndpointConfig, endpoint_key, validate_body
from trafficguard.tuning.thresholds import RULE_RATE_LIMIT, Sensitivity, ThresholdTable

logger = logging.getLogger(__name__)

__all__ = ["RateLimiter", "RateLimitDecision", "AccessDecision", "default_endpoints", "normalize_path"]

UNMATCHED_REMAINING = 100
DISCOVERED_RATE_LIMIT = 50
DISCOVERED_BURST = 100
PLACEHOLDER = ":id"

SENSITIVITY_FACTOR = {
    Sensitivity.LOW: 1.5,
    Sensitivity.MEDIUM: 1.0,
    Sensitivity.HIGH: 0.75,
}

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_NUMERIC = re.compile(r"^\d+$")

UPDATABLE_FIELDS = {"rate_limit", "burst_size", "requires_auth", "required_scopes", "schema", "enabled"}


def default_endpoints() -> List[EndpointConfig]:
    return [
        EndpointConfig(path="/api/v1/auth/login", method="POST", rate_limit=5, burst_size=10),
        EndpointConfig(path="/api/v1/auth/register", method="POST", rate_limit=3, burst_size=5),
        EndpointConfig(path="/api/v1/*", method="*", rate_limit=100, burst_size=200),
    ]


def normalize_path(path: str) -> str:
    """Replace numeric and UUID segments with a placeholder: /users/42 -> /users/:id"""
    segments = path.split("/")
    return "/".join(PLACEHOLDER if (_NUMERIC.match(s) or _UUID.match(s)) else s for s in segments)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in: float
    limit: Optional[int] = None
    endpoint: Optional[str] = None


@dataclass
class AccessDecision:
    allowed: bool
    error: Optional[str] = None


@dataclass
class RateWindowCounter:
    count: int
    window_start: float


class RateLimiter:
    """
    Endpoint registry + fixed 1-second windows per (source, method, path).

    Endpoint writes go through a small registry lock; request-time counting
    is striped by counter key.
    """

    def __init__(
        self,
        recorder: TelemetryRecorder,
        credentials: CredentialStore,
        *,
        endpoints: Iterable[EndpointConfig] = (),
        window_sec: float = 1.0,
        discovery_window_sec: float = 300.0,
        discovery_min_hits: int = 10,
        thresholds: Optional[ThresholdTable] = None,
        locks: Optional[StripedLock] = None,
        clock: Clock = system_clock,
    ):
        self.recorder = recorder
        self.credentials = credentials
        self.window_sec = max(0.001, float(window_sec))
        self.discovery_window_sec = float(discovery_window_sec)
        self.discovery_min_hits = max(1, int(discovery_min_hits))
        self.thresholds = thresholds
        self._locks = locks or StripedLock()
        self._clock = clock
        self._endpoints: Dict[str, EndpointConfig] = {}
        self._registry_lock = threading.Lock()
        self._counters: Dict[str, RateWindowCounter] = {}
        for ep in endpoints:
            self.add_endpoint(ep)

    # --- registry -------------------------------------------------------------

    def add_endpoint(self, config: EndpointConfig) -> EndpointConfig:
        if config.discovered_at is None:
            config.discovered_at = self._clock()
        with self._registry_lock:
            self._endpoints[config.key] = config
        logger.info("endpoint registered %s limit=%d enabled=%s", config.key, config.rate_limit, config.enabled)
        return config

    def get_endpoint(self, method: str, path: str) -> Optional[EndpointConfig]:
        method = method.upper()
        for key in (endpoint_key(method, path), endpoint_key("*", path)):
            ep = self._endpoints.get(key)
            if ep is not None:
                return ep
        # several wildcards can match; the longest pattern is the most specific
        matches = [ep for ep in list(self._endpoints.values()) if ep.matches(method, path)]
        if not matches:
            return None
        return max(matches, key=lambda ep: len(ep.path))

    def endpoint(self, key: str) -> Optional[EndpointConfig]:
        return self._endpoints.get(key)

    def update_endpoint(self, key: str, **changes: Any) -> Optional[EndpointConfig]:
        changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}
        with self._registry_lock:
            ep = self._endpoints.get(key)
            if ep is None:
                return None
            # replace() re-runs normalization; the fields are then copied onto the
            # registered object so in-flight checks keep counting hits on it
            normalized = replace(ep, **changes)
            for name in UPDATABLE_FIELDS:
                setattr(ep, name, getattr(normalized, name))
        return ep

    def set_endpoint_enabled(self, key: str, enabled: bool) -> bool:
        with self._registry_lock:
            ep = self._endpoints.get(key)
            if ep is None:
                return False
            ep.enabled = bool(enabled)
        return True

    def remove_endpoint(self, key: str) -> bool:
        with self._registry_lock:
            removed = self._endpoints.pop(key, None) is not None
        if removed:
            logger.info("endpoint removed %s", key)
        return removed

    def list_endpoints(self) -> List[EndpointConfig]:
        return list(self._endpoints.values())

    # --- rate limiting --------------------------------------------------------

    def effective_limit(self, base: int) -> int:
        factor = SENSITIVITY_FACTOR[self.thresholds.sensitivity(RULE_RATE_LIMIT)] if self.thresholds else 1.0
        return max(1, int(math.floor(base * factor)))

    def check_rate_limit(
        self,
        method: str,
        path: str,
        source_id: str,
        credential: Optional[str] = None,
        *,
        log_request: bool = True,
    ) -> RateLimitDecision:
        method = method.upper()
        now = self._clock()
        if log_request:
            self.recorder.log_request(method, path, source_id, credential, ts=now)

        ep = self.get_endpoint(method, path)
        if ep is None or not ep.enabled:
            return RateLimitDecision(True, UNMATCHED_REMAINING, 0.0)

        limit = ep.rate_limit
        if credential:
            check = self.credentials.validate(credential)
            if check.valid and check.credential is not None:
                limit = check.credential.rate_limit
                self.credentials.touch(check.credential)
        limit = self.effective_limit(limit)

        counter_key = f"{source_id}:{method}:{path}"
        with self._locks.for_key(counter_key):
            counter = self._counters.get(counter_key)
            if counter is None or now - counter.window_start >= self.window_sec:
                counter = RateWindowCounter(0, now)
                self._counters[counter_key] = counter
            counter.count += 1
            count = counter.count
            window_start = counter.window_start
        with self._registry_lock:
            ep.hit_count += 1

        return RateLimitDecision(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_in=max(0.0, self.window_sec - (now - window_start)),
            limit=limit,
            endpoint=ep.key,
        )

    def rate_limit_headers(self, decision: RateLimitDecision) -> Dict[str, str]:
        if decision.limit is None:
            return {}
        return {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(math.ceil(self._clock() + decision.reset_in)),
        }

    def evict(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        removed = 0
        for key in list(self._counters.keys()):
            with self._locks.for_key(key):
                c = self._counters.get(key)
                if c is not None and now - c.window_start >= self.window_sec:
                    del self._counters[key]
                    removed += 1
        return removed

    def counter_count(self) -> int:
        return len(self._counters)

    # --- access & schema ------------------------------------------------------

    def check_endpoint_access(self, method: str, path: str, key: Optional[str] = None) -> AccessDecision:
        ep = self.get_endpoint(method, path)
        if ep is None or not ep.requires_auth:
            return AccessDecision(True)
        if not key:
            return AccessDecision(False, "API key required")
        check = self.credentials.validate(key)
        if not check.valid:
            return AccessDecision(False, check.error)
        cred: APICredential = check.credential  # type: ignore[assignment]
        if ep.required_scopes and not any(s in cred.scopes or "admin" in cred.scopes for s in ep.required_scopes):
            return AccessDecision(False, f"{ERR_SCOPE}: {' or '.join(ep.required_scopes)}")
        return AccessDecision(True)

    def validate_schema(self, method: str, path: str, body: Optional[Mapping[str, Any]]) -> Tuple[bool, List[str]]:
        ep = self.get_endpoint(method, path)
        if ep is None or not ep.schema:
            return True, []
        return validate_body(ep.schema, body)

    # --- discovery ------------------------------------------------------------

    def discover_endpoints(self) -> List[EndpointConfig]:
        """Propose disabled configs for busy, unregistered paths. Nothing is registered here."""
        now = self._clock()
        groups: Dict[str, Counter] = defaultdict(Counter)
        for entry in self.recorder.recent_log(since=now - self.discovery_window_sec):
            groups[normalize_path(entry.path)][entry.method] += 1

        proposals: List[EndpointConfig] = []
        for path, methods in groups.items():
            hits = sum(methods.values())
            if hits < self.discovery_min_hits:
                continue
            if any(ep.pattern.fullmatch(path) for ep in self.list_endpoints()):
                continue
            method = next(iter(methods)) if len(methods) == 1 else "*"
            proposals.append(EndpointConfig(
                path=path,
                method=method,
                rate_limit=DISCOVERED_RATE_LIMIT,
                burst_size=DISCOVERED_BURST,
                requires_auth="admin" in path,
                enabled=False,
                hit_count=hits,
                discovered_at=now,
            ))
        if proposals:
            logger.info("discovery proposed %d endpoint(s): %s", len(proposals), [p.key for p in proposals])
        return proposals

    # --- reporting ------------------------------------------------------------

    def usage_analytics(self) -> dict:
        now = self._clock()
        recent = self.recorder.recent_log(since=now - 3600)
        hits = Counter(f"{e.method}:{e.path}" for e in recent)
        by_endpoint = [
            {"endpoint": key, "hits": n, "rate_per_min": round(n / 60.0, 2)}
            for key, n in hits.most_common(10)
        ]
        by_credential = sorted(
            ({"id": c.id, "name": c.name, "usage": c.usage_count, "last_used": c.last_used}
             for c in self.credentials.all()),
            key=lambda x: x["usage"],
            reverse=True,
        )
        return {"by_endpoint": by_endpoint, "by_credential": by_credential}

    def stats(self) -> dict:
        eps = self.list_endpoints()
        now = self._clock()
        return {
            "total_endpoints": len(eps),
            "protected_endpoints": sum(1 for e in eps if e.enabled),
            **self.credentials.stats(),
            "requests_last_hour": len(self.recorder.recent_log(since=now - 3600)),
        }
