import threading

import pytest

from trafficguard.protection.credentials import CredentialStore
from trafficguard.protection.endpoints import EndpointConfig
from trafficguard.protection.ratelimit import RateLimiter, default_endpoints, normalize_path
from trafficguard.tuning.autotune import AutoTuner, Direction
from trafficguard.tuning.thresholds import RULE_RATE_LIMIT

from conftest import T0


@pytest.fixture
def creds(clock):
    return CredentialStore(clock=clock)


@pytest.fixture
def limiter(recorder, creds, thresholds, locks, clock):
    return RateLimiter(recorder, creds, endpoints=default_endpoints(), thresholds=thresholds,
                       locks=locks, clock=clock)


def test_eleventh_request_in_a_second_is_denied(limiter):
    limiter.add_endpoint(EndpointConfig(path="/api/search", method="GET", rate_limit=10, burst_size=20))
    decisions = [limiter.check_rate_limit("GET", "/api/search", "src") for _ in range(70)]
    assert all(d.allowed for d in decisions[:10])
    assert not any(d.allowed for d in decisions[10:])
    assert min(d.remaining for d in decisions) == 0
    assert decisions[9].remaining == 0
    assert decisions[0].remaining == 9
    assert decisions[0].limit == 10
    assert decisions[0].endpoint == "GET:/api/search"


def test_window_resets_after_one_second(limiter, clock):
    for _ in range(6):
        last = limiter.check_rate_limit("POST", "/api/v1/auth/login", "src")
    assert not last.allowed
    clock.advance(1.0)
    assert limiter.check_rate_limit("POST", "/api/v1/auth/login", "src").allowed


def test_sources_are_counted_separately(limiter):
    for _ in range(5):
        limiter.check_rate_limit("POST", "/api/v1/auth/login", "a")
    assert not limiter.check_rate_limit("POST", "/api/v1/auth/login", "a").allowed
    assert limiter.check_rate_limit("POST", "/api/v1/auth/login", "b").allowed


def test_unmatched_and_disabled_endpoints_pass(limiter):
    d = limiter.check_rate_limit("GET", "/static/app.js", "src")
    assert (d.allowed, d.remaining, d.reset_in) == (True, 100, 0.0)
    assert limiter.rate_limit_headers(d) == {}

    assert limiter.set_endpoint_enabled("POST:/api/v1/auth/login", False)
    for _ in range(20):
        assert limiter.check_rate_limit("POST", "/api/v1/auth/login", "src").allowed


def test_lookup_prefers_exact_then_pattern(limiter):
    assert limiter.get_endpoint("post", "/api/v1/auth/login").key == "POST:/api/v1/auth/login"
    assert limiter.get_endpoint("GET", "/api/v1/orders/7").key == "*:/api/v1/*"
    assert limiter.get_endpoint("GET", "/health") is None


def test_credential_limit_overrides_endpoint(limiter, creds):
    cred = creds.issue("partner", rate_limit=2)
    results = [limiter.check_rate_limit("GET", "/api/v1/items", "src", cred.key).allowed for _ in range(3)]
    assert results == [True, True, False]
    assert creds.get(cred.id).usage_count == 3

    # an invalid key falls back to the endpoint limit
    assert limiter.check_rate_limit("GET", "/api/v1/items", "other", "tg_bogus").limit == 100


def test_tuner_sensitivity_scales_the_limit(limiter, thresholds, clock):
    tuner = AutoTuner(thresholds, clock=clock)
    tuner.adjust_rule_threshold(RULE_RATE_LIMIT, Direction.DECREASE_TOLERANCE)
    assert limiter.effective_limit(10) == 7
    tuner.adjust_rule_threshold(RULE_RATE_LIMIT, Direction.INCREASE_TOLERANCE)
    tuner.adjust_rule_threshold(RULE_RATE_LIMIT, Direction.INCREASE_TOLERANCE)
    assert limiter.effective_limit(10) == 15
    assert limiter.effective_limit(0) == 1


def test_rate_limit_headers(limiter, clock):
    d = limiter.check_rate_limit("POST", "/api/v1/auth/register", "src")
    h = limiter.rate_limit_headers(d)
    assert h["X-RateLimit-Limit"] == "3"
    assert h["X-RateLimit-Remaining"] == "2"
    assert int(h["X-RateLimit-Reset"]) == int(T0) + 1


def test_hit_count_and_counter_eviction(limiter, clock):
    for _ in range(3):
        limiter.check_rate_limit("GET", "/api/v1/items", "src")
    assert limiter.endpoint("*:/api/v1/*").hit_count == 3
    assert limiter.counter_count() == 1
    clock.advance(2)
    assert limiter.evict() == 1
    assert limiter.counter_count() == 0


def test_update_endpoint_only_touches_allowed_fields(limiter):
    ep = limiter.update_endpoint("POST:/api/v1/auth/login", rate_limit=50, path="/elsewhere")
    assert ep.rate_limit == 50
    assert ep.path == "/api/v1/auth/login"
    assert limiter.update_endpoint("GET:/nope", rate_limit=1) is None
    # updated in place: the registry still holds the same object
    assert limiter.endpoint("POST:/api/v1/auth/login") is ep
    assert ep.burst_size == 50


@pytest.mark.parametrize("raw,expected", [
    ("/users/42", "/users/:id"),
    ("/users/42/orders/3f2504e0-4f89-11d3-9a0c-0305e82c3301", "/users/:id/orders/:id"),
    ("/users/me", "/users/me"),
])
def test_normalize_path(raw, expected):
    assert normalize_path(raw) == expected


def test_discovery_needs_ten_hits(limiter, recorder, clock):
    for i in range(9):
        recorder.log_request("GET", f"/api/v2/users/{i}", "src", ts=clock())
    assert limiter.discover_endpoints() == []

    recorder.log_request("GET", "/api/v2/users/99", "src", ts=clock())
    proposals = limiter.discover_endpoints()
    assert len(proposals) == 1
    p = proposals[0]
    assert p.path == "/api/v2/users/:id"
    assert p.method == "GET"
    assert p.enabled is False
    assert p.hit_count == 10
    assert p.rate_limit == 50
    # nothing is registered by discovery itself
    assert limiter.endpoint(p.key) is None


def test_discovery_skips_covered_paths_and_merges_methods(limiter, recorder, clock):
    for i in range(12):
        recorder.log_request("GET", f"/api/v1/things/{i}", "src", ts=clock())
    for i in range(6):
        recorder.log_request("GET", "/admin/panel", "src", ts=clock())
        recorder.log_request("POST", "/admin/panel", "src", ts=clock())
    proposals = limiter.discover_endpoints()
    assert [p.path for p in proposals] == ["/admin/panel"]
    assert proposals[0].method == "*"
    assert proposals[0].requires_auth is True


def test_discovery_ignores_old_traffic(limiter, recorder, clock):
    for i in range(10):
        recorder.log_request("GET", f"/api/v2/users/{i}", "src", ts=clock())
    clock.advance(301)
    assert limiter.discover_endpoints() == []


def test_endpoint_access(limiter, creds):
    limiter.add_endpoint(EndpointConfig(path="/api/v1/admin/*", method="*", requires_auth=True,
                                        required_scopes=["write"]))
    assert limiter.check_endpoint_access("GET", "/api/v1/items").allowed
    assert limiter.check_endpoint_access("GET", "/api/v1/admin/users").error == "API key required"
    reader = creds.issue("reader", scopes=["read"])
    writer = creds.issue("writer", scopes=["write"])
    denied = limiter.check_endpoint_access("GET", "/api/v1/admin/users", reader.key)
    assert not denied.allowed and denied.error.startswith("missing scope")
    assert limiter.check_endpoint_access("GET", "/api/v1/admin/users", writer.key).allowed
    assert limiter.check_endpoint_access("GET", "/api/v1/admin/users", "tg_nope").error == "invalid key"


def test_schema_validation_collects_all_errors(limiter):
    limiter.add_endpoint(EndpointConfig(
        path="/api/v1/signup",
        method="POST",
        schema={
            "email": {"required": True, "type": "string", "minLength": 5},
            "age": {"type": "number"},
            "name": {"type": "string", "max_length": 3},
        },
    ))
    ok, errors = limiter.validate_schema("POST", "/api/v1/signup", {"age": "x", "name": "Alice"})
    assert not ok
    assert errors == ["email is required", "age must be number", "name must be at most 3 characters"]

    ok, errors = limiter.validate_schema("POST", "/api/v1/signup", {"email": "a@b.co", "age": 30})
    assert ok and errors == []
    assert limiter.validate_schema("GET", "/api/v1/items", None) == (True, [])


def test_usage_analytics_and_stats(limiter, creds):
    cred = creds.issue("partner")
    for _ in range(3):
        limiter.check_rate_limit("GET", "/api/v1/items", "src", cred.key)
    usage = limiter.usage_analytics()
    assert usage["by_endpoint"][0] == {"endpoint": "GET:/api/v1/items", "hits": 3, "rate_per_min": 0.05}
    assert usage["by_credential"][0]["usage"] == 3
    st = limiter.stats()
    assert st["total_endpoints"] == 3
    assert st["requests_last_hour"] == 3


def test_hits_survive_concurrent_updates(limiter):
    key = "POST:/api/v1/auth/login"

    def traffic(source):
        for _ in range(2000):
            limiter.check_rate_limit("POST", "/api/v1/auth/login", source)

    def admin():
        for i in range(200):
            limiter.update_endpoint(key, rate_limit=5 + i % 3)

    threads = [threading.Thread(target=traffic, args=(f"s{i}",)) for i in range(4)]
    threads.append(threading.Thread(target=admin))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert limiter.endpoint(key).hit_count == 8000
    # one window per source, all inside the same (frozen) second
    assert limiter.counter_count() == 4
    d = limiter.check_rate_limit("POST", "/api/v1/auth/login", "s0")
    assert not d.allowed and d.remaining == 0
