import threading

import fakeredis
import pytest
from flask import Flask, jsonify

import audit_service
import rate_limiter
from rate_limiter import (
    MemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
    get_client_identifier,
    rate_limit,
)

pytestmark = pytest.mark.unit

WINDOW_MS = 60000
T0 = 1_700_000_000_000


class TestFixedWindow:
    def test_eleventh_request_in_window_is_denied(self):
        limiter = RateLimiter(MemoryCounterStore())
        decisions = [limiter.check("1.2.3.4", "signup", WINDOW_MS, 10, now_ms=T0 + i) for i in range(11)]

        assert all(d.allowed for d in decisions[:10])
        denied = decisions[10]
        assert denied.allowed is False
        assert 0 < denied.retry_after_seconds <= 60
        assert denied.remaining == 0

    def test_remaining_counts_down(self):
        limiter = RateLimiter(MemoryCounterStore())
        remaining = [limiter.check("ip", "api", WINDOW_MS, 3, now_ms=T0).remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

    def test_window_restarts_after_reset(self):
        limiter = RateLimiter(MemoryCounterStore())
        for _ in range(5):
            limiter.check("ip", "strict", WINDOW_MS, 5, now_ms=T0)
        assert limiter.check("ip", "strict", WINDOW_MS, 5, now_ms=T0 + 1000).allowed is False

        after = limiter.check("ip", "strict", WINDOW_MS, 5, now_ms=T0 + WINDOW_MS + 1)
        assert after.allowed is True
        assert after.remaining == 4
        assert after.reset_at_ms == T0 + 2 * WINDOW_MS + 1

    def test_retry_after_non_increasing_and_non_negative(self):
        limiter = RateLimiter(MemoryCounterStore())
        limiter.check("ip", "strict", WINDOW_MS, 1, now_ms=T0)

        retries = []
        for offset in range(1000, WINDOW_MS + 1, 7000):
            decision = limiter.check("ip", "strict", WINDOW_MS, 1, now_ms=T0 + offset)
            assert decision.allowed is False
            retries.append(decision.retry_after_seconds)

        assert retries == sorted(retries, reverse=True)
        assert all(r >= 0 for r in retries)

    def test_route_classes_do_not_share_budget(self):
        limiter = RateLimiter(MemoryCounterStore())
        for _ in range(2):
            limiter.check("ip", "subscription-checkout", WINDOW_MS, 2, now_ms=T0)
        assert limiter.check("ip", "subscription-checkout", WINDOW_MS, 2, now_ms=T0).allowed is False
        assert limiter.check("ip", "subscription-portal", WINDOW_MS, 2, now_ms=T0).allowed is True

    def test_identities_do_not_share_budget(self):
        limiter = RateLimiter(MemoryCounterStore())
        limiter.check("10.0.0.1", "api", WINDOW_MS, 1, now_ms=T0)
        assert limiter.check("10.0.0.1", "api", WINDOW_MS, 1, now_ms=T0).allowed is False
        assert limiter.check("10.0.0.2", "api", WINDOW_MS, 1, now_ms=T0).allowed is True


class TestMemoryCounterStore:
    def test_sweep_removes_only_expired_entries(self):
        store = MemoryCounterStore()
        store.hit("old", 1000, T0)
        store.hit("fresh", WINDOW_MS, T0)

        removed = store.sweep(T0 + 5000)

        assert removed == 1
        assert len(store) == 1

    def test_opportunistic_sweep_runs_on_hit(self):
        store = MemoryCounterStore(sweep_interval_ms=10)
        store._last_sweep = T0
        store.hit("a", 5, T0)
        store.hit("b", 5, T0 + 100)
        # "a" expired long before the second hit
        assert len(store) == 1

    def test_concurrent_hits_are_all_counted(self):
        store = MemoryCounterStore()
        limiter = RateLimiter(store)
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                decision = limiter.check("ip", "api", WINDOW_MS, 100, now_ms=T0)
                with lock:
                    results.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 100
        assert results.count(False) == 300

    def test_reset(self):
        store = MemoryCounterStore()
        store.hit("k", WINDOW_MS, T0)
        store.reset("k")
        assert store.hit("k", WINDOW_MS, T0) == (1, T0 + WINDOW_MS)


class TestRedisCounterStore:
    @pytest.fixture
    def redis_store(self):
        return RedisCounterStore(fakeredis.FakeRedis())

    def test_counts_within_window(self, redis_store):
        limiter = RateLimiter(redis_store)
        decisions = [limiter.check("1.2.3.4", "signup", WINDOW_MS, 10, now_ms=T0) for _ in range(11)]

        assert [d.allowed for d in decisions] == [True] * 10 + [False]
        assert 0 < decisions[-1].retry_after_seconds <= 60

    def test_first_hit_sets_expiry(self, redis_store):
        count, reset_at = redis_store.hit("api:ip", WINDOW_MS, T0)
        assert count == 1
        assert T0 < reset_at <= T0 + WINDOW_MS
        assert 0 < redis_store._client.pttl("ratelimit:api:ip") <= WINDOW_MS

    def test_reset_clears_keys(self, redis_store):
        redis_store.hit("api:ip", WINDOW_MS, T0)
        redis_store.hit("api:other", WINDOW_MS, T0)
        redis_store.reset()
        assert redis_store.hit("api:ip", WINDOW_MS, T0)[0] == 1


class TestClientIdentifier:
    @pytest.fixture
    def app(self):
        return Flask(__name__)

    def test_first_forwarded_hop(self, app):
        with app.test_request_context("/", headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}):
            assert get_client_identifier() == "203.0.113.5"

    def test_trusted_proxy_hops_ignore_spoofed_first_hop(self, app):
        with app.test_request_context("/", headers={"X-Forwarded-For": "6.6.6.6, 203.0.113.5"}):
            assert get_client_identifier(trusted_hops=1) == "203.0.113.5"
        with app.test_request_context("/", headers={"X-Forwarded-For": "6.6.6.6, 203.0.113.5, 10.0.0.1"}):
            assert get_client_identifier(trusted_hops=2) == "203.0.113.5"

    def test_trusted_hops_beyond_header_length_use_first_hop(self, app):
        with app.test_request_context("/", headers={"X-Forwarded-For": "203.0.113.5"}):
            assert get_client_identifier(trusted_hops=3) == "203.0.113.5"

    def test_trusted_hops_from_config(self, app, monkeypatch):
        monkeypatch.setattr(rate_limiter, "RATE_LIMIT_TRUSTED_PROXY_HOPS", 1)
        with app.test_request_context("/", headers={"X-Forwarded-For": "6.6.6.6, 203.0.113.5"}):
            assert get_client_identifier() == "203.0.113.5"

    def test_real_ip_fallback(self, app):
        with app.test_request_context("/", headers={"X-Real-IP": "198.51.100.7"}):
            assert get_client_identifier() == "198.51.100.7"

    def test_remote_addr_fallback(self, app):
        with app.test_request_context("/", environ_base={"REMOTE_ADDR": "192.0.2.9"}):
            assert get_client_identifier() == "192.0.2.9"

    def test_body_identity_is_ignored(self, app):
        with app.test_request_context(
            "/", method="POST", json={"ip": "6.6.6.6"}, environ_base={"REMOTE_ADDR": "192.0.2.9"}
        ):
            assert get_client_identifier() == "192.0.2.9"


class TestRateLimitDecorator:
    @pytest.fixture
    def recorded(self, monkeypatch, audit):
        monkeypatch.setattr(audit_service, "audit_logger", audit)
        monkeypatch.setattr(rate_limiter, "RATE_LIMIT_ENABLED", True)

    @pytest.fixture
    def app(self, recorded):
        app = Flask(__name__)
        limiter = RateLimiter(MemoryCounterStore())

        @app.route("/ping", methods=["POST"])
        @rate_limit("strict", "ping", limiter)
        def ping():
            return jsonify({"ok": True})

        return app

    def test_sixth_strict_request_gets_429(self, app, audit_entries):
        client = app.test_client()
        statuses = [client.post("/ping").status_code for _ in range(6)]

        assert statuses == [200] * 5 + [429]

        response = client.post("/ping")
        assert response.status_code == 429
        assert 0 < int(response.headers["Retry-After"]) <= 300
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.get_json()["retry_after"] == int(response.headers["Retry-After"])

        actions = [e["action"] for e in audit_entries]
        assert actions.count("RATE_LIMIT_EXCEEDED") == 2
        assert audit_entries[0]["resource_id"] == "ping"

    def test_disabled_limiter_lets_everything_through(self, app, monkeypatch):
        monkeypatch.setattr(rate_limiter, "RATE_LIMIT_ENABLED", False)
        client = app.test_client()
        assert all(client.post("/ping").status_code == 200 for _ in range(10))
