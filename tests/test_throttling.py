"""Tests for rate throttling."""
import threading
from unittest.mock import Mock

import pytest
import redis

from catalog.core.config import settings
from catalog.infrastructure.throttling import (
    MemoryHistoryStore,
    RedisHistoryStore,
    SimpleRateThrottle,
    parse_rate,
)


class TestParseRate:
    @pytest.mark.parametrize("rate,expected", [
        ("100/day", (100, 86400)),
        ("10/m", (10, 60)),
        ("5/second", (5, 1)),
        ("3/hour", (3, 3600)),
        (None, (None, None)),
    ])
    def test_valid_rates(self, rate, expected):
        assert parse_rate(rate) == expected

    @pytest.mark.parametrize("rate", ["100", "x/day", "10/fortnight", "-1/min"])
    def test_invalid_rates(self, rate):
        with pytest.raises(ValueError):
            parse_rate(rate)


class TestSimpleRateThrottle:
    """Test the sliding window."""

    def test_allows_up_to_limit(self):
        throttle = SimpleRateThrottle("3/min", "anon", MemoryHistoryStore())
        key = throttle.cache_key("127.0.0.1")

        assert [throttle.allow(key, now=100.0 + i) for i in range(4)] == [True, True, True, False]

    def test_window_slides(self):
        throttle = SimpleRateThrottle("2/min", "anon", MemoryHistoryStore())
        key = throttle.cache_key("127.0.0.1")
        throttle.allow(key, now=0.0)
        throttle.allow(key, now=30.0)

        assert not throttle.allow(key, now=59.0)
        assert throttle.allow(key, now=61.0)

    def test_history_only_keeps_window(self):
        store = MemoryHistoryStore()
        throttle = SimpleRateThrottle("5/min", "anon", store)
        key = throttle.cache_key("ip")
        throttle.allow(key, now=0.0)
        throttle.allow(key, now=10.0)

        throttle.allow(key, now=65.0)

        assert store.history(key, now=65.0, duration=60) == [65.0, 10.0]

    def test_wait(self):
        throttle = SimpleRateThrottle("2/min", "anon", MemoryHistoryStore())
        key = throttle.cache_key("ip")
        throttle.allow(key, now=0.0)
        throttle.allow(key, now=10.0)

        assert throttle.wait(key, now=20.0) == pytest.approx(40.0)

    def test_keys_are_scoped(self):
        store = MemoryHistoryStore()
        anon = SimpleRateThrottle("1/min", "anon", store)
        user = SimpleRateThrottle("1/min", "user", store)

        assert anon.allow(anon.cache_key("1"), now=0.0)
        assert user.allow(user.cache_key("1"), now=0.0)

    def test_unthrottled(self):
        throttle = SimpleRateThrottle(None, "anon")

        assert all(throttle.allow("k") for _ in range(1000))
        assert throttle.wait("k") is None

    def test_concurrent_requests_respect_limit(self):
        throttle = SimpleRateThrottle("1/min", "anon", MemoryHistoryStore())
        barrier = threading.Barrier(5)
        results = []

        def request():
            barrier.wait()
            results.append(throttle.allow("k", now=100.0))

        threads = [threading.Thread(target=request) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == [False, False, False, False, True]


class TestMemoryHistoryStore:
    """Test key expiry in the in-process store."""

    def test_empty_history_drops_key(self):
        store = MemoryHistoryStore()
        store.hit("k", now=0.0, num_requests=1, duration=60)

        assert store.history("k", now=61.0, duration=60) == []
        assert len(store) == 0

    def test_expired_keys_are_swept(self):
        store = MemoryHistoryStore()
        for i in range(100):
            store.hit(f"10.0.0.{i}", now=0.0, num_requests=1, duration=60)
        assert len(store) == 100

        store.hit("10.0.1.1", now=120.0, num_requests=1, duration=60)

        assert len(store) == 1

    def test_zero_rate_stores_nothing(self):
        store = MemoryHistoryStore()

        assert not store.hit("k", now=0.0, num_requests=0, duration=60)
        assert len(store) == 0


class TestRedisHistoryStore:
    @pytest.fixture
    def client(self):
        client = Mock()
        client.pipeline.return_value.execute.return_value = [0, 1, 1, True]
        return client

    def test_hit_runs_in_one_transaction(self, client):
        store = RedisHistoryStore(client)

        assert store.hit("k", now=100.0, num_requests=2, duration=60)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe = client.pipeline.return_value
        pipe.zremrangebyscore.assert_called_once_with("throttle:k", "-inf", 40.0)
        pipe.zcard.assert_called_once_with("throttle:k")
        pipe.expire.assert_called_once_with("throttle:k", 60)
        client.zrem.assert_not_called()

    def test_over_limit_removes_own_entry(self, client):
        client.pipeline.return_value.execute.return_value = [0, 1, 3, True]
        store = RedisHistoryStore(client)

        assert not store.hit("k", now=100.0, num_requests=2, duration=60)

        mapping = client.pipeline.return_value.zadd.call_args.args[1]
        member = next(iter(mapping))
        client.zrem.assert_called_once_with("throttle:k", member)

    def test_history_newest_first(self, client):
        client.zrangebyscore.return_value = [("a", 1.0), ("b", 3.0)]
        store = RedisHistoryStore(client)

        assert store.history("k", now=10.0, duration=60) == [3.0, 1.0]
        client.zrangebyscore.assert_called_with("throttle:k", "(-50.0", "+inf", withscores=True)

    def test_redis_errors_let_requests_through(self, client):
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")
        client.zrangebyscore.side_effect = redis.ConnectionError("down")
        store = RedisHistoryStore(client)

        assert store.hit("k", now=0.0, num_requests=1, duration=60)
        assert store.history("k", now=0.0, duration=60) == []


class TestThrottleDependency:
    """Test the throttle on real routes."""

    def test_anonymous_requests_throttled(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "anon_throttle_rate", "2/min")

        assert test_client.get("/api/products/").status_code == 200
        assert test_client.get("/api/products/").status_code == 200
        response = test_client.get("/api/products/")

        assert response.status_code == 429
        assert response.json()["code"] == "throttled"
        assert int(response.headers["Retry-After"]) > 0

    def test_users_have_their_own_rate(self, test_client, auth_headers, monkeypatch):
        monkeypatch.setattr(settings, "anon_throttle_rate", "1/min")
        monkeypatch.setattr(settings, "user_throttle_rate", "3/min")

        for _ in range(3):
            assert test_client.get("/api/products/", headers=auth_headers).status_code == 200
        assert test_client.get("/api/products/", headers=auth_headers).status_code == 429

    def test_forwarded_for_identifies_clients(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "anon_throttle_rate", "1/min")

        assert test_client.get("/api/products/", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
        assert test_client.get("/api/products/", headers={"X-Forwarded-For": "10.0.0.2"}).status_code == 200
        assert test_client.get("/api/products/", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429

    def test_throttling_can_be_disabled(self, test_client, monkeypatch):
        monkeypatch.setattr(settings, "anon_throttle_rate", "1/min")
        monkeypatch.setattr(settings, "throttling_enabled", False)

        for _ in range(3):
            assert test_client.get("/api/products/").status_code == 200
