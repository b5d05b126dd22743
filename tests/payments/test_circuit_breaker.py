import time
from datetime import datetime, timezone

import fakeredis
import pybreaker
import pytest

from app.services.circuit_breaker import RedisCircuitBreakerStorage


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


def _breaker(storage, reset_timeout=1):
    return pybreaker.CircuitBreaker(fail_max=2, reset_timeout=reset_timeout, state_storage=storage)


def _down():
    raise RuntimeError("gateway down")


def _up():
    return "ok"


def _trip(breaker):
    for _ in range(2):
        with pytest.raises((RuntimeError, pybreaker.CircuitBreakerError)):
            breaker.call(_down)


class TestRedisCircuitBreakerStorage:
    def test_counters_persist_in_redis(self, redis_client):
        storage = RedisCircuitBreakerStorage("payment_gateway", client=redis_client)
        storage.increment_counter()
        storage.increment_success_counter()
        storage.increment_success_counter()

        other = RedisCircuitBreakerStorage("payment_gateway", client=redis_client)
        assert other.counter == 1
        assert other.success_counter == 2

        storage.reset_success_counter()
        storage.reset_counter()
        assert other.success_counter == 0
        assert other.counter == 0

    def test_opened_at_round_trip(self, redis_client):
        storage = RedisCircuitBreakerStorage("payment_gateway", client=redis_client)
        opened = datetime(2026, 10, 17, 8, 30, tzinfo=timezone.utc)

        storage.opened_at = opened
        assert RedisCircuitBreakerStorage("payment_gateway", client=redis_client).opened_at == opened

        storage.opened_at = None
        assert storage.opened_at is None

    def test_trip_is_shared_across_replicas(self, redis_client):
        first = RedisCircuitBreakerStorage("payment_gateway", client=redis_client)
        _trip(_breaker(first))

        second = RedisCircuitBreakerStorage("payment_gateway", client=redis_client)
        assert second.state == pybreaker.STATE_OPEN
        assert second.opened_at is not None
        assert second.opened_at == first.opened_at
        with pytest.raises(pybreaker.CircuitBreakerError):
            _breaker(second, reset_timeout=60).call(_up)

    def test_recovers_after_reset_timeout(self, redis_client):
        breaker = _breaker(RedisCircuitBreakerStorage("payment_gateway", client=redis_client))
        _trip(breaker)
        assert breaker.current_state == pybreaker.STATE_OPEN
        with pytest.raises(pybreaker.CircuitBreakerError):
            breaker.call(_up)

        time.sleep(1.2)

        assert breaker.call(_up) == "ok"
        assert breaker.call(_up) == "ok"
        assert breaker.current_state == pybreaker.STATE_CLOSED

    def test_names_are_isolated(self, redis_client):
        _trip(_breaker(RedisCircuitBreakerStorage("payment_gateway", client=redis_client)))
        assert RedisCircuitBreakerStorage("other", client=redis_client).state == pybreaker.STATE_CLOSED
