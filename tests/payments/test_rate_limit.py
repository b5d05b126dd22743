from unittest.mock import MagicMock, patch

import redis

from app.services.payments.rate_limit import check_purchase_rate_limit


def _client(count):
    client = MagicMock()
    client.incr.return_value = count
    return client


class TestPurchaseRateLimit:
    @patch("app.services.payments.rate_limit.redis.Redis.from_url")
    def test_first_attempt_sets_window(self, from_url):
        client = _client(1)
        from_url.return_value = client

        assert check_purchase_rate_limit("u1") is True
        client.incr.assert_called_once_with("purchase_rate:u1")
        client.expire.assert_called_once_with("purchase_rate:u1", 60)

    @patch("app.services.payments.rate_limit.redis.Redis.from_url")
    def test_within_limit(self, from_url):
        client = _client(3)
        from_url.return_value = client

        assert check_purchase_rate_limit("u1") is True
        client.expire.assert_not_called()

    @patch("app.services.payments.rate_limit.redis.Redis.from_url")
    def test_over_limit(self, from_url):
        from_url.return_value = _client(4)
        assert check_purchase_rate_limit("u1") is False

    @patch("app.services.payments.rate_limit.redis.Redis.from_url")
    def test_redis_down_fails_open(self, from_url):
        client = MagicMock()
        client.incr.side_effect = redis.ConnectionError("refused")
        from_url.return_value = client
        assert check_purchase_rate_limit("u1") is True
