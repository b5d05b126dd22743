"""
Gateway status query with a bounded retry budget, exponential backoff and jitter.
Exhausted or non-retryable failures surface as GatewayUnavailable: the order stays
awaiting_confirmation and is never treated as paid.
"""
import logging
import random
import time
from typing import Callable

from app.core.config import settings
from app.core.errors import GatewayUnavailable
from app.services.payment_gateway.base import GatewayError, GatewayQueryResult, PaymentGateway

logger = logging.getLogger(__name__)


def query_with_retry(
    gateway: PaymentGateway,
    order_id: str,
    *,
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> GatewayQueryResult:
    max_attempts = max_attempts or settings.payment_gateway_retry_max_attempts
    if backoff_seconds is None:
        backoff_seconds = settings.payment_gateway_retry_backoff_seconds

    attempt = 0
    while attempt < max_attempts:
        attempt += 1
        try:
            result = gateway.query_status(order_id)
            if attempt > 1:
                logger.info(
                    "payment_gateway_query_recovered",
                    extra={"order_id": order_id, "attempt": attempt},
                )
            return result
        except GatewayError as e:
            logger.warning(
                "payment_gateway_query_failed",
                extra={
                    "order_id": order_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": str(e),
                    "reason": "retryable" if e.retryable else "terminal",
                },
            )
            if not e.retryable or attempt >= max_attempts:
                raise GatewayUnavailable(order_id, str(e)) from e

            delay = backoff_seconds * (2 ** (attempt - 1)) + random.uniform(0, backoff_seconds)
            logger.info(
                "payment_gateway_retry_scheduled",
                extra={
                    "order_id": order_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay_seconds": round(delay, 2),
                },
            )
            sleep(delay)

    raise GatewayUnavailable(order_id, "no attempts made")
