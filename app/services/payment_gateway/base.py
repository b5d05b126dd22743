"""
Base classes and types for payment gateway adapters.
Used by factory, retry wrapper and the reconciler.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class GatewayStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"


@dataclass
class GatewayQueryResult:
    """Authoritative status of one order as reported server-to-server by the gateway."""
    order_id: str
    status: GatewayStatus
    provider_trade_no: str | None = None
    total_amount_cents: int | None = None
    raw_status: str = ""


class GatewayError(Exception):
    """Raised when the gateway cannot give a definite answer; detail holds provider fields for logging."""
    def __init__(self, message: str, retryable: bool = False, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.detail = detail or {}


class PayableOrder(Protocol):
    id: str
    amount_cents: int
    expires_at: datetime | None


class PaymentGateway(ABC):
    """Base class for payment gateway adapters."""

    name = "base"

    def __init__(self, config: dict) -> None:
        self.config = config

    @abstractmethod
    def is_available(self) -> bool:
        """Check if gateway credentials are configured."""
        pass

    @abstractmethod
    def build_payment_url(self, order: PayableOrder, return_url: str) -> str:
        """Signed URL the browser is redirected to for payment."""
        pass

    @abstractmethod
    def query_status(self, order_id: str) -> GatewayQueryResult:
        """Server-to-server status query. Raises GatewayError when the answer is not definite."""
        pass

    @abstractmethod
    def verify_notification(self, params: dict[str, str]) -> bool:
        """Check the signature of an asynchronous server notification."""
        pass
