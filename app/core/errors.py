"""
Error taxonomy for the credit / payment reconciliation subsystem.

HandoffNotFound and HandoffExpired fail closed: the caller must re-authenticate.
GatewayUnavailable is retryable. OrderAlreadyTerminal is an idempotent no-op and is
never surfaced to callers that retry Complete.
"""


class ReconciliationError(Exception):
    """Base class for all errors raised by the reconciliation subsystem."""


class HandoffNotFound(ReconciliationError):
    def __init__(self, message: str = "handoff not found or already consumed"):
        super().__init__(message)


class HandoffExpired(ReconciliationError):
    def __init__(self, message: str = "handoff expired"):
        super().__init__(message)


class InsufficientBalance(ReconciliationError):
    def __init__(self, user_id: str, requested: int, balance: int):
        super().__init__(f"insufficient balance: requested {requested}, available {balance}")
        self.user_id = user_id
        self.requested = requested
        self.balance = balance


class GatewayUnavailable(ReconciliationError):
    def __init__(self, order_id: str, reason: str = ""):
        super().__init__(f"payment gateway unavailable for order {order_id}: {reason}")
        self.order_id = order_id
        self.reason = reason


class OrderAlreadyTerminal(ReconciliationError):
    def __init__(self, order_id: str, status: str):
        super().__init__(f"order {order_id} is already {status}")
        self.order_id = order_id
        self.status = status


class AccessDenied(ReconciliationError):
    def __init__(self, user_id: str, action: str):
        super().__init__(f"user {user_id} is not allowed to {action}")
        self.user_id = user_id
        self.action = action


class InvalidPurchase(ReconciliationError, ValueError):
    """Requested price / credits pair is not a configured package."""


class InvalidNotification(ReconciliationError):
    """Asynchronous gateway notification failed signature verification."""


class LedgerInvariantViolation(ReconciliationError):
    """A structural ledger guarantee was bypassed. Programming error, never retried."""
