"""
Order — one credit purchase routed through the external payment gateway.
id is the gateway-facing out_trade_no. Rows are never deleted (audit trail).
"""
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, Index, Integer, String

from app.db.base import Base


class OrderStatus(str, Enum):
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.EXPIRED})

# Monotonic state machine: nothing leaves a terminal state.
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.AWAITING_CONFIRMATION,
        OrderStatus.PAID,
        OrderStatus.FAILED,
        OrderStatus.EXPIRED,
    }),
    OrderStatus.AWAITING_CONFIRMATION: frozenset({
        OrderStatus.PAID,
        OrderStatus.FAILED,
        OrderStatus.EXPIRED,
    }),
}


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("ix_orders_status_expires_at", "status", "expires_at"),)

    id = Column(String(64), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)        # price in fen
    credits_requested = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    provider_trade_no = Column(String, nullable=True)     # gateway's own trade id, set on paid
    failure_reason = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    # Same instant as the linked handoff's expires_at; drives the expiry sweep.
    expires_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    def is_terminal(self) -> bool:
        return OrderStatus(self.status) in TERMINAL_STATUSES
