"""
CreditTransaction — append-only ledger row, created atomically with the balance change.
(type, order_id) is unique: at most one grant per order. Consumes carry no order_id.
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, UniqueConstraint

from app.db.base import Base


class CreditTxType(str, Enum):
    CONSUME = "consume"
    GRANT = "grant"


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("type", "order_id", name="uq_credit_tx_grant_order"),
        CheckConstraint("amount > 0", name="ck_credit_tx_amount_positive"),
        CheckConstraint("type <> 'grant' OR order_id IS NOT NULL", name="ck_credit_tx_grant_has_order"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)        # consume / grant
    amount = Column(Integer, nullable=False)
    remark = Column(String, nullable=True)
    order_id = Column(String(64), nullable=True)  # idempotency key for grants
    balance_after = Column(Integer, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
