"""
CreditLedger — the single writer of credit balances.

Responsibilities:
- Consume: one conditional UPDATE does the check and the decrement together
- Grant: insert-first against UNIQUE(type, order_id); only the inserting caller touches the balance
- Balance / history reads for the rest of the application

Methods flush, never commit: the caller owns the transaction boundary.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.errors import InsufficientBalance, LedgerInvariantViolation
from app.models.credit_account import CreditAccount
from app.models.credit_transaction import CreditTransaction, CreditTxType
from app.utils.metrics import ledger_operations_total

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass
class ConsumeResult:
    balance: int
    transaction_id: str


@dataclass
class GrantResult:
    balance: int
    transaction_id: str
    granted: bool


class CreditLedger:
    def __init__(self, db: Session):
        self.db = db

    def _insert(self, model):
        dialect = self.db.get_bind().dialect.name
        try:
            return _DIALECT_INSERTS[dialect](model)
        except KeyError:
            raise NotImplementedError(f"CreditLedger does not support dialect {dialect}") from None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self, user_id: str) -> int:
        """Current balance straight from the database (never the identity map)."""
        value = (
            self.db.query(CreditAccount.balance)
            .filter(CreditAccount.user_id == user_id)
            .scalar()
        )
        return int(value or 0)

    def transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .all()
        )

    def find_grant(self, order_id: str) -> CreditTransaction | None:
        return (
            self.db.query(CreditTransaction)
            .filter(
                CreditTransaction.type == CreditTxType.GRANT.value,
                CreditTransaction.order_id == order_id,
            )
            .one_or_none()
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def consume(self, user_id: str, amount: int, remark: str = "") -> ConsumeResult:
        if amount <= 0:
            raise ValueError("amount must be positive")
        now = datetime.now(timezone.utc)
        result = self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
            .values(balance=CreditAccount.balance - amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            balance = self.balance(user_id)
            ledger_operations_total.labels(operation="consume", result="rejected").inc()
            logger.info(
                "credit_consume_rejected",
                extra={"user_id": user_id, "amount": amount, "balance": balance},
            )
            raise InsufficientBalance(user_id, amount, balance)

        balance = self.balance(user_id)
        tx = CreditTransaction(
            id=str(uuid4()),
            user_id=user_id,
            type=CreditTxType.CONSUME.value,
            amount=amount,
            remark=remark,
            order_id=None,
            balance_after=balance,
            created_at=now,
        )
        self.db.add(tx)
        self.db.flush()
        ledger_operations_total.labels(operation="consume", result="applied").inc()
        logger.info(
            "credit_consume_applied",
            extra={"user_id": user_id, "amount": amount, "balance": balance, "transaction_id": tx.id},
        )
        return ConsumeResult(balance=balance, transaction_id=tx.id)

    def grant(self, user_id: str, amount: int, remark: str, order_id: str) -> GrantResult:
        """
        Credit `amount` for `order_id` at most once.
        A second call for the same order returns the existing transaction with granted=False.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        if not order_id:
            raise ValueError("order_id is required for a grant")

        existing = self.find_grant(order_id)
        if existing is not None:
            return self._replay(existing, user_id)

        now = datetime.now(timezone.utc)
        self.db.execute(
            self._insert(CreditAccount)
            .values(user_id=user_id, balance=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        # Row lock serializes grants and consumes on this account (no-op on SQLite).
        current = (
            self.db.query(CreditAccount.balance)
            .filter(CreditAccount.user_id == user_id)
            .with_for_update()
            .scalar()
        )
        balance_after = int(current or 0) + amount

        tx_id = str(uuid4())
        inserted = self.db.execute(
            self._insert(CreditTransaction)
            .values(
                id=tx_id,
                user_id=user_id,
                type=CreditTxType.GRANT.value,
                amount=amount,
                remark=remark,
                order_id=order_id,
                balance_after=balance_after,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["type", "order_id"])
        ).rowcount
        if not inserted:
            existing = self.find_grant(order_id)
            if existing is None:
                raise LedgerInvariantViolation(f"grant for order {order_id} conflicted but is missing")
            return self._replay(existing, user_id)

        self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(balance=CreditAccount.balance + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        balance = self.balance(user_id)
        ledger_operations_total.labels(operation="grant", result="applied").inc()
        logger.info(
            "credit_grant_applied",
            extra={
                "user_id": user_id,
                "order_id": order_id,
                "amount": amount,
                "balance": balance,
                "transaction_id": tx_id,
            },
        )
        return GrantResult(balance=balance, transaction_id=tx_id, granted=True)

    def _replay(self, existing: CreditTransaction, user_id: str) -> GrantResult:
        if existing.user_id != user_id:
            raise LedgerInvariantViolation(
                f"grant for order {existing.order_id} belongs to another user"
            )
        ledger_operations_total.labels(operation="grant", result="replayed").inc()
        logger.info(
            "credit_grant_replayed",
            extra={"user_id": user_id, "order_id": existing.order_id, "transaction_id": existing.id},
        )
        return GrantResult(
            balance=self.balance(user_id),
            transaction_id=existing.id,
            granted=False,
        )
