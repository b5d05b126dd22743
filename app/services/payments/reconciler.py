"""
PaymentReconciler — drives an order from "payment initiated" to "credits granted" or "failed".

Responsibilities:
- Initiate: order + handoff record + signed gateway redirect
- Complete: redeem handoff, ask the gateway (never the redirect), grant once, mark paid
- ConfirmFromNotification: the gateway's async notify converges on the same settle path
- ExpireStale: background sweep for orders whose handoff ran out

The only caller of CreditLedger.grant. Exactly-once crediting rests on the ledger's
UNIQUE(type, order_id); the order row lock only keeps status and ledger in step.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from urllib.parse import urlencode

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AccessDenied,
    GatewayUnavailable,
    HandoffExpired,
    HandoffNotFound,
    InvalidNotification,
    LedgerInvariantViolation,
    OrderAlreadyTerminal,
)
from app.core.logging import handoff_ref
from app.models.order import ALLOWED_TRANSITIONS, Order, OrderStatus
from app.services.access.gate import PURCHASE, AccessGate
from app.services.credits.ledger import CreditLedger, GrantResult
from app.services.credits.packages import match_package
from app.services.handoff.service import RedeemedHandoff, SessionHandoffStore
from app.services.payment_gateway.base import (
    GatewayError,
    GatewayQueryResult,
    GatewayStatus,
    PaymentGateway,
)
from app.services.payment_gateway.retry import query_with_retry
from app.utils.metrics import orders_total, sweep_orders_total

logger = logging.getLogger(__name__)

OPEN_STATUSES = (OrderStatus.PENDING.value, OrderStatus.AWAITING_CONFIRMATION.value)


@dataclass
class InitiateResult:
    order_id: str
    handoff_id: str
    redirect_url: str
    expires_at: datetime


@dataclass
class ReconciliationResult:
    order_id: str
    user_id: str
    status: str
    credits_requested: int
    granted: bool
    balance: int
    transaction_id: str | None = None
    # Present only on the first successful redemption of the handoff.
    access_token: str | None = None
    refresh_token: str | None = None


def new_order_id(now: datetime | None = None) -> str:
    """Gateway-facing out_trade_no: sortable timestamp + 64 random bits."""
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y%m%d%H%M%S}{secrets.token_hex(8)}"


def build_return_url(base_url: str, handoff_id: str, order_id: str) -> str:
    sep = "&" if "?" in base_url else "?"
    return f"{base_url}{sep}{urlencode({'hid': handoff_id, 'out_trade_no': order_id})}"


class PaymentReconciler:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        ledger: CreditLedger | None = None,
        handoffs: SessionHandoffStore | None = None,
        access_gate: AccessGate | None = None,
        query: Callable[[PaymentGateway, str], GatewayQueryResult] | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = ledger or CreditLedger(db)
        self.handoffs = handoffs or SessionHandoffStore(db)
        self.access_gate = access_gate or AccessGate(db)
        self.query = query or query_with_retry

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    def initiate(
        self,
        user_id: str,
        amount_cents: int,
        credits_requested: int,
        access_token: str,
        refresh_token: str,
        now: datetime | None = None,
    ) -> InitiateResult:
        if not self.access_gate.authorize(user_id, PURCHASE):
            raise AccessDenied(user_id, PURCHASE)
        match_package(amount_cents, credits_requested)

        now = now or datetime.now(timezone.utc)
        order = Order(
            id=new_order_id(now),
            user_id=user_id,
            amount_cents=amount_cents,
            credits_requested=credits_requested,
            status=OrderStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            expires_at=now + self.handoffs.ttl,
        )
        try:
            self.db.add(order)
            self.db.flush()
            handoff_id = self.handoffs.create(user_id, access_token, refresh_token, order.id, now=now)
            return_url = build_return_url(settings.payment_return_url, handoff_id, order.id)
            redirect_url = self.gateway.build_payment_url(order, return_url)
            self._transition(order, OrderStatus.AWAITING_CONFIRMATION, now)
            order_id = order.id
            expires_at = order.expires_at
            self.db.commit()
        except GatewayError as e:
            self.db.rollback()
            logger.error(
                "order_initiate_gateway_error",
                extra={"order_id": order.id, "user_id": user_id, "error": str(e)},
            )
            raise GatewayUnavailable(order.id, str(e)) from e
        except Exception:
            self.db.rollback()
            logger.exception("order_initiate_failed", extra={"order_id": order.id, "user_id": user_id})
            raise

        orders_total.labels(event="initiated").inc()
        logger.info(
            "order_initiated",
            extra={
                "order_id": order_id,
                "user_id": user_id,
                "amount": amount_cents,
                "handoff": handoff_ref(handoff_id),
            },
        )
        return InitiateResult(
            order_id=order_id,
            handoff_id=handoff_id,
            redirect_url=redirect_url,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Complete (browser return)
    # ------------------------------------------------------------------

    def complete(self, handoff_id: str, provider_order_ref: str) -> ReconciliationResult:
        """
        Resolve the browser's return from the gateway.

        Fails closed with HandoffNotFound / HandoffExpired before anything else happens.
        Restored tokens are returned only on the first redemption; a repeat call for a
        settled order replays its result with granted=False.
        """
        try:
            redeemed = self.handoffs.redeem(handoff_id)
        except HandoffNotFound:
            # Keeps an undecryptable record consumed.
            self.db.commit()
            replay = self._replay_consumed(handoff_id, provider_order_ref)
            if replay is not None:
                return replay
            raise
        except HandoffExpired:
            self.db.rollback()
            raise

        # The handoff is burnt even when the reference does not match.
        self.db.commit()
        if redeemed.order_id != provider_order_ref:
            logger.error(
                "handoff_order_mismatch",
                extra={
                    "handoff": handoff_ref(handoff_id),
                    "order_id": redeemed.order_id,
                    "reason": f"return carried {provider_order_ref}",
                },
            )
            raise HandoffNotFound("order reference does not match handoff")

        order = self._get_order(redeemed.order_id)
        if order is None:
            logger.error("handoff_order_missing", extra={"order_id": redeemed.order_id})
            raise HandoffNotFound()
        if order.status == OrderStatus.PAID.value:
            return self._result(order, redeemed=redeemed)

        try:
            gateway_result = self.query(self.gateway, order.id)
        except GatewayUnavailable as e:
            # Identity is restored regardless; the order stays open for a later re-check.
            logger.warning(
                "order_confirmation_deferred",
                extra={"order_id": order.id, "user_id": order.user_id, "error": e.reason},
            )
            return self._result(order, redeemed=redeemed)

        order, grant = self._apply_gateway_result(order.id, gateway_result)
        return self._result(order, grant=grant, redeemed=redeemed)

    def _replay_consumed(self, handoff_id: str, provider_order_ref: str) -> ReconciliationResult | None:
        record = self.handoffs.get(handoff_id)
        if record is None or not record.consumed or record.order_id != provider_order_ref:
            return None
        order = self._get_order(record.order_id)
        if order is None or order.status not in (OrderStatus.PAID.value, OrderStatus.FAILED.value):
            return None
        logger.info(
            "order_complete_replayed",
            extra={"order_id": order.id, "handoff": handoff_ref(handoff_id), "status": order.status},
        )
        return self._result(order)

    # ------------------------------------------------------------------
    # Gateway notification (server to server)
    # ------------------------------------------------------------------

    def confirm_from_notification(self, params: dict[str, str]) -> ReconciliationResult:
        """
        Handle the gateway's asynchronous notify call.
        The notification only says which order to re-check; its trade_status is ignored.
        """
        order_id = params.get("out_trade_no") or ""
        if not self.gateway.verify_notification(params):
            logger.warning("payment_notification_rejected", extra={"order_id": order_id, "reason": "signature"})
            raise InvalidNotification("notification signature invalid")

        order = self._get_order(order_id) if order_id else None
        if order is None:
            logger.error("payment_notification_unknown_order", extra={"order_id": order_id})
            raise InvalidNotification(f"unknown order {order_id}")
        if order.status == OrderStatus.PAID.value:
            return self._result(order)

        # Failed and expired orders are re-checked too: a late payment must reach the audit log.
        gateway_result = self.query(self.gateway, order.id)
        order, grant = self._apply_gateway_result(order.id, gateway_result)
        return self._result(order, grant=grant)

    # ------------------------------------------------------------------
    # Owner-facing reads
    # ------------------------------------------------------------------

    def get_order(self, user_id: str, order_id: str) -> Order | None:
        order = self._get_order(order_id)
        if order is None or order.user_id != user_id:
            return None
        return order

    def refresh_order(self, user_id: str, order_id: str) -> Order | None:
        """Owner-scoped re-check of an open order against the gateway. May raise GatewayUnavailable."""
        order = self.get_order(user_id, order_id)
        if order is None or order.status == OrderStatus.PAID.value:
            return order
        gateway_result = self.query(self.gateway, order.id)
        order, _ = self._apply_gateway_result(order.id, gateway_result)
        return order

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def expire_stale(self, now: datetime | None = None, batch_size: int | None = None) -> dict[str, int]:
        """
        Resolve open orders whose handoff has expired.
        Each candidate is re-checked with the gateway first, so a late payment is still credited.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=settings.order_expiry_grace_seconds)
        candidates = [
            order_id
            for (order_id,) in (
                self.db.query(Order.id)
                .filter(
                    Order.status.in_(OPEN_STATUSES),
                    Order.expires_at.isnot(None),
                    Order.expires_at < cutoff,
                )
                .order_by(Order.expires_at)
                .limit(batch_size or settings.sweep_batch_size)
                .all()
            )
        ]
        self.db.rollback()

        counts = {"expired": 0, "paid": 0, "failed": 0, "skipped": 0}
        for order_id in candidates:
            outcome = self._sweep_one(order_id, cutoff, now)
            counts[outcome] += 1
            sweep_orders_total.labels(outcome=outcome).inc()
        return counts

    def _sweep_one(self, order_id: str, cutoff: datetime, now: datetime) -> str:
        try:
            gateway_result = self.query(self.gateway, order_id)
        except GatewayUnavailable as e:
            logger.warning("order_sweep_gateway_unavailable", extra={"order_id": order_id, "error": e.reason})
            return "skipped"

        try:
            if gateway_result.status == GatewayStatus.UNPAID:
                return "expired" if self._expire(order_id, cutoff, now) else "skipped"
            order, _ = self._apply_gateway_result(order_id, gateway_result)
        except LedgerInvariantViolation:
            raise
        except Exception:
            self.db.rollback()
            logger.exception("order_sweep_failed", extra={"order_id": order_id})
            return "skipped"
        if order.status in (OrderStatus.PAID.value, OrderStatus.FAILED.value):
            return order.status
        return "skipped"

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _apply_gateway_result(
        self, order_id: str, gateway_result: GatewayQueryResult
    ) -> tuple[Order, GrantResult | None]:
        if gateway_result.status == GatewayStatus.PAID:
            return self._settle_paid(order_id, gateway_result)
        if gateway_result.status == GatewayStatus.FAILED:
            return self._fail(order_id, f"gateway:{gateway_result.raw_status or 'failed'}"), None
        # unpaid: a client claim of success changes nothing
        logger.info("order_still_unpaid", extra={"order_id": order_id, "status": gateway_result.raw_status})
        return self._get_order(order_id), None

    def _settle_paid(self, order_id: str, gateway_result: GatewayQueryResult) -> tuple[Order, GrantResult | None]:
        """Lock the order, grant once, mark paid, commit. The gateway was queried before the lock."""
        now = datetime.now(timezone.utc)
        try:
            order = self._lock_order(order_id)
            if order.status in (OrderStatus.FAILED.value, OrderStatus.EXPIRED.value):
                self.db.rollback()
                logger.error(
                    "payment_for_closed_order",
                    extra={
                        "order_id": order_id,
                        "user_id": order.user_id,
                        "status": order.status,
                        "reason": "gateway reports paid; manual refund or credit needed",
                    },
                )
                return self._get_order(order_id), None

            if (
                order.status != OrderStatus.PAID.value
                and gateway_result.total_amount_cents is not None
                and gateway_result.total_amount_cents != order.amount_cents
            ):
                order.failure_reason = "amount_mismatch"
                self._transition(order, OrderStatus.FAILED, now)
                self.db.commit()
                orders_total.labels(event="amount_mismatch").inc()
                logger.error(
                    "payment_amount_mismatch",
                    extra={
                        "order_id": order_id,
                        "user_id": order.user_id,
                        "amount": gateway_result.total_amount_cents,
                        "reason": f"expected {order.amount_cents}",
                    },
                )
                return order, None

            grant = self.ledger.grant(
                order.user_id,
                order.credits_requested,
                f"Credit purchase {order.id}",
                order.id,
            )
            if order.status != OrderStatus.PAID.value:
                order.provider_trade_no = gateway_result.provider_trade_no
                order.confirmed_at = now
                self._transition(order, OrderStatus.PAID, now)
                orders_total.labels(event="paid").inc()
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("order_settle_failed", extra={"order_id": order_id})
            raise

        logger.info(
            "order_paid",
            extra={
                "order_id": order_id,
                "user_id": order.user_id,
                "amount": order.credits_requested,
                "balance": grant.balance,
                "transaction_id": grant.transaction_id,
                "status": "granted" if grant.granted else "replayed",
            },
        )
        return order, grant

    def _fail(self, order_id: str, reason: str) -> Order:
        now = datetime.now(timezone.utc)
        try:
            order = self._lock_order(order_id)
            if order.status == OrderStatus.PAID.value:
                self.db.rollback()
                logger.error(
                    "gateway_failed_for_paid_order",
                    extra={"order_id": order_id, "user_id": order.user_id, "reason": reason},
                )
                return self._get_order(order_id)
            if order.is_terminal():
                self.db.rollback()
                return self._get_order(order_id)
            order.failure_reason = reason
            self._transition(order, OrderStatus.FAILED, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("order_fail_failed", extra={"order_id": order_id})
            raise
        orders_total.labels(event="failed").inc()
        logger.warning("order_failed", extra={"order_id": order_id, "user_id": order.user_id, "reason": reason})
        return order

    def _expire(self, order_id: str, cutoff: datetime, now: datetime) -> bool:
        """Conditional UPDATE: loses cleanly to a concurrent settle holding the row lock."""
        try:
            result = self.db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status.in_(OPEN_STATUSES),
                    Order.expires_at < cutoff,
                )
                .values(
                    status=OrderStatus.EXPIRED.value,
                    failure_reason="handoff_expired",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if result.rowcount:
            orders_total.labels(event="expired").inc()
            logger.info("order_expired", extra={"order_id": order_id})
            return True
        return False

    def _transition(self, order: Order, new_status: OrderStatus, now: datetime) -> None:
        current = OrderStatus(order.status)
        if current == new_status:
            return
        allowed = ALLOWED_TRANSITIONS.get(current)
        if allowed is None:
            raise OrderAlreadyTerminal(order.id, current.value)
        if new_status not in allowed:
            raise ValueError(f"illegal order transition {current.value} -> {new_status.value}")
        order.status = new_status.value
        order.updated_at = now
        self.db.flush()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_order(self, order_id: str) -> Order | None:
        return (
            self.db.query(Order)
            .filter(Order.id == order_id)
            .populate_existing()
            .one_or_none()
        )

    def _lock_order(self, order_id: str) -> Order:
        order = (
            self.db.query(Order)
            .filter(Order.id == order_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if order is None:
            raise LedgerInvariantViolation(f"order {order_id} disappeared")
        return order

    def _result(
        self,
        order: Order,
        grant: GrantResult | None = None,
        redeemed: RedeemedHandoff | None = None,
    ) -> ReconciliationResult:
        if grant is not None:
            balance = grant.balance
            transaction_id = grant.transaction_id
        else:
            balance = self.ledger.balance(order.user_id)
            existing = self.ledger.find_grant(order.id)
            transaction_id = existing.id if existing is not None else None
        return ReconciliationResult(
            order_id=order.id,
            user_id=order.user_id,
            status=order.status,
            credits_requested=order.credits_requested,
            granted=bool(grant is not None and grant.granted),
            balance=balance,
            transaction_id=transaction_id,
            access_token=redeemed.access_token if redeemed else None,
            refresh_token=redeemed.refresh_token if redeemed else None,
        )
