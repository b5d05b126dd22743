"""
Celery beat tasks for payment reconciliation:
- expire_stale_orders: re-check open orders whose handoff ran out (late payments still settle)
- purge_expired_handoffs: drop handoff records past the retention window
"""
import logging

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.handoff.service import SessionHandoffStore
from app.services.payment_gateway.factory import get_payment_gateway
from app.services.payments.reconciler import PaymentReconciler

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.workers.tasks.reconcile.expire_stale_orders",
    time_limit=240,
    soft_time_limit=220,
)
def expire_stale_orders() -> dict:
    """Sweep awaiting_confirmation orders past their handoff TTL."""
    db = SessionLocal()
    try:
        counts = PaymentReconciler(db, get_payment_gateway()).expire_stale()
        if any(counts.values()):
            logger.info("expire_stale_orders_done", extra={"counts": counts})
        return {"ok": True, **counts}
    except Exception:
        logger.exception("expire_stale_orders_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(
    name="app.workers.tasks.reconcile.purge_expired_handoffs",
    time_limit=60,
    soft_time_limit=55,
)
def purge_expired_handoffs() -> dict:
    db = SessionLocal()
    try:
        deleted = SessionHandoffStore(db).purge_expired()
        db.commit()
        if deleted:
            logger.info("purge_expired_handoffs_done", extra={"counts": {"deleted": deleted}})
        return {"ok": True, "deleted": deleted}
    except Exception:
        logger.exception("purge_expired_handoffs_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()
