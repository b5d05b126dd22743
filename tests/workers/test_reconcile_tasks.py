from datetime import timedelta
from unittest.mock import patch

import pytest

from app.models.order import Order
from app.models.session_handoff import SessionHandoff
from app.services.handoff.service import SessionHandoffStore
from app.workers.tasks import reconcile


@pytest.fixture
def task_env(session_factory, gateway):
    with patch.object(reconcile, "SessionLocal", session_factory), \
            patch.object(reconcile, "get_payment_gateway", return_value=gateway):
        yield


class TestExpireStaleOrdersTask:
    def test_expires_abandoned_order(self, task_env, db, make_profile, make_reconciler, utcnow):
        make_profile("u1")
        started = make_reconciler(db).initiate(
            "u1", 1000, 100, "access-1", "refresh-1", now=utcnow - timedelta(minutes=30)
        )

        result = reconcile.expire_stale_orders()

        assert result == {"ok": True, "expired": 1, "paid": 0, "failed": 0, "skipped": 0}
        order = db.query(Order).filter(Order.id == started.order_id).populate_existing().one()
        assert order.status == "expired"

    def test_nothing_to_do(self, task_env):
        assert reconcile.expire_stale_orders() == {"ok": True, "expired": 0, "paid": 0, "failed": 0, "skipped": 0}

    def test_error_reported(self, task_env):
        with patch.object(reconcile.PaymentReconciler, "expire_stale", side_effect=RuntimeError("boom")):
            assert reconcile.expire_stale_orders() == {"ok": False}


class TestPurgeExpiredHandoffsTask:
    def test_purges_past_retention(self, task_env, db, utcnow):
        store = SessionHandoffStore(db)
        old = store.create("u1", "a", "r", "O-old", now=utcnow - timedelta(days=2))
        fresh = store.create("u1", "a", "r", "O-new", now=utcnow)
        db.commit()

        assert reconcile.purge_expired_handoffs() == {"ok": True, "deleted": 1}

        remaining = {h.handoff_id for h in db.query(SessionHandoff).populate_existing().all()}
        assert remaining == {fresh}
        assert old not in remaining
