"""
Shared fixtures: settings env, per-test SQLite file database, fake payment gateway.
Env must be populated before anything imports app.core.config.
"""
import os
from datetime import datetime, timezone
from functools import partial

import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-0123456789abcdef")
os.environ.setdefault("HANDOFF_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("PAYMENT_GATEWAY_RETRY_BACKOFF_SECONDS", "0")

from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.db.base import Base  # noqa: E402
from app.models import credit_account, credit_transaction, order, profile, session_handoff  # noqa: E402,F401
from app.models.profile import Profile  # noqa: E402
from app.services.payment_gateway.base import (  # noqa: E402
    GatewayQueryResult,
    GatewayStatus,
    PaymentGateway,
)
from app.services.payment_gateway.retry import query_with_retry  # noqa: E402
from app.services.payments.reconciler import PaymentReconciler  # noqa: E402


class FakeGateway(PaymentGateway):
    """In-memory gateway: tests set per-order outcomes (status, result, or exception)."""

    name = "fake"

    def __init__(self):
        super().__init__({})
        self.outcomes = {}
        self.queries = []

    def is_available(self) -> bool:
        return True

    def build_payment_url(self, order, return_url: str) -> str:
        return f"https://gateway.test/pay?out_trade_no={order.id}"

    def query_status(self, order_id: str) -> GatewayQueryResult:
        self.queries.append(order_id)
        outcome = self.outcomes.get(order_id, GatewayStatus.UNPAID)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, GatewayQueryResult):
            return outcome
        return GatewayQueryResult(order_id=order_id, status=outcome)

    def verify_notification(self, params: dict) -> bool:
        return params.get("sign") == "valid"

    def pay(self, order_id: str, amount_cents: int | None = 1000) -> None:
        self.outcomes[order_id] = GatewayQueryResult(
            order_id=order_id,
            status=GatewayStatus.PAID,
            provider_trade_no=f"T{order_id}",
            total_amount_cents=amount_cents,
            raw_status="TRADE_SUCCESS",
        )


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def locking_session_factory(tmp_path):
    """
    File database shared by worker threads. Every transaction starts with BEGIN IMMEDIATE,
    so concurrent writers queue on the busy timeout instead of failing with "database is locked".
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_profile(db):
    def _make(user_id: str, role: str = "user", **kwargs) -> Profile:
        profile = Profile(id=user_id, user_role=role, **kwargs)
        db.add(profile)
        db.commit()
        return profile
    return _make


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_reconciler(gateway):
    def _make(session) -> PaymentReconciler:
        return PaymentReconciler(session, gateway, query=partial(query_with_retry, sleep=lambda _: None))
    return _make


@pytest.fixture
def utcnow():
    return datetime.now(timezone.utc)
