from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import get_gateway
from app.core.config import settings
from app.db.session import get_db
from app.services.payment_gateway.base import PaymentGateway


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(
    response: Response,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Readiness probe - 503 if the database or Redis is unreachable."""
    checks = {"database": "ok", "redis": "ok", "payment_gateway": "ok"}
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        checks["database"] = f"error: {type(e).__name__}"
    try:
        redis.Redis.from_url(settings.redis_url, decode_responses=True).ping()
    except redis.RedisError as e:
        checks["redis"] = f"error: {type(e).__name__}"
    if not gateway.is_available():
        # Not fatal: balance and consume keep working without a configured gateway.
        checks["payment_gateway"] = "not_configured"

    if checks["database"] != "ok" or checks["redis"] != "ok":
        response.status_code = 503
        return {"status": "not_ready", "checks": checks}
    return {"status": "ready", "checks": checks}
