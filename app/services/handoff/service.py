"""
SessionHandoffStore — one-time, short-TTL records that restore a client's identity
after the browser comes back from the payment gateway.

Only the opaque handoff_id ever leaves the server. Redemption is a single
compare-and-set on `consumed`; tokens are scrubbed in the same statement.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import HandoffExpired, HandoffNotFound
from app.core.logging import handoff_ref
from app.models.session_handoff import SessionHandoff
from app.services.handoff.crypto import InvalidToken, TokenCipher
from app.utils.metrics import handoff_redemptions_total

logger = logging.getLogger(__name__)


@dataclass
class RedeemedHandoff:
    user_id: str
    access_token: str
    refresh_token: str
    order_id: str


class SessionHandoffStore:
    def __init__(self, db: Session, cipher: TokenCipher | None = None, ttl_seconds: int | None = None):
        self.db = db
        self.cipher = cipher or TokenCipher()
        self.ttl = timedelta(seconds=ttl_seconds or settings.handoff_ttl_seconds)

    def create(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        order_id: str,
        now: datetime | None = None,
    ) -> str:
        """Store an encrypted handoff record and return its id. Flushes, caller commits."""
        now = now or datetime.now(timezone.utc)
        record = SessionHandoff(
            handoff_id=secrets.token_urlsafe(32),
            user_id=user_id,
            order_id=order_id,
            access_token=self.cipher.encrypt(access_token),
            refresh_token=self.cipher.encrypt(refresh_token),
            created_at=now,
            expires_at=now + self.ttl,
            consumed=False,
        )
        self.db.add(record)
        self.db.flush()
        logger.info(
            "handoff_created",
            extra={"handoff": handoff_ref(record.handoff_id), "order_id": order_id, "user_id": user_id},
        )
        return record.handoff_id

    def get(self, handoff_id: str) -> SessionHandoff | None:
        """Peek at a record without redeeming it. Callers must not read the token columns."""
        if not handoff_id:
            return None
        return (
            self.db.query(SessionHandoff)
            .filter(SessionHandoff.handoff_id == handoff_id)
            .populate_existing()
            .one_or_none()
        )

    def redeem(self, handoff_id: str, now: datetime | None = None) -> RedeemedHandoff:
        """
        Consume the record exactly once and return the stored identity.

        Raises HandoffNotFound if the id is unknown or already consumed,
        HandoffExpired if the TTL has passed. Flushes, caller commits.
        """
        now = now or datetime.now(timezone.utc)
        record = self.get(handoff_id)
        if record is None or record.consumed:
            self._reject("not_found", handoff_id)
            raise HandoffNotFound()

        # Ciphertexts are read before the CAS scrubs them from the row.
        user_id = record.user_id
        order_id = record.order_id
        access_ct = record.access_token
        refresh_ct = record.refresh_token

        result = self.db.execute(
            update(SessionHandoff)
            .where(
                SessionHandoff.handoff_id == handoff_id,
                SessionHandoff.consumed.is_(False),
                SessionHandoff.expires_at > now,
            )
            .values(consumed=True, consumed_at=now, access_token=None, refresh_token=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.get(handoff_id)
            if current is None or current.consumed:
                self._reject("not_found", handoff_id)
                raise HandoffNotFound()
            self._reject("expired", handoff_id, order_id)
            raise HandoffExpired()
        self.db.flush()

        if not access_ct or not refresh_ct:
            self._reject("undecryptable", handoff_id, order_id)
            raise HandoffNotFound()
        try:
            access_token = self.cipher.decrypt(access_ct)
            refresh_token = self.cipher.decrypt(refresh_ct)
        except InvalidToken:
            self._reject("undecryptable", handoff_id, order_id)
            raise HandoffNotFound() from None

        handoff_redemptions_total.labels(outcome="ok").inc()
        logger.info(
            "handoff_redeemed",
            extra={"handoff": handoff_ref(handoff_id), "order_id": order_id, "user_id": user_id},
        )
        return RedeemedHandoff(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            order_id=order_id,
        )

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records past expiry plus the retention window, consumed or not."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=settings.handoff_retention_hours)
        result = self.db.execute(
            delete(SessionHandoff)
            .where(SessionHandoff.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        return result.rowcount or 0

    def _reject(self, outcome: str, handoff_id: str, order_id: str | None = None) -> None:
        handoff_redemptions_total.labels(outcome=outcome).inc()
        logger.warning(
            "handoff_redeem_rejected",
            extra={"handoff": handoff_ref(handoff_id), "order_id": order_id, "reason": outcome},
        )
