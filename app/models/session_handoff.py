"""
SessionHandoff — single-use, short-TTL record that restores a client's identity
after the round trip through the payment gateway. Only handoff_id travels in URLs;
tokens are stored encrypted and scrubbed once redeemed.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String, Text

from app.db.base import Base


class SessionHandoff(Base):
    __tablename__ = "session_handoffs"

    handoff_id = Column(String(64), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    order_id = Column(String(64), nullable=False, unique=True)
    access_token = Column(Text, nullable=True)    # Fernet ciphertext, NULL after redemption
    refresh_token = Column(Text, nullable=True)   # Fernet ciphertext, NULL after redemption
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
