"""
Profile — owned by the surrounding application (sign-up, admin console).
Read here only by AccessGate.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String

from app.db.base import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)  # user id
    user_role = Column(String, nullable=False, default="user")  # user / agent / admin / reviewer
    is_banned = Column(Boolean, nullable=False, default=False)
    is_suspended = Column(Boolean, nullable=False, default=False)
    suspended_until = Column(DateTime(timezone=True), nullable=True)

    def is_access_blocked(self, now: datetime | None = None) -> bool:
        """Check if user access is blocked (banned or suspended)."""
        if self.is_banned:
            return True
        if self.is_suspended and self.suspended_until:
            now = now or datetime.now(timezone.utc)
            until = self.suspended_until
            if until.tzinfo is None:
                until = until.replace(tzinfo=timezone.utc)
            return now < until
        return bool(self.is_suspended)
