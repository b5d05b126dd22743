"""
AccessGate — role/permission check over the application's profiles table.
Unknown, banned or currently suspended users are denied everything.
"""
import logging

from sqlalchemy.orm import Session

from app.models.profile import Profile

logger = logging.getLogger(__name__)

PURCHASE = "credits.purchase"
CONSUME = "credits.consume"
VIEW = "credits.view"

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "user": frozenset({PURCHASE, CONSUME, VIEW}),
    "agent": frozenset({PURCHASE, CONSUME, VIEW}),
    "admin": frozenset({PURCHASE, CONSUME, VIEW}),
    "reviewer": frozenset({VIEW}),
}


class AccessGate:
    def __init__(self, db: Session):
        self.db = db

    def authorize(self, user_id: str, action: str) -> bool:
        profile = self.db.query(Profile).filter(Profile.id == user_id).one_or_none()
        if profile is None:
            logger.info("access_denied", extra={"user_id": user_id, "reason": "unknown_user"})
            return False
        if profile.is_access_blocked():
            logger.info("access_denied", extra={"user_id": user_id, "reason": "blocked"})
            return False
        allowed = action in ROLE_PERMISSIONS.get(profile.user_role or "", frozenset())
        if not allowed:
            logger.info(
                "access_denied",
                extra={"user_id": user_id, "reason": f"role:{profile.user_role}", "action": action},
            )
        return allowed
