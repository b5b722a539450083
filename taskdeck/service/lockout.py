from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from taskdeck.logging import get_logger
from taskdeck.storage.models import User, utcnow

logger = get_logger(__name__)


class LoginAttemptGuard:
    """Consecutive-failure lockout kept on the user row.

    ``Unlocked(n)`` moves to ``Locked(until)`` when the n-th consecutive
    failure reaches ``max_attempts``; the attempt count is reset to 0 as part
    of that transition. A lock lapses on its own once ``locked_until`` passes.
    """

    def __init__(self, store, *, max_attempts: int = 5, lockout_minutes: int = 15) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout = timedelta(minutes=lockout_minutes)

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        until = user.locked_until
        if until is None:
            return False
        if until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)
        return until > (now or utcnow())

    def record_failure(self, user: User) -> bool:
        """Count one failed password check; return True when it locks the account."""
        self.store.increment_login_attempts(user.id)
        # concurrent failures may interleave with the increment, so the
        # post-increment count is read back rather than assumed
        current = self.store.get_user(user.id)
        attempts = current.login_attempts if current else user.login_attempts + 1
        if attempts < self.max_attempts:
            logger.info("login_attempt_failed", user_id=user.id, attempts=attempts)
            return False
        until = utcnow() + self.lockout
        self.store.update_user(user.id, login_attempts=0, locked_until=until)
        logger.warning(
            "account_locked",
            user_id=user.id,
            attempts=attempts,
            lockout_seconds=int(self.lockout.total_seconds()),
        )
        return True

    def record_success(self, user: User) -> Optional[User]:
        return self.store.update_user(
            user.id, login_attempts=0, locked_until=None, last_login=utcnow()
        )
