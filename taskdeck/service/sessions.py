from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from taskdeck.logging import get_logger
from taskdeck.storage.models import Session, utcnow

logger = get_logger(__name__)


@dataclass
class NewSession:
    session_id: int
    session_token: str
    refresh_token: str
    session: Session


class SessionManager:
    """Server-side sessions bound to opaque refresh secrets.

    The stored refresh secret is looked up directly, so revoking a row stops
    both refresh and any access token that names the session, independent of
    signed-token expiry.
    """

    def __init__(self, store, *, ttl_days: int = 7) -> None:
        self.store = store
        self.ttl_days = ttl_days

    def create(
        self,
        user_id: int,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> NewSession:
        session_token, refresh_token = Session.new_secrets()
        sess = self.store.create_session(
            user_id=user_id,
            session_token=session_token,
            refresh_token=refresh_token,
            expires_at=Session.expiry_from(utcnow(), self.ttl_days),
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("session_created", user_id=user_id, session_id=sess.id)
        return NewSession(
            session_id=sess.id,
            session_token=session_token,
            refresh_token=refresh_token,
            session=sess,
        )

    def get_active_by_id(self, session_id: int) -> Optional[Session]:
        sess = self.store.get_active_session(session_id)
        if sess is None or not sess.is_usable():
            return None
        return sess

    def get_active_by_refresh_token(self, refresh_secret: str) -> Optional[Session]:
        if not refresh_secret:
            return None
        sess = self.store.get_active_session_by_refresh(refresh_secret)
        if sess is None or not sess.is_usable():
            return None
        return sess

    def revoke(self, session_id: int) -> None:
        self.store.update_session(session_id, is_active=False)
        logger.info("session_revoked", session_id=session_id)

    def revoke_all_for_user(
        self, user_id: int, *, except_session_id: Optional[int] = None
    ) -> int:
        revoked = self.store.deactivate_user_sessions(
            user_id, except_session_id=except_session_id
        )
        logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked
