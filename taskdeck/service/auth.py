from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Protocol

from taskdeck.config import Settings
from taskdeck.logging import get_logger
from taskdeck.service.errors import (
    AccountLockedError,
    DuplicateEntryError,
    InvalidCredentialsError,
    PermissionDeniedError,
    RefreshTokenInvalidError,
    ResourceNotFoundError,
    ServiceError,
    TokenInvalidError,
    ValidationError,
    service_boundary,
)
from taskdeck.service.lockout import LoginAttemptGuard
from taskdeck.service.passwords import PasswordHasher
from taskdeck.service.permissions import Identity
from taskdeck.service.sessions import SessionManager
from taskdeck.service.tokens import TokenCodec, TokenPayload
from taskdeck.storage.models import Role, Session, User, utcnow

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def create_user(
        self,
        *,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        role_id: int,
        is_active: bool = True,
        is_email_verified: bool = False,
    ) -> User: ...

    def update_user(self, user_id: int, **changes: Any) -> Optional[User]: ...

    def increment_login_attempts(self, user_id: int) -> int: ...

    def list_users_by_role(self, role_id: int) -> List[User]: ...

    def count_users_with_role(self, role_id: int) -> int: ...

    def get_role(self, role_id: int) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self, include_inactive: bool = False) -> List[Role]: ...

    def create_role(
        self,
        *,
        name: str,
        display_name: str,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
    ) -> Role: ...

    def update_role(self, role_id: int, **changes: Any) -> Optional[Role]: ...

    def delete_role(self, role_id: int) -> bool: ...

    def create_session(
        self,
        *,
        user_id: int,
        session_token: str,
        refresh_token: str,
        expires_at: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session: ...

    def get_active_session(self, session_id: int) -> Optional[Session]: ...

    def get_active_session_by_refresh(self, refresh_token: str) -> Optional[Session]: ...

    def update_session(self, session_id: int, **changes: Any) -> Optional[Session]: ...

    def deactivate_user_sessions(
        self, user_id: int, *, except_session_id: Optional[int] = None
    ) -> int: ...

    def transaction(self) -> AbstractContextManager: ...

    def verify_connection(self) -> None: ...


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class LoginResult:
    """Successful login: the user, its new session and the issued credentials.

    ``tokens.refresh_token`` is the opaque session secret accepted by
    ``refresh``; ``refresh_jwt`` is the signed refresh token, which never
    carries permissions.
    """

    user: User
    session: Session
    tokens: TokenBundle
    refresh_jwt: str


class AuthService:
    """Registration, login, refresh, logout and request authentication."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        codec: Optional[TokenCodec] = None,
        sessions: Optional[SessionManager] = None,
        guard: Optional[LoginAttemptGuard] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.production = settings.is_production
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.codec = codec or TokenCodec(settings)
        self.sessions = sessions or SessionManager(
            store, ttl_days=settings.session_ttl_days
        )
        self.guard = guard or LoginAttemptGuard(
            store,
            max_attempts=settings.max_login_attempts,
            lockout_minutes=settings.lockout_minutes,
        )
        self.logger = logger

    @service_boundary
    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role_id: Optional[int] = None,
    ) -> User:
        if not self.settings.allow_registration:
            raise PermissionDeniedError("registration is disabled")
        if self.store.get_user_by_email(email):
            raise DuplicateEntryError(
                "user with this email already exists", detail={"field": "email"}
            )
        if role_id is None:
            role = self.store.get_role_by_name(self.settings.default_role)
        else:
            role = self.store.get_role(role_id)
        if not role or not role.is_active:
            raise ValidationError(
                "invalid role", errors=["role_id: role does not exist or is inactive"]
            )
        user = self.store.create_user(
            email=email,
            password_hash=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            role_id=role.id,
        )
        self.logger.info("user_registered", user_id=user.id, role=role.name)
        return user

    @service_boundary
    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError("invalid email or password")
        # locked accounts fail before any password comparison
        if self.guard.is_locked(user):
            self.logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(
                "account is temporarily locked due to too many failed login attempts"
            )
        if not user.is_active:
            self.logger.info("login_rejected_disabled", user_id=user.id)
            raise AccountLockedError("account disabled", status_code=401)

        if not self.hasher.verify(password, user.password_hash):
            if self.guard.record_failure(user):
                raise AccountLockedError(
                    "account is temporarily locked due to too many failed login attempts"
                )
            raise InvalidCredentialsError("invalid email or password")

        role = user.role
        if not role or not role.is_active:
            self.logger.warning("login_rejected_role_inactive", user_id=user.id)
            raise AccountLockedError("account role is disabled", status_code=401)

        user = self.guard.record_success(user) or user
        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.hasher.hash(password))

        new_session = self.sessions.create(
            user.id,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        payload = TokenPayload(
            user_id=user.id,
            email=user.email,
            role=role.name,
            session_id=new_session.session_id,
            permissions=list(role.permissions),
        )
        tokens = TokenBundle(
            access_token=self.codec.issue_access_token(payload),
            refresh_token=new_session.refresh_token,
            expires_in=self.codec.access_expires_in,
        )
        self.logger.info(
            "login_succeeded", user_id=user.id, session_id=new_session.session_id
        )
        return LoginResult(
            user=user,
            session=new_session.session,
            tokens=tokens,
            refresh_jwt=self.codec.issue_refresh_token(payload),
        )

    @service_boundary
    async def refresh(self, refresh_secret: str) -> TokenBundle:
        sess = self.sessions.get_active_by_refresh_token(refresh_secret)
        if not sess:
            self.logger.info("refresh_rejected", reason="session_not_found")
            raise RefreshTokenInvalidError("invalid or expired refresh token")
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            self.logger.info(
                "refresh_rejected", reason="user_inactive", session_id=sess.id
            )
            raise TokenInvalidError("user not found or inactive")
        role = user.role
        if not role or not role.is_active:
            raise PermissionDeniedError("role is inactive")
        # live role permissions, not the snapshot from login
        payload = TokenPayload(
            user_id=user.id,
            email=user.email,
            role=role.name,
            session_id=sess.id,
            permissions=list(role.permissions),
        )
        return TokenBundle(
            access_token=self.codec.issue_access_token(payload),
            refresh_token=refresh_secret,
            expires_in=self.codec.access_expires_in,
        )

    @service_boundary
    async def authenticate(self, authorization: Optional[str]) -> Identity:
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenInvalidError("access token required")
        payload = self.codec.verify_access_token(token)
        sess = self.sessions.get_active_by_id(payload.session_id)
        if not sess or sess.user_id != payload.user_id:
            raise TokenInvalidError("invalid or expired session")
        user = self.store.get_user(payload.user_id)
        if not user:
            raise TokenInvalidError("user not found")
        if not user.is_active:
            raise AccountLockedError("account disabled", status_code=401)
        role = user.role
        if not role or not role.is_active:
            raise PermissionDeniedError("role is inactive")
        permissions = list(role.permissions)
        if not permissions:
            # empty live set falls back to the issuance snapshot
            permissions = list(payload.permissions or [])
        return Identity(user=user, role=role, session=sess, permissions=permissions)

    async def authenticate_optional(
        self, authorization: Optional[str]
    ) -> Optional[Identity]:
        if not authorization:
            return None
        try:
            return await self.authenticate(authorization)
        except ServiceError as exc:
            self.logger.debug("optional_auth_ignored", error_code=exc.error_code)
            return None

    @service_boundary
    async def logout(self, session_id: int) -> None:
        self.sessions.revoke(session_id)

    @service_boundary
    async def logout_all(self, user_id: int) -> int:
        return self.sessions.revoke_all_for_user(user_id)

    @service_boundary
    async def get_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise ResourceNotFoundError("user not found")
        return user

    @service_boundary
    async def set_user_active(self, user_id: int, active: bool) -> User:
        if not self.store.get_user(user_id):
            raise ResourceNotFoundError("user not found")
        revoked = 0
        with self.store.transaction():
            user = self.store.update_user(user_id, is_active=active)
            if not active:
                revoked = self.store.deactivate_user_sessions(user_id)
        self.logger.info(
            "user_status_changed", user_id=user_id, active=active, revoked=revoked
        )
        return user

    @service_boundary
    async def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[int] = None,
    ) -> int:
        user = self.store.get_user(user_id)
        if not user:
            raise ResourceNotFoundError("user not found")
        if not self.hasher.verify(current_password, user.password_hash):
            raise InvalidCredentialsError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                errors=["new_password: must differ from the current password"],
            )
        with self.store.transaction():
            self.store.update_user(user_id, password_hash=self.hasher.hash(new_password))
            revoked = self.store.deactivate_user_sessions(
                user_id, except_session_id=keep_session_id
            )
        self.logger.info("password_changed", user_id=user_id, revoked=revoked)
        return revoked

    async def verify_token(self, identity: Identity) -> dict:
        remaining = identity.session.expires_at - utcnow()
        return {
            "valid": True,
            "user": identity.user,
            "expires_in": max(0, int(remaining.total_seconds())),
        }

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()
