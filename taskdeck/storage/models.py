from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Role:
    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class User:
    id: int
    email: str
    password_hash: str
    first_name: str
    last_name: str
    role_id: int
    is_active: bool = True
    is_email_verified: bool = False
    profile_picture: Optional[str] = None
    last_login: Optional[datetime] = None
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    # joined role row; stores attach it on every read
    role: Optional[Role] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Session:
    """Server-side login record; usable only while active and unexpired."""

    id: int
    user_id: int
    session_token: str
    refresh_token: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        moment = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return self.is_active and moment < expires_at

    @staticmethod
    def new_secrets() -> tuple[str, str]:
        """Return a fresh (session_token, refresh_token) pair of 256-bit hex strings."""
        return secrets.token_hex(32), secrets.token_hex(32)

    @staticmethod
    def expiry_from(now: datetime, ttl_days: int) -> datetime:
        return now + timedelta(days=ttl_days)
