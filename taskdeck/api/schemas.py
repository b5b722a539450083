from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from taskdeck.storage.models import Role, User

# Maximum permissions accepted in one role payload
MAX_ROLE_PERMISSIONS = 200

# Zero-width characters plus the bidi embedding, override and isolate controls
_INVISIBLE = frozenset(
    "\u200b\u200c\u200d\ufeff"
    + "".join(map(chr, range(0x202A, 0x202F)))
    + "".join(map(chr, range(0x2066, 0x206A)))
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping invisible formatting characters."""
    return unicodedata.normalize("NFKC", "".join(c for c in value if c not in _INVISIBLE))


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    errors: Optional[List[str]] = None
    code: Optional[str] = None


def envelope(
    success: bool,
    *,
    data: Any = None,
    message: Optional[str] = None,
    errors: Optional[List[str]] = None,
    code: Optional[str] = None,
) -> dict:
    body = Envelope(
        success=success, data=data, message=message, errors=errors, code=code
    ).model_dump(mode="json")
    # unset top-level keys are omitted; None values inside data are kept
    return {key: value for key, value in body.items() if value is not None}


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    return envelope(True, data=data, message=message)


_LOCAL_PART = re.compile(r"[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_DOMAIN = re.compile(
    r"(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
)
_MAX_EMAIL_LENGTH = 254
PASSWORD_LENGTH = (8, 128)


def _validate_email(value: Any) -> str:
    """Lowercase and normalize an address, then check its local part and domain."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    address = _normalize_unicode(value.strip().lower())
    if len(address) > _MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    local, _, domain = address.rpartition("@")
    if not (_LOCAL_PART.fullmatch(local) and _DOMAIN.fullmatch(domain)):
        raise ValueError("please provide a valid email")
    return address


def _validate_password_strength(value: str) -> str:
    shortest, longest = PASSWORD_LENGTH
    if len(value) < shortest:
        raise ValueError(f"password must be at least {shortest} characters")
    if len(value) > longest:
        raise ValueError(f"password must be at most {longest} characters")
    return value


def _validate_person_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not 2 <= len(cleaned) <= 50:
        raise ValueError("must be between 2 and 50 characters")
    return cleaned


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    role_id: Optional[int] = Field(default=None, ge=1)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_person_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    device_info: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    display_name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: List[str] = Field(default_factory=list, max_length=MAX_ROLE_PERMISSIONS)

    @field_validator("name")
    @classmethod
    def _validate_role_name(cls, value: str) -> str:
        if not re.match(r"^[a-z_]+$", value):
            raise ValueError("role name can only contain lowercase letters and underscores")
        return value


class RoleUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[List[str]] = Field(default=None, max_length=MAX_ROLE_PERMISSIONS)
    is_active: Optional[bool] = None


class UserStatusRequest(BaseModel):
    """Explicit target state; omitted means flip the current one."""

    is_active: Optional[bool] = None


class RoleSummary(BaseModel):
    id: int
    name: str
    display_name: str
    permissions: List[str] = Field(default_factory=list)


class RoleResponse(RoleSummary):
    description: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            permissions=list(role.permissions),
            is_active=role.is_active,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    is_active: bool
    is_email_verified: bool
    last_login: Optional[datetime] = None
    role: Optional[RoleSummary] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        role = None
        if user.role is not None:
            role = RoleSummary(
                id=user.role.id,
                name=user.role.name,
                display_name=user.role.display_name,
                permissions=list(user.role.permissions),
            )
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            last_login=user.last_login,
            role=role,
            created_at=user.created_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class LoginResponse(TokenResponse):
    user: UserResponse
    refresh_jwt: str


class VerifyTokenResponse(BaseModel):
    valid: bool
    user: UserResponse
    expires_in: int
