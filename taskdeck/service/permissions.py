from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from taskdeck.logging import get_logger
from taskdeck.service.errors import PermissionDeniedError, ResourceNotFoundError
from taskdeck.storage.models import Role, Session, User

logger = get_logger(__name__)

WILDCARD = "*"

PERMISSIONS = {
    "users": ["users.view", "users.create", "users.edit", "users.delete", "users.manage"],
    "roles": ["roles.view", "roles.create", "roles.edit", "roles.delete", "roles.manage"],
    "tasks": [
        "tasks.view",
        "tasks.create",
        "tasks.edit",
        "tasks.edit.own",
        "tasks.delete",
        "tasks.delete.own",
        "tasks.assign",
        "tasks.manage",
    ],
    "lists": [
        "lists.view",
        "lists.create",
        "lists.edit",
        "lists.edit.own",
        "lists.delete",
        "lists.delete.own",
        "lists.share",
    ],
    "calendar": [
        "calendar.view",
        "calendar.create",
        "calendar.edit",
        "calendar.delete",
        "calendar.manage",
        "calendar.global",
    ],
    "comments": [
        "comments.view",
        "comments.create",
        "comments.edit",
        "comments.edit.own",
        "comments.delete",
        "comments.delete.own",
    ],
    "system": ["system.config", "system.logs", "system.backup", "system.maintenance"],
    "reports": ["reports.view", "reports.create", "reports.export"],
    "files": ["files.upload", "files.delete"],
    "profile": ["profile.edit", "profile.view"],
    "wildcard": [WILDCARD],
}

ALL_PERMISSIONS = frozenset(p for group in PERMISSIONS.values() for p in group)

# Built-in roles in id order; ids 1..4 are assigned by seeding
DEFAULT_ROLES = [
    {
        "name": "super_admin",
        "display_name": "Super Administrator",
        "description": "Full system access",
        "permissions": [WILDCARD],
    },
    {
        "name": "admin",
        "display_name": "Administrator",
        "description": "Manages users, roles and system configuration",
        "permissions": ["users.manage", "roles.manage", "system.config", "reports.view"],
    },
    {
        "name": "manager",
        "display_name": "Manager",
        "description": "Manages tasks and team calendars",
        "permissions": ["tasks.manage", "users.view", "reports.view", "calendar.manage"],
    },
    {
        "name": "user",
        "display_name": "User",
        "description": "Standard account",
        "permissions": ["tasks.create", "tasks.edit.own", "calendar.view", "profile.edit"],
    },
]

SYSTEM_ROLES = frozenset(role["name"] for role in DEFAULT_ROLES)


def unknown_permissions(permissions: Iterable[str]) -> List[str]:
    return sorted({p for p in permissions if p not in ALL_PERMISSIONS})


@dataclass
class Identity:
    """Resolved (user, role, session) attached to an authenticated request.

    ``permissions`` is the live role permission set, or the token snapshot when
    the role row carried none.
    """

    user: User
    role: Role
    session: Session
    permissions: List[str] = field(default_factory=list)

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def role_name(self) -> str:
        return self.role.name

    @property
    def has_wildcard(self) -> bool:
        return WILDCARD in self.permissions


class PermissionEvaluator:
    """Permission, role and ownership gates over a resolved identity.

    ``has_*`` and ``is_owner_or_admin`` answer yes/no; the ``require_*``
    variants raise ``PermissionDeniedError`` instead of returning False.
    """

    def has_permission(self, identity: Identity, required: str) -> bool:
        return identity.has_wildcard or required in identity.permissions

    def has_any(self, identity: Identity, required: Iterable[str]) -> bool:
        if identity.has_wildcard:
            return True
        granted = set(identity.permissions)
        return any(p in granted for p in required)

    def has_all(self, identity: Identity, required: Iterable[str]) -> bool:
        if identity.has_wildcard:
            return True
        granted = set(identity.permissions)
        return all(p in granted for p in required)

    def has_role(self, identity: Identity, allowed: Iterable[str]) -> bool:
        # role gating is by name only; the wildcard does not apply
        return identity.role_name in set(allowed)

    def is_owner_or_admin(
        self, identity: Identity, resource_owner_id: Optional[int]
    ) -> bool:
        if resource_owner_id is None:
            raise ResourceNotFoundError("resource not found")
        return identity.user_id == int(resource_owner_id) or identity.has_wildcard

    def require_permission(self, identity: Identity, required: str) -> None:
        if not self.has_permission(identity, required):
            self._deny(identity, "insufficient permissions", required=[required])

    def require_any(self, identity: Identity, required: Iterable[str]) -> None:
        required = list(required)
        if not self.has_any(identity, required):
            self._deny(identity, "insufficient permissions", required=required)

    def require_all(self, identity: Identity, required: Iterable[str]) -> None:
        required = list(required)
        if not self.has_all(identity, required):
            self._deny(identity, "insufficient permissions", required=required)

    def require_role(self, identity: Identity, allowed: Iterable[str]) -> None:
        allowed = list(allowed)
        if not self.has_role(identity, allowed):
            self._deny(identity, "insufficient role privileges", roles=allowed)

    def require_owner_or_admin(
        self, identity: Identity, resource_owner_id: Optional[int]
    ) -> None:
        if not self.is_owner_or_admin(identity, resource_owner_id):
            self._deny(identity, "access denied to this resource")

    def _deny(self, identity: Identity, message: str, **context) -> None:
        logger.warning(
            "permission_denied",
            user_id=identity.user_id,
            role=identity.role_name,
            **context,
        )
        raise PermissionDeniedError(message, detail=context)
