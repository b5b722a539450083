from __future__ import annotations

import re
from typing import List, Optional

from taskdeck.logging import get_logger
from taskdeck.service.errors import (
    DuplicateEntryError,
    PermissionDeniedError,
    ResourceConflictError,
    ResourceNotFoundError,
    ValidationError,
    service_boundary,
)
from taskdeck.service.permissions import PERMISSIONS, SYSTEM_ROLES, unknown_permissions
from taskdeck.storage.models import Role, User

logger = get_logger(__name__)

_ROLE_NAME = re.compile(r"^[a-z_]+$")


class RoleService:
    """Administration of custom roles; the built-in roles are read-only.

    Permission edits reach existing sessions on the next refresh and reach
    request authentication immediately, since it reads live role rows.
    """

    def __init__(self, store, *, production: bool = False) -> None:
        self.store = store
        self.production = production

    def permission_catalogue(self) -> dict[str, list[str]]:
        return {group: list(perms) for group, perms in PERMISSIONS.items()}

    @service_boundary
    async def list_roles(self, include_inactive: bool = False) -> List[Role]:
        return self.store.list_roles(include_inactive=include_inactive)

    @service_boundary
    async def get_role(self, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise ResourceNotFoundError("role not found")
        return role

    @service_boundary
    async def list_role_users(self, role_id: int) -> List[User]:
        await self.get_role(role_id)
        return self.store.list_users_by_role(role_id)

    @service_boundary
    async def create_role(
        self,
        name: str,
        display_name: str,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
    ) -> Role:
        if not _ROLE_NAME.match(name or ""):
            raise ValidationError(
                "invalid role name",
                errors=["name: only lowercase letters and underscores are allowed"],
            )
        permissions = list(permissions or [])
        self._check_permissions(permissions)
        if self.store.get_role_by_name(name):
            raise DuplicateEntryError("role name already exists", detail={"field": "name"})
        role = self.store.create_role(
            name=name,
            display_name=display_name,
            description=description,
            permissions=permissions,
        )
        logger.info("role_created", role_id=role.id, role=role.name)
        return role

    @service_boundary
    async def update_role(
        self,
        role_id: int,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
    ) -> Role:
        role = self._editable(role_id, "modified")
        changes: dict = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if description is not None:
            changes["description"] = description
        if permissions is not None:
            self._check_permissions(permissions)
            changes["permissions"] = list(permissions)
        if is_active is not None:
            changes["is_active"] = is_active
        if not changes:
            return role
        updated = self.store.update_role(role_id, **changes)
        logger.info("role_updated", role_id=role_id, fields=sorted(changes))
        return updated

    @service_boundary
    async def toggle_role_status(self, role_id: int) -> Role:
        role = self._editable(role_id, "modified")
        updated = self.store.update_role(role_id, is_active=not role.is_active)
        logger.info("role_status_toggled", role_id=role_id, active=updated.is_active)
        return updated

    @service_boundary
    async def delete_role(self, role_id: int) -> None:
        self._editable(role_id, "deleted")
        assigned = self.store.count_users_with_role(role_id)
        if assigned:
            raise ResourceConflictError(
                f"cannot delete role with {assigned} assigned users",
                detail={"assigned_users": assigned},
            )
        self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id)

    def _editable(self, role_id: int, action: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise ResourceNotFoundError("role not found")
        if role.name in SYSTEM_ROLES:
            raise PermissionDeniedError(f"system roles cannot be {action}")
        return role

    @staticmethod
    def _check_permissions(permissions: List[str]) -> None:
        unknown = unknown_permissions(permissions)
        if unknown:
            raise ValidationError(
                "invalid permissions",
                errors=[f"permissions: unknown permission {p}" for p in unknown],
            )
