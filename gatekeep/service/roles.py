from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditAction, AuditTrail
from gatekeep.service.devices import ClientInfo
from gatekeep.service.errors import ConflictError, NotFoundError, ValidationError
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Permission, Role

logger = get_logger(__name__)


class RoleService:
    """Administration of roles, permissions and the grants between them."""

    def __init__(self, store, audit: AuditTrail) -> None:
        self.store = store
        self.audit = audit

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("Role not found")
        return role

    def _describe(self, role: Role) -> Dict[str, Any]:
        return {
            "role": role,
            "permissions": self.store.list_role_permissions(role.id),
            "user_count": self.store.count_users_with_role(role.id),
        }

    def ensure_role(self, name: str, description: Optional[str] = None) -> Role:
        """Return the named role, creating it on first use."""
        existing = self.store.get_role_by_name(name)
        if existing:
            return existing
        try:
            return self.store.create_role(name, description)
        except ConstraintViolation:
            # lost a creation race; the winner's row is what we want
            role = self.store.get_role_by_name(name)
            if role is None:
                raise
            return role

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Role:
        try:
            role = self.store.create_role(name, description)
        except ConstraintViolation:
            raise ConflictError("Role name already exists", detail={"field": "name"})
        self.audit.log_success(
            AuditAction.RESOURCE_CREATED,
            user_id=actor_id,
            resource="Role",
            resource_id=role.id,
            client=client,
            details={"name": name},
        )
        return role

    def list_roles(self) -> List[Dict[str, Any]]:
        return [self._describe(role) for role in self.store.list_roles()]

    def get_role(self, role_id: str) -> Dict[str, Any]:
        return self._describe(self._require_role(role_id))

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        actor_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Role:
        self._require_role(role_id)
        try:
            role = self.store.update_role(role_id, name=name, description=description)
        except ConstraintViolation:
            raise ConflictError("Role name already exists", detail={"field": "name"})
        if role is None:
            raise NotFoundError("Role not found")
        self.audit.log_success(
            AuditAction.RESOURCE_UPDATED,
            user_id=actor_id,
            resource="Role",
            resource_id=role_id,
            client=client,
        )
        return role

    def delete_role(
        self,
        role_id: str,
        *,
        actor_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        role = self._require_role(role_id)
        assigned = self.store.count_users_with_role(role_id)
        if assigned:
            raise ValidationError(
                f"Cannot delete role. It is assigned to {assigned} user(s). "
                "Please reassign users first.",
                detail={"user_count": assigned},
            )
        try:
            self.store.delete_role(role_id)
        except ConstraintViolation:
            raise ValidationError("Cannot delete role while users are assigned to it")
        self.audit.log_success(
            AuditAction.RESOURCE_DELETED,
            user_id=actor_id,
            resource="Role",
            resource_id=role_id,
            client=client,
            details={"name": role.name},
        )

    def assign_permissions(
        self,
        role_id: str,
        permission_ids: Iterable[str],
        *,
        actor_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Dict[str, Any]:
        role = self._require_role(role_id)
        ids = list(dict.fromkeys(permission_ids))
        missing = [pid for pid in ids if self.store.get_permission(pid) is None]
        if missing:
            raise ValidationError(
                f"Permissions not found: {', '.join(missing)}",
                detail={"missing": missing},
            )
        self.store.set_role_permissions(role_id, ids)
        self.audit.log_success(
            AuditAction.PERMISSION_GRANTED,
            user_id=actor_id,
            resource="Role",
            resource_id=role_id,
            client=client,
            details={"permission_ids": ids},
        )
        logger.info("role_permissions_assigned", role_id=role_id, count=len(ids))
        return self._describe(role)

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Permission:
        try:
            perm = self.store.create_permission(
                name, resource.strip().lower(), action.strip().lower(), description
            )
        except ConstraintViolation:
            raise ConflictError(
                "Permission name already exists or resource-action combination already exists"
            )
        self.audit.log_success(
            AuditAction.RESOURCE_CREATED,
            user_id=actor_id,
            resource="Permission",
            resource_id=perm.id,
            client=client,
            details={"name": name},
        )
        return perm

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def get_permission(self, permission_id: str) -> Permission:
        perm = self.store.get_permission(permission_id)
        if not perm:
            raise NotFoundError("Permission not found")
        return perm

    def delete_permission(
        self,
        permission_id: str,
        *,
        actor_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        if not self.store.delete_permission(permission_id):
            raise NotFoundError("Permission not found")
        self.audit.log_success(
            AuditAction.RESOURCE_DELETED,
            user_id=actor_id,
            resource="Permission",
            resource_id=permission_id,
            client=client,
        )
