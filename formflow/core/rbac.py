"""Resource and field level authorization.

Decision order for a check:
1) unknown user -> deny
2) super_admin -> allow
3) coarse grants embedded in the user record (resource or "*")
4) the stored per-resource grant, whose flag must be literally ``True``

Checks fail closed: any error while evaluating is logged and turned into a
deny. Administrative writes let storage errors through.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, Literal, Mapping

from formflow.core.errors import NotFoundError
from formflow.core.models import PermissionGrant, User, new_id
from formflow.repositories.base import GrantFilters, Page, PermissionRepository, UserRepository

logger = logging.getLogger("formflow.rbac")


class PermissionService:
    def __init__(self, users: UserRepository, grants: PermissionRepository) -> None:
        self._users = users
        self._grants = grants

    def _load_user(self, user_id: str) -> User | None:
        try:
            return self._users.load(str(user_id))
        except NotFoundError:
            return None

    # ---- checks ----

    def check_permission(
        self,
        user_id: str,
        resource: str,
        action: str,
        resource_id: str | None = None,
    ) -> bool:
        try:
            return self._check(str(user_id), resource, action, resource_id or None)
        except Exception:
            logger.exception(
                "Permission check failed (user=%s resource=%s action=%s resource_id=%s); denying",
                user_id, resource, action, resource_id,
            )
            return False

    def _check(self, user_id: str, resource: str, action: str, resource_id: str | None) -> bool:
        user = self._load_user(user_id)
        if user is None:
            return False
        if user.is_super_admin:
            return True

        if any(p.allows(resource, action) for p in user.permissions):
            return True

        grant = self._grants.find_grant(user.id, resource, resource_id, exact=resource_id is not None)
        if grant is None:
            return False
        return grant.allows(action)

    def check_field_permission(
        self,
        user_id: str,
        resource: str,
        resource_id: str | None,
        field_name: str,
        action: str,
    ) -> bool:
        try:
            user = self._load_user(str(user_id))
            if user is None:
                return False
            if user.is_super_admin:
                return True

            grant = self._grants.find_grant(user.id, resource, resource_id or None, exact=True)
            if grant is None or grant.field_permissions is None:
                return self._check(user.id, resource, action, resource_id or None)

            flags = grant.field_permissions.get(field_name)
            if flags is None:
                # field not configured: only the already-loaded grant's coarse flags count
                return grant.allows(action)
            return flags.get(action) is True
        except Exception:
            logger.exception(
                "Field permission check failed (user=%s resource=%s resource_id=%s field=%s action=%s); denying",
                user_id, resource, resource_id, field_name, action,
            )
            return False

    # ---- administration ----

    def grant_permission(
        self,
        user_id: str,
        resource: str,
        resource_id: str | None,
        permissions: Mapping[str, Any],
        field_permissions: Mapping[str, Mapping[str, Any]] | None = None,
        application_id: str | None = None,
    ) -> PermissionGrant:
        """Upsert-with-merge: new keys override, untouched keys survive."""
        existing = self._grants.find_grant(str(user_id), resource, resource_id or None, exact=True)
        if existing is not None:
            grant = existing.merged(permissions, field_permissions)
            if application_id:
                grant = replace(grant, application_id=application_id)
        else:
            grant = PermissionGrant(
                id=new_id(),
                user_id=str(user_id),
                resource=resource,
                resource_id=resource_id or None,
                permissions=dict(permissions or {}),
                field_permissions=(
                    {k: dict(v) for k, v in field_permissions.items()}
                    if field_permissions is not None
                    else None
                ),
                application_id=application_id,
            )
        saved = self._grants.upsert_grant(grant)
        logger.info(
            "Granted %s on %s/%s to user %s",
            sorted(k for k, v in (permissions or {}).items() if v is True), resource, resource_id, user_id,
        )
        return saved

    def revoke_permission(
        self,
        user_id: str,
        resource: str,
        resource_id: str | None,
        actions: Iterable[str],
    ) -> PermissionGrant | Literal[False]:
        """Flip the named flags to False; other flags and the grant itself stay."""
        existing = self._grants.find_grant(str(user_id), resource, resource_id or None, exact=True)
        if existing is None:
            return False
        actions = list(actions)
        saved = self._grants.upsert_grant(existing.revoked(actions))
        logger.info("Revoked %s on %s/%s from user %s", actions, resource, resource_id, user_id)
        return saved

    def list_user_permissions(
        self, user_id: str, application_id: str | None = None
    ) -> list[PermissionGrant]:
        return self._grants.list_grants(str(user_id), application_id)

    def list_permissions(
        self, filters: GrantFilters | None = None, page: int = 1, limit: int = 10
    ) -> Page[PermissionGrant]:
        return self._grants.list_grants_page(filters or GrantFilters(), page=page, limit=limit)

    def update_grant(
        self,
        grant_id: str,
        permissions: Mapping[str, Any] | None = None,
        field_permissions: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> PermissionGrant:
        """Replace (not merge) whichever of the two flag maps is given."""
        grant = self._grants.get_grant(str(grant_id))
        if permissions is not None:
            grant = replace(grant, permissions=dict(permissions))
        if field_permissions is not None:
            grant = replace(grant, field_permissions={k: dict(v) for k, v in field_permissions.items()})
        saved = self._grants.update_grant(grant)
        logger.info(
            "Updated permission %s (%s/%s of user %s)",
            saved.id, saved.resource, saved.resource_id, saved.user_id,
        )
        return saved

    def delete_grant(self, grant_id: str) -> bool:
        deleted = self._grants.delete_grant(str(grant_id))
        if deleted:
            logger.info("Deleted permission %s", grant_id)
        return deleted
