from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from formflow.auth.deps import get_current_user, get_permission_service, require, require_roles
from formflow.core.models import Role, User
from formflow.core.rbac import PermissionService
from formflow.repositories.base import GrantFilters

logger = logging.getLogger("formflow.api.permissions")

router = APIRouter(prefix="/permissions", tags=["permissions"])

_ADMIN_ROLES = (Role.SUPER_ADMIN, Role.ADMIN)


class GrantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    resource_id: str | None = Field(default=None, alias="resourceId")
    permissions: dict[str, Any] = Field(default_factory=dict)
    field_permissions: dict[str, dict[str, Any]] | None = Field(default=None, alias="fieldPermissions")
    application_id: str | None = Field(default=None, alias="applicationId")


class UpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    permissions: dict[str, Any] | None = None
    field_permissions: dict[str, dict[str, Any]] | None = Field(default=None, alias="fieldPermissions")


class RevokeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    resource_id: str | None = Field(default=None, alias="resourceId")
    actions: list[str] = Field(min_length=1)


class CheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resource: str = Field(min_length=1)
    action: str = Field(min_length=1)
    resource_id: str | None = Field(default=None, alias="resourceId")


class CheckFieldRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resource: str = Field(min_length=1)
    resource_id: str | None = Field(default=None, alias="resourceId")
    field: str = Field(min_length=1)
    action: str = Field(min_length=1)


@router.get("")
def list_permissions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    resource: str | None = None,
    user_id: str | None = Query(None, alias="user"),
    application_id: str | None = Query(None, alias="applicationId"),
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
):
    filters = GrantFilters(resource=resource, user_id=user_id, application_id=application_id)
    result = svc.list_permissions(filters, page=page, limit=limit)
    return {
        "success": True,
        "data": {
            "permissions": [g.to_json() for g in result.items],
            "pagination": result.pagination(),
        },
    }


@router.post("/grant")
def grant(
    body: GrantRequest,
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
):
    g = svc.grant_permission(
        body.user,
        body.resource,
        body.resource_id,
        body.permissions,
        body.field_permissions,
        application_id=body.application_id,
    )
    logger.info("Permission granted for user %s on %s by %s", body.user, body.resource, user.id)
    return {"success": True, "message": "Permission granted", "data": {"permission": g.to_json()}}


@router.post("/revoke")
def revoke(
    body: RevokeRequest,
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
):
    g = svc.revoke_permission(body.user, body.resource, body.resource_id, body.actions)
    require(g is not False, "Permission not found", 404)
    logger.info("Permission revoked for user %s on %s by %s", body.user, body.resource, user.id)
    return {"success": True, "message": "Permission revoked", "data": {"permission": g.to_json()}}


@router.get("/user/{user_id}")
def user_permissions(
    user_id: str,
    application_id: str | None = Query(None, alias="applicationId"),
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(get_current_user),
):
    require(user.id == user_id or user.role in _ADMIN_ROLES)
    grants = svc.list_user_permissions(user_id, application_id)
    return {"success": True, "data": {"permissions": [g.to_json() for g in grants]}}


@router.post("/check")
def check(
    body: CheckRequest,
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(get_current_user),
):
    allowed = svc.check_permission(user.id, body.resource, body.action, body.resource_id)
    return {"success": True, "data": {"hasPermission": allowed}}


@router.post("/check-field")
def check_field(
    body: CheckFieldRequest,
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(get_current_user),
):
    allowed = svc.check_field_permission(user.id, body.resource, body.resource_id, body.field, body.action)
    return {"success": True, "data": {"hasPermission": allowed}}


@router.put("/{permission_id}")
def update_permission(
    permission_id: str,
    body: UpdateRequest,
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
):
    g = svc.update_grant(permission_id, body.permissions, body.field_permissions)
    logger.info("Permission %s updated by %s", permission_id, user.id)
    return {"success": True, "message": "Permission updated successfully", "data": {"permission": g.to_json()}}


@router.delete("/{permission_id}")
def delete_permission(
    permission_id: str,
    svc: PermissionService = Depends(get_permission_service),
    user: User = Depends(require_roles(*_ADMIN_ROLES)),
):
    require(svc.delete_grant(permission_id), "Permission not found", 404)
    logger.info("Permission %s deleted by %s", permission_id, user.id)
    return {"success": True, "message": "Permission deleted successfully"}
