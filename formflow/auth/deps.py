from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from formflow.core.config import Settings
from formflow.core.errors import NotFoundError
from formflow.core.models import Role, User
from formflow.core.rbac import PermissionService
from formflow.core.security import verify_session
from formflow.core.workflow import WorkflowEngine
from formflow.repositories.base import Repositories

SESSION_COOKIE = "sid"


def require(condition: bool, msg: str = "Access denied", status_code: int = 403) -> None:
    """Small helper used across routers.

    Defaults to 403 (permission denied). For validation errors or not-found cases,
    pass `status_code=400/404`.
    """
    if not condition:
        raise HTTPException(status_code=status_code, detail=msg)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_repositories(request: Request) -> Repositories:
    return request.app.state.repositories


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.workflow_engine


def get_permission_service(request: Request) -> PermissionService:
    return request.app.state.permission_service


def _session_token(request: Request) -> str | None:
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token
    auth = request.headers.get("authorization") or ""
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def get_current_user(
    request: Request,
    settings: Settings = Depends(get_settings),
    repos: Repositories = Depends(get_repositories),
) -> User:
    token = _session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = verify_session(settings, token)
    if not payload or "user_id" not in payload:
        raise HTTPException(status_code=401, detail="Invalid session")
    try:
        user = repos.users.load(str(payload["user_id"]))
    except NotFoundError:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User is inactive")
    return user


def require_roles(*roles: Role):
    """Route-level role gate, e.g. ``Depends(require_roles(Role.ADMIN))``."""

    def dep(user: User = Depends(get_current_user)) -> User:
        require(user.role in roles, "Insufficient role for this operation")
        return user

    return dep
