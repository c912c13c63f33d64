from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from formflow.auth.deps import (
    get_current_user,
    get_engine,
    get_repositories,
    require,
    require_roles,
)
from formflow.core.models import Role, User, WorkflowDefinition, new_id
from formflow.core.workflow import WorkflowEngine, available_actions
from formflow.repositories.base import Repositories, WorkflowFilters

logger = logging.getLogger("formflow.api.workflows")

router = APIRouter(prefix="/workflows", tags=["workflows"])


class WorkflowCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    description: str = ""
    application_id: str = Field(alias="applicationId", min_length=1)
    form_id: str | None = Field(default=None, alias="formId")
    stages: list[dict[str, Any]]
    transitions: list[dict[str, Any]] = Field(default_factory=list)
    settings: dict[str, Any] | None = None


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    stages: list[dict[str, Any]] | None = None
    transitions: list[dict[str, Any]] | None = None
    settings: dict[str, Any] | None = None


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: str = Field(alias="submissionId", min_length=1)
    action: str = Field(min_length=1)
    comments: str = ""


def _can_manage(user: User, wf: WorkflowDefinition) -> bool:
    return user.is_super_admin or (wf.created_by is not None and wf.created_by == user.id)


@router.post("")
def create(
    body: WorkflowCreate,
    repos: Repositories = Depends(get_repositories),
    user: User = Depends(require_roles(Role.SUPER_ADMIN, Role.ADMIN, Role.MANAGER)),
):
    wf = WorkflowDefinition.from_json(
        {
            "id": new_id(),
            "applicationId": body.application_id,
            "formId": body.form_id,
            "name": body.name,
            "description": body.description,
            "stages": body.stages,
            "transitions": body.transitions,
            "settings": body.settings,
            "createdBy": user.id,
        }
    )
    repos.workflows.create(wf)
    logger.info("Workflow created: %s (%s) by user %s", wf.name, wf.id, user.id)
    return JSONResponse(
        status_code=201,
        content={"success": True, "message": "Workflow created successfully", "data": {"workflow": wf.to_json()}},
    )


@router.get("")
def list_workflows(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = None,
    application_id: str | None = Query(None, alias="applicationId"),
    form_id: str | None = Query(None, alias="formId"),
    repos: Repositories = Depends(get_repositories),
    user: User = Depends(get_current_user),
):
    # Non super admins only see workflows they created.
    filters = WorkflowFilters(
        application_id=application_id,
        form_id=form_id,
        created_by=None if user.is_super_admin else user.id,
        search=search,
    )
    result = repos.workflows.list(filters, page=page, limit=limit)
    return {
        "success": True,
        "data": {
            "workflows": [wf.to_json() for wf in result.items],
            "pagination": result.pagination(),
        },
    }


@router.get("/{workflow_id}")
def get_workflow(
    workflow_id: str,
    repos: Repositories = Depends(get_repositories),
    user: User = Depends(get_current_user),
):
    wf = repos.workflows.get(workflow_id)
    require(_can_manage(user, wf))
    return {"success": True, "data": {"workflow": wf.to_json()}}


@router.put("/{workflow_id}")
def update_workflow(
    workflow_id: str,
    body: WorkflowUpdate,
    repos: Repositories = Depends(get_repositories),
    user: User = Depends(require_roles(Role.SUPER_ADMIN, Role.ADMIN, Role.MANAGER)),
):
    wf = repos.workflows.get(workflow_id)
    require(_can_manage(user, wf))

    doc = wf.to_json()
    if body.name is not None:
        doc["name"] = body.name
    if body.description is not None:
        doc["description"] = body.description
    if body.stages is not None:
        doc["stages"] = body.stages
    if body.transitions is not None:
        doc["transitions"] = body.transitions
    if body.settings is not None:
        doc["settings"] = wf.settings.merged(body.settings).to_json()

    updated = repos.workflows.update(WorkflowDefinition.from_json(doc))
    logger.info("Workflow updated: %s by user %s", workflow_id, user.id)
    return {"success": True, "message": "Workflow updated successfully", "data": {"workflow": updated.to_json()}}


@router.delete("/{workflow_id}")
def delete_workflow(
    workflow_id: str,
    repos: Repositories = Depends(get_repositories),
    user: User = Depends(require_roles(Role.SUPER_ADMIN, Role.ADMIN)),
):
    wf = repos.workflows.get(workflow_id)
    require(_can_manage(user, wf))
    repos.workflows.delete(workflow_id)
    logger.info("Workflow deleted: %s by user %s", workflow_id, user.id)
    return {"success": True, "message": "Workflow deleted successfully"}


@router.post("/{workflow_id}/execute")
def execute(
    workflow_id: str,
    body: ExecuteRequest,
    repos: Repositories = Depends(get_repositories),
    engine: WorkflowEngine = Depends(get_engine),
    user: User = Depends(get_current_user),
):
    wf = repos.workflows.get(workflow_id)
    result = engine.execute_action(wf, body.submission_id, body.action, user.id, body.comments)
    return {"success": True, "message": "Workflow action executed successfully", "data": result.to_json()}


@router.get("/{workflow_id}/history")
def history(
    workflow_id: str,
    submission_id: str = Query(..., alias="submissionId", min_length=1),
    repos: Repositories = Depends(get_repositories),
    engine: WorkflowEngine = Depends(get_engine),
    user: User = Depends(get_current_user),
):
    repos.workflows.get(workflow_id)
    entries = engine.history(submission_id)
    return {"success": True, "data": {"history": [h.to_json() for h in entries]}}


@router.get("/{workflow_id}/actions")
def actions(
    workflow_id: str,
    submission_id: str = Query(..., alias="submissionId", min_length=1),
    repos: Repositories = Depends(get_repositories),
    user: User = Depends(get_current_user),
):
    wf = repos.workflows.get(workflow_id)
    submission = repos.submissions.load(submission_id)
    return {"success": True, "data": {"actions": available_actions(wf, submission, user)}}
