from __future__ import annotations

import threading
from dataclasses import replace

from formflow.core.errors import ConcurrentUpdateError, NotFoundError
from formflow.core.models import (
    PermissionGrant,
    Submission,
    SubmissionPatch,
    User,
    WorkflowDefinition,
)
from formflow.repositories.base import GrantFilters, Page, Repositories, WorkflowFilters


class MemorySubmissionRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, Submission] = {}

    def load(self, submission_id: str) -> Submission:
        with self._lock:
            sub = self._items.get(str(submission_id))
        if sub is None:
            raise NotFoundError(f"Submission not found: {submission_id}")
        return sub

    def save(
        self,
        submission_id: str,
        patch: SubmissionPatch,
        expected_revision: int | None = None,
    ) -> Submission:
        with self._lock:
            current = self._items.get(str(submission_id))
            if current is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            if expected_revision is not None and current.revision != expected_revision:
                raise ConcurrentUpdateError(
                    f"Submission {submission_id} changed concurrently "
                    f"(expected revision {expected_revision}, found {current.revision})"
                )
            updated = replace(
                current,
                workflow_state=patch.workflow_state,
                status=patch.status,
                revision=current.revision + 1,
            )
            self._items[updated.id] = updated
            return updated

    def create(self, submission: Submission) -> Submission:
        with self._lock:
            self._items[submission.id] = submission
        return submission


class MemoryUserRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, User] = {}

    def load(self, user_id: str) -> User:
        with self._lock:
            user = self._items.get(str(user_id))
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    def add(self, user: User) -> User:
        with self._lock:
            self._items[user.id] = user
        return user


class MemoryPermissionRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        # insertion order doubles as creation order
        self._items: dict[tuple[str, str, str | None], PermissionGrant] = {}

    def find_grant(
        self,
        user_id: str,
        resource: str,
        resource_id: str | None = None,
        exact: bool = True,
    ) -> PermissionGrant | None:
        with self._lock:
            grant = self._items.get((str(user_id), resource, resource_id))
            if grant is not None or exact or resource_id is not None:
                return grant
            for (uid, res, _), g in self._items.items():
                if uid == str(user_id) and res == resource:
                    return g
        return None

    def upsert_grant(self, grant: PermissionGrant) -> PermissionGrant:
        with self._lock:
            existing = self._items.get(grant.key)
            if existing is not None and existing.id != grant.id:
                grant = replace(grant, id=existing.id)
            self._items[grant.key] = grant
        return grant

    def list_grants(self, user_id: str, application_id: str | None = None) -> list[PermissionGrant]:
        return self._matching(GrantFilters(user_id=str(user_id), application_id=application_id))

    def _matching(self, filters: GrantFilters) -> list[PermissionGrant]:
        with self._lock:
            # newest first
            return [g for g in reversed(list(self._items.values())) if filters.matches(g)]

    def list_grants_page(
        self, filters: GrantFilters, page: int = 1, limit: int = 10
    ) -> Page[PermissionGrant]:
        matched = self._matching(filters)
        offset = (page - 1) * limit
        return Page(items=matched[offset : offset + limit], total=len(matched), page=page, limit=limit)

    def _by_id(self, grant_id: str) -> PermissionGrant:
        for g in self._items.values():
            if g.id == str(grant_id):
                return g
        raise NotFoundError(f"Permission not found: {grant_id}")

    def get_grant(self, grant_id: str) -> PermissionGrant:
        with self._lock:
            return self._by_id(grant_id)

    def update_grant(self, grant: PermissionGrant) -> PermissionGrant:
        with self._lock:
            stored = self._by_id(grant.id)
            updated = replace(
                stored,
                permissions=dict(grant.permissions),
                field_permissions=grant.field_permissions,
                application_id=grant.application_id,
            )
            self._items[stored.key] = updated
        return updated

    def delete_grant(self, grant_id: str) -> bool:
        with self._lock:
            try:
                stored = self._by_id(grant_id)
            except NotFoundError:
                return False
            del self._items[stored.key]
        return True


class MemoryWorkflowRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, WorkflowDefinition] = {}

    def create(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            self._items[workflow.id] = workflow
        return workflow

    def get(self, workflow_id: str) -> WorkflowDefinition:
        with self._lock:
            wf = self._items.get(str(workflow_id))
        if wf is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return wf

    def list(self, filters: WorkflowFilters, page: int = 1, limit: int = 10) -> Page[WorkflowDefinition]:
        with self._lock:
            # newest first
            matched = [wf for wf in reversed(list(self._items.values())) if filters.matches(wf)]
        offset = (page - 1) * limit
        return Page(items=matched[offset : offset + limit], total=len(matched), page=page, limit=limit)

    def update(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            if workflow.id not in self._items:
                raise NotFoundError(f"Workflow not found: {workflow.id}")
            self._items[workflow.id] = workflow
        return workflow

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            return self._items.pop(str(workflow_id), None) is not None


def build_memory_repositories() -> Repositories:
    return Repositories(
        submissions=MemorySubmissionRepository(),
        users=MemoryUserRepository(),
        grants=MemoryPermissionRepository(),
        workflows=MemoryWorkflowRepository(),
    )
