"""Storage interfaces consumed by the workflow engine and permission evaluator.

The core depends only on these protocols; the concrete backend (relational,
Redis document store, in-memory) is picked once at startup by
:func:`formflow.repositories.factory.build_repositories`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from formflow.core.models import (
    PermissionGrant,
    Submission,
    SubmissionPatch,
    User,
    WorkflowDefinition,
)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict[str, int]:
        return {"total": self.total, "page": self.page, "limit": self.limit, "pages": self.pages}


@dataclass(frozen=True, slots=True)
class WorkflowFilters:
    application_id: str | None = None
    form_id: str | None = None
    created_by: str | None = None
    search: str | None = None

    def matches(self, wf: WorkflowDefinition) -> bool:
        if self.application_id and wf.application_id != self.application_id:
            return False
        if self.form_id and wf.form_id != self.form_id:
            return False
        if self.created_by and wf.created_by != self.created_by:
            return False
        if self.search:
            needle = self.search.lower()
            if needle not in wf.name.lower() and needle not in wf.description.lower():
                return False
        return True


@dataclass(frozen=True, slots=True)
class GrantFilters:
    resource: str | None = None
    user_id: str | None = None
    application_id: str | None = None

    def matches(self, grant: PermissionGrant) -> bool:
        if self.resource and grant.resource != self.resource:
            return False
        if self.user_id and grant.user_id != self.user_id:
            return False
        if self.application_id and grant.application_id != self.application_id:
            return False
        return True


class SubmissionRepository(Protocol):
    def load(self, submission_id: str) -> Submission:
        """Return the submission or raise NotFoundError."""
        ...

    def save(
        self,
        submission_id: str,
        patch: SubmissionPatch,
        expected_revision: int | None = None,
    ) -> Submission:
        """Write ``patch`` and bump the revision.

        Raises ConcurrentUpdateError when ``expected_revision`` is given and
        no longer matches the stored revision.
        """
        ...

    def create(self, submission: Submission) -> Submission: ...


class UserRepository(Protocol):
    def load(self, user_id: str) -> User:
        """Return the user or raise NotFoundError."""
        ...

    def add(self, user: User) -> User: ...


class PermissionRepository(Protocol):
    def find_grant(
        self,
        user_id: str,
        resource: str,
        resource_id: str | None = None,
        exact: bool = True,
    ) -> PermissionGrant | None:
        """Look up a stored grant.

        ``exact=True`` matches ``resource_id`` literally (``None`` meaning the
        resource-wide grant). ``exact=False`` without a ``resource_id`` falls
        back to any grant on ``resource`` when no resource-wide one exists.
        """
        ...

    def upsert_grant(self, grant: PermissionGrant) -> PermissionGrant: ...

    def list_grants(self, user_id: str, application_id: str | None = None) -> list[PermissionGrant]: ...

    def list_grants_page(
        self, filters: GrantFilters, page: int = 1, limit: int = 10
    ) -> Page[PermissionGrant]:
        """All grants matching ``filters``, newest first."""
        ...

    def get_grant(self, grant_id: str) -> PermissionGrant:
        """Return the grant or raise NotFoundError."""
        ...

    def update_grant(self, grant: PermissionGrant) -> PermissionGrant:
        """Overwrite the flags and application of the stored grant with ``grant.id``.

        The (user, resource, resourceId) key of the stored grant is kept.
        Raises NotFoundError when no grant has that id.
        """
        ...

    def delete_grant(self, grant_id: str) -> bool: ...


class WorkflowRepository(Protocol):
    def create(self, workflow: WorkflowDefinition) -> WorkflowDefinition: ...

    def get(self, workflow_id: str) -> WorkflowDefinition:
        """Return the definition or raise NotFoundError."""
        ...

    def list(self, filters: WorkflowFilters, page: int = 1, limit: int = 10) -> Page[WorkflowDefinition]: ...

    def update(self, workflow: WorkflowDefinition) -> WorkflowDefinition: ...

    def delete(self, workflow_id: str) -> bool: ...


@dataclass(slots=True)
class Repositories:
    submissions: SubmissionRepository
    users: UserRepository
    grants: PermissionRepository
    workflows: WorkflowRepository
    # Backend resources to release on shutdown (engines, clients).
    closers: list = field(default_factory=list)

    def close(self) -> None:
        for close in self.closers:
            close()
