"""Relational backend (SQLAlchemy ORM).

JSON blobs live in ``*_json`` text columns and are parsed back into typed
records on every read, so a malformed row surfaces as ValidationError here
rather than deep inside the workflow engine.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from formflow.core.errors import ConcurrentUpdateError, NotFoundError
from formflow.core.models import (
    PermissionGrant,
    Submission,
    SubmissionPatch,
    User,
    WorkflowDefinition,
)
from formflow.db.base import Base
from formflow.db.models import PermissionRow, SubmissionRow, UserRow, WorkflowRow
from formflow.db.session import make_session_factory
from formflow.repositories.base import GrantFilters, Page, Repositories, WorkflowFilters

logger = logging.getLogger("formflow.sql")


def _dump(v: object) -> str:
    return json.dumps(v, ensure_ascii=False, default=str)


def _load(s: str | None, default: object = None) -> object:
    if s is None or s == "":
        return default
    return json.loads(s)


# ---- row <-> record ----


def _submission(row: SubmissionRow) -> Submission:
    return Submission.from_json(
        {
            "id": row.id,
            "formId": row.form_id,
            "applicationId": row.application_id,
            "data": _load(row.data_json, {}),
            "status": row.status.value if row.status is not None else None,
            "workflowState": _load(row.workflow_state_json),
            "submittedBy": row.submitted_by,
            "revision": row.revision or 0,
        }
    )


def _user(row: UserRow) -> User:
    return User.from_json(
        {
            "id": row.id,
            "email": row.email,
            "role": row.role.value if row.role is not None else None,
            "permissions": _load(row.permissions_json, []),
            "isActive": row.is_active,
        }
    )


def _grant(row: PermissionRow) -> PermissionGrant:
    return PermissionGrant.from_json(
        {
            "id": row.id,
            "user": row.user_id,
            "resource": row.resource,
            "resourceId": row.resource_id,
            "permissions": _load(row.permissions_json, {}),
            "fieldPermissions": _load(row.field_permissions_json),
            "applicationId": row.application_id,
        }
    )


def _workflow(row: WorkflowRow) -> WorkflowDefinition:
    return WorkflowDefinition.from_json(
        {
            "id": row.id,
            "applicationId": row.application_id,
            "formId": row.form_id,
            "name": row.name,
            "description": row.description,
            "stages": _load(row.stages_json, []),
            "transitions": _load(row.transitions_json, []),
            "settings": _load(row.settings_json),
            "createdBy": row.created_by,
        }
    )


def _fill_workflow(row: WorkflowRow, wf: WorkflowDefinition) -> None:
    row.application_id = wf.application_id
    row.form_id = wf.form_id
    row.created_by = wf.created_by
    row.name = wf.name
    row.description = wf.description
    row.stages_json = _dump([s.to_json() for s in wf.stages])
    row.transitions_json = _dump([t.to_json() for t in wf.transitions])
    row.settings_json = _dump(wf.settings.to_json())


# ---- repositories ----


class SqlSubmissionRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._sf = session_factory

    def load(self, submission_id: str) -> Submission:
        with self._sf() as db:
            row = db.get(SubmissionRow, str(submission_id))
            if row is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            return _submission(row)

    def save(
        self,
        submission_id: str,
        patch: SubmissionPatch,
        expected_revision: int | None = None,
    ) -> Submission:
        sid = str(submission_id)
        stmt = update(SubmissionRow).where(SubmissionRow.id == sid)
        if expected_revision is not None:
            stmt = stmt.where(SubmissionRow.revision == expected_revision)
        stmt = stmt.values(
            workflow_state_json=_dump(patch.workflow_state.to_json()),
            status=patch.status,
            revision=SubmissionRow.revision + 1,
        ).execution_options(synchronize_session=False)

        with self._sf.begin() as db:
            result = db.execute(stmt)
            row = db.get(SubmissionRow, sid)
            if row is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            if result.rowcount == 0:
                raise ConcurrentUpdateError(
                    f"Submission {submission_id} changed concurrently "
                    f"(expected revision {expected_revision}, found {row.revision})"
                )
            return _submission(row)

    def create(self, submission: Submission) -> Submission:
        with self._sf.begin() as db:
            db.add(
                SubmissionRow(
                    id=submission.id,
                    form_id=submission.form_id,
                    application_id=submission.application_id,
                    submitted_by=submission.submitted_by,
                    status=submission.status,
                    data_json=_dump(submission.data),
                    workflow_state_json=(
                        _dump(submission.workflow_state.to_json())
                        if submission.workflow_state is not None
                        else None
                    ),
                    revision=submission.revision,
                )
            )
        return submission


class SqlUserRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._sf = session_factory

    def load(self, user_id: str) -> User:
        with self._sf() as db:
            row = db.get(UserRow, str(user_id))
            if row is None:
                raise NotFoundError(f"User not found: {user_id}")
            return _user(row)

    def add(self, user: User) -> User:
        with self._sf.begin() as db:
            db.merge(
                UserRow(
                    id=user.id,
                    email=user.email,
                    role=user.role,
                    is_active=user.is_active,
                    permissions_json=_dump([p.to_json() for p in user.permissions]),
                )
            )
        return user


class SqlPermissionRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._sf = session_factory

    @staticmethod
    def _query(user_id: str, resource: str, resource_id: str | None):
        q = select(PermissionRow).where(
            PermissionRow.user_id == str(user_id),
            PermissionRow.resource == resource,
        )
        if resource_id is None:
            q = q.where(PermissionRow.resource_id.is_(None))
        else:
            q = q.where(PermissionRow.resource_id == resource_id)
        return q.order_by(PermissionRow.pk.asc())

    def find_grant(
        self,
        user_id: str,
        resource: str,
        resource_id: str | None = None,
        exact: bool = True,
    ) -> PermissionGrant | None:
        with self._sf() as db:
            row = db.scalars(self._query(user_id, resource, resource_id).limit(1)).first()
            if row is None and not exact and resource_id is None:
                row = db.scalars(
                    select(PermissionRow)
                    .where(PermissionRow.user_id == str(user_id), PermissionRow.resource == resource)
                    .order_by(PermissionRow.pk.asc())
                    .limit(1)
                ).first()
            return _grant(row) if row is not None else None

    def upsert_grant(self, grant: PermissionGrant) -> PermissionGrant:
        fields_json = (
            _dump(grant.field_permissions) if grant.field_permissions is not None else None
        )
        with self._sf.begin() as db:
            row = db.scalars(
                self._query(grant.user_id, grant.resource, grant.resource_id).limit(1)
            ).first()
            if row is None:
                row = PermissionRow(
                    id=grant.id,
                    user_id=grant.user_id,
                    resource=grant.resource,
                    resource_id=grant.resource_id,
                )
                db.add(row)
            row.application_id = grant.application_id
            row.permissions_json = _dump(grant.permissions)
            row.field_permissions_json = fields_json
            db.flush()
            return _grant(row)

    def list_grants(self, user_id: str, application_id: str | None = None) -> list[PermissionGrant]:
        q = self._filtered(GrantFilters(user_id=str(user_id), application_id=application_id))
        with self._sf() as db:
            return [_grant(row) for row in db.scalars(q.order_by(PermissionRow.pk.desc()))]

    @staticmethod
    def _filtered(filters: GrantFilters):
        q = select(PermissionRow)
        if filters.resource:
            q = q.where(PermissionRow.resource == filters.resource)
        if filters.user_id:
            q = q.where(PermissionRow.user_id == filters.user_id)
        if filters.application_id:
            q = q.where(PermissionRow.application_id == filters.application_id)
        return q

    def list_grants_page(
        self, filters: GrantFilters, page: int = 1, limit: int = 10
    ) -> Page[PermissionGrant]:
        q = self._filtered(filters)
        with self._sf() as db:
            total = db.scalar(select(func.count()).select_from(q.subquery())) or 0
            rows = db.scalars(
                q.order_by(PermissionRow.pk.desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            return Page(items=[_grant(r) for r in rows], total=total, page=page, limit=limit)

    @staticmethod
    def _row(db: Session, grant_id: str) -> PermissionRow | None:
        return db.scalars(select(PermissionRow).where(PermissionRow.id == str(grant_id))).first()

    def get_grant(self, grant_id: str) -> PermissionGrant:
        with self._sf() as db:
            row = self._row(db, grant_id)
            if row is None:
                raise NotFoundError(f"Permission not found: {grant_id}")
            return _grant(row)

    def update_grant(self, grant: PermissionGrant) -> PermissionGrant:
        with self._sf.begin() as db:
            row = self._row(db, grant.id)
            if row is None:
                raise NotFoundError(f"Permission not found: {grant.id}")
            row.application_id = grant.application_id
            row.permissions_json = _dump(grant.permissions)
            row.field_permissions_json = (
                _dump(grant.field_permissions) if grant.field_permissions is not None else None
            )
            db.flush()
            return _grant(row)

    def delete_grant(self, grant_id: str) -> bool:
        with self._sf.begin() as db:
            row = self._row(db, grant_id)
            if row is None:
                return False
            db.delete(row)
            return True


class SqlWorkflowRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._sf = session_factory

    def create(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        with self._sf.begin() as db:
            row = WorkflowRow(id=workflow.id)
            _fill_workflow(row, workflow)
            db.add(row)
        return workflow

    def get(self, workflow_id: str) -> WorkflowDefinition:
        with self._sf() as db:
            row = db.get(WorkflowRow, str(workflow_id))
            if row is None:
                raise NotFoundError(f"Workflow not found: {workflow_id}")
            return _workflow(row)

    def list(self, filters: WorkflowFilters, page: int = 1, limit: int = 10) -> Page[WorkflowDefinition]:
        q = select(WorkflowRow)
        if filters.application_id:
            q = q.where(WorkflowRow.application_id == filters.application_id)
        if filters.form_id:
            q = q.where(WorkflowRow.form_id == filters.form_id)
        if filters.created_by:
            q = q.where(WorkflowRow.created_by == filters.created_by)
        if filters.search:
            like = f"%{filters.search}%"
            q = q.where(or_(WorkflowRow.name.ilike(like), WorkflowRow.description.ilike(like)))

        with self._sf() as db:
            total = db.scalar(select(func.count()).select_from(q.subquery())) or 0
            rows = db.scalars(
                q.order_by(WorkflowRow.created_at.desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            return Page(items=[_workflow(r) for r in rows], total=total, page=page, limit=limit)

    def update(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        with self._sf.begin() as db:
            row = db.get(WorkflowRow, workflow.id)
            if row is None:
                raise NotFoundError(f"Workflow not found: {workflow.id}")
            _fill_workflow(row, workflow)
        return workflow

    def delete(self, workflow_id: str) -> bool:
        with self._sf.begin() as db:
            row = db.get(WorkflowRow, str(workflow_id))
            if row is None:
                return False
            db.delete(row)
            return True


def build_sql_repositories(engine: Engine, *, create_tables: bool = False) -> Repositories:
    if create_tables:
        Base.metadata.create_all(bind=engine)
        logger.info("Created missing tables on %s", engine.url.render_as_string(hide_password=True))

    sf = make_session_factory(engine)
    return Repositories(
        submissions=SqlSubmissionRepository(sf),
        users=SqlUserRepository(sf),
        grants=SqlPermissionRepository(sf),
        workflows=SqlWorkflowRepository(sf),
        closers=[engine.dispose],
    )
