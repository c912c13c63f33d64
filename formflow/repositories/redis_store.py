"""Document-store backend: one JSON document per entity in Redis.

Key layout (``<p>`` is ``Settings.REDIS_KEY_PREFIX``)::

    <p>:submission:<id>         submission document (with revision)
    <p>:user:<id>               user document
    <p>:grants:<user_id>        hash, field = [resource, resourceId] -> grant document
    <p>:grant_seq               counter giving grants a creation order
    <p>:grant_ids               hash, grant id -> [user_id, field] locating its document
    <p>:grant_order             sorted set of grant ids by creation order
    <p>:workflow:<id>           workflow definition document
    <p>:workflows               sorted set of workflow ids by creation time
"""

from __future__ import annotations

import json
import time
from dataclasses import replace

from redis import Redis
from redis.exceptions import WatchError

from formflow.core.errors import ConcurrentUpdateError, NotFoundError
from formflow.core.models import (
    PermissionGrant,
    Submission,
    SubmissionPatch,
    User,
    WorkflowDefinition,
)
from formflow.repositories.base import GrantFilters, Page, Repositories, WorkflowFilters


def _dump(v: object) -> str:
    return json.dumps(v, ensure_ascii=False, default=str)


class RedisSubmissionRepository:
    def __init__(self, client: Redis, prefix: str) -> None:
        self._r = client
        self._prefix = prefix

    def _key(self, submission_id: str) -> str:
        return f"{self._prefix}:submission:{submission_id}"

    def load(self, submission_id: str) -> Submission:
        raw = self._r.get(self._key(submission_id))
        if raw is None:
            raise NotFoundError(f"Submission not found: {submission_id}")
        return Submission.from_json(json.loads(raw))

    def save(
        self,
        submission_id: str,
        patch: SubmissionPatch,
        expected_revision: int | None = None,
    ) -> Submission:
        key = self._key(submission_id)
        with self._r.pipeline() as pipe:
            pipe.watch(key)
            raw = pipe.get(key)
            if raw is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            current = Submission.from_json(json.loads(raw))
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
            pipe.multi()
            pipe.set(key, _dump(updated.to_json()))
            try:
                pipe.execute()
            except WatchError as exc:
                raise ConcurrentUpdateError(
                    f"Submission {submission_id} changed concurrently"
                ) from exc
        return updated

    def create(self, submission: Submission) -> Submission:
        self._r.set(self._key(submission.id), _dump(submission.to_json()))
        return submission


class RedisUserRepository:
    def __init__(self, client: Redis, prefix: str) -> None:
        self._r = client
        self._prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}"

    def load(self, user_id: str) -> User:
        raw = self._r.get(self._key(user_id))
        if raw is None:
            raise NotFoundError(f"User not found: {user_id}")
        return User.from_json(json.loads(raw))

    def add(self, user: User) -> User:
        self._r.set(self._key(user.id), _dump(user.to_json()))
        return user


class RedisPermissionRepository:
    def __init__(self, client: Redis, prefix: str) -> None:
        self._r = client
        self._prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:grants:{user_id}"

    @staticmethod
    def _field(resource: str, resource_id: str | None) -> str:
        return _dump([resource, resource_id])

    @property
    def _ids(self) -> str:
        return f"{self._prefix}:grant_ids"

    @property
    def _order(self) -> str:
        return f"{self._prefix}:grant_order"

    def _all(self, user_id: str) -> list[tuple[int, PermissionGrant]]:
        out: list[tuple[int, PermissionGrant]] = []
        for raw in self._r.hvals(self._key(str(user_id))):
            doc = json.loads(raw)
            out.append((int(doc.pop("seq", 0)), PermissionGrant.from_json(doc)))
        out.sort(key=lambda pair: pair[0])
        return out

    def find_grant(
        self,
        user_id: str,
        resource: str,
        resource_id: str | None = None,
        exact: bool = True,
    ) -> PermissionGrant | None:
        raw = self._r.hget(self._key(str(user_id)), self._field(resource, resource_id))
        if raw is not None:
            doc = json.loads(raw)
            doc.pop("seq", None)
            return PermissionGrant.from_json(doc)
        if exact or resource_id is not None:
            return None
        for _, grant in self._all(user_id):
            if grant.resource == resource:
                return grant
        return None

    def upsert_grant(self, grant: PermissionGrant) -> PermissionGrant:
        key = self._key(grant.user_id)
        field = self._field(grant.resource, grant.resource_id)
        existing_raw = self._r.hget(key, field)
        if existing_raw is not None:
            existing = json.loads(existing_raw)
            seq = int(existing.get("seq", 0))
            grant = replace(grant, id=existing.get("id") or grant.id)
        else:
            seq = int(self._r.incr(f"{self._prefix}:grant_seq"))
        pipe = self._r.pipeline()
        self._write(pipe, key, field, grant, seq)
        pipe.hset(self._ids, grant.id, _dump([grant.user_id, field]))
        pipe.zadd(self._order, {grant.id: seq})
        pipe.execute()
        return grant

    @staticmethod
    def _write(pipe, key: str, field: str, grant: PermissionGrant, seq: int) -> None:
        doc = grant.to_json()
        doc["seq"] = seq
        pipe.hset(key, field, _dump(doc))

    def list_grants(self, user_id: str, application_id: str | None = None) -> list[PermissionGrant]:
        # newest first
        grants = [g for _, g in reversed(self._all(user_id))]
        if application_id:
            grants = [g for g in grants if g.application_id == application_id]
        return grants

    def list_grants_page(
        self, filters: GrantFilters, page: int = 1, limit: int = 10
    ) -> Page[PermissionGrant]:
        matched: list[PermissionGrant] = []
        for grant_id in self._r.zrevrange(self._order, 0, -1):
            found = self._load(grant_id)
            if found is not None and filters.matches(found[2]):
                matched.append(found[2])
        offset = (page - 1) * limit
        return Page(items=matched[offset : offset + limit], total=len(matched), page=page, limit=limit)

    def _load(self, grant_id: str) -> tuple[str, str, PermissionGrant, int] | None:
        loc = self._r.hget(self._ids, str(grant_id))
        if loc is None:
            return None
        user_id, field = json.loads(loc)
        key = self._key(user_id)
        raw = self._r.hget(key, field)
        if raw is None:
            return None
        doc = json.loads(raw)
        seq = int(doc.pop("seq", 0))
        return key, field, PermissionGrant.from_json(doc), seq

    def get_grant(self, grant_id: str) -> PermissionGrant:
        found = self._load(grant_id)
        if found is None:
            raise NotFoundError(f"Permission not found: {grant_id}")
        return found[2]

    def update_grant(self, grant: PermissionGrant) -> PermissionGrant:
        found = self._load(grant.id)
        if found is None:
            raise NotFoundError(f"Permission not found: {grant.id}")
        key, field, stored, seq = found
        updated = replace(
            stored,
            permissions=dict(grant.permissions),
            field_permissions=grant.field_permissions,
            application_id=grant.application_id,
        )
        pipe = self._r.pipeline()
        self._write(pipe, key, field, updated, seq)
        pipe.execute()
        return updated

    def delete_grant(self, grant_id: str) -> bool:
        found = self._load(grant_id)
        if found is None:
            return False
        key, field, _, _ = found
        pipe = self._r.pipeline()
        pipe.hdel(key, field)
        pipe.hdel(self._ids, str(grant_id))
        pipe.zrem(self._order, str(grant_id))
        pipe.execute()
        return True


class RedisWorkflowRepository:
    def __init__(self, client: Redis, prefix: str) -> None:
        self._r = client
        self._prefix = prefix

    def _key(self, workflow_id: str) -> str:
        return f"{self._prefix}:workflow:{workflow_id}"

    @property
    def _index(self) -> str:
        return f"{self._prefix}:workflows"

    def create(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        pipe = self._r.pipeline()
        pipe.set(self._key(workflow.id), _dump(workflow.to_json()))
        pipe.zadd(self._index, {workflow.id: time.time()})
        pipe.execute()
        return workflow

    def get(self, workflow_id: str) -> WorkflowDefinition:
        raw = self._r.get(self._key(workflow_id))
        if raw is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return WorkflowDefinition.from_json(json.loads(raw))

    def list(self, filters: WorkflowFilters, page: int = 1, limit: int = 10) -> Page[WorkflowDefinition]:
        ids = self._r.zrevrange(self._index, 0, -1)
        matched: list[WorkflowDefinition] = []
        if ids:
            for raw in self._r.mget([self._key(i) for i in ids]):
                if raw is None:
                    continue
                wf = WorkflowDefinition.from_json(json.loads(raw))
                if filters.matches(wf):
                    matched.append(wf)
        offset = (page - 1) * limit
        return Page(items=matched[offset : offset + limit], total=len(matched), page=page, limit=limit)

    def update(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        key = self._key(workflow.id)
        if not self._r.exists(key):
            raise NotFoundError(f"Workflow not found: {workflow.id}")
        self._r.set(key, _dump(workflow.to_json()))
        return workflow

    def delete(self, workflow_id: str) -> bool:
        pipe = self._r.pipeline()
        pipe.delete(self._key(workflow_id))
        pipe.zrem(self._index, workflow_id)
        deleted, _ = pipe.execute()
        return bool(deleted)


def build_redis_repositories(client: Redis, prefix: str, closer=None) -> Repositories:
    return Repositories(
        submissions=RedisSubmissionRepository(client, prefix),
        users=RedisUserRepository(client, prefix),
        grants=RedisPermissionRepository(client, prefix),
        workflows=RedisWorkflowRepository(client, prefix),
        closers=[closer] if closer is not None else [],
    )
