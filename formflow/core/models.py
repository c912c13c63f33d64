"""Typed records for workflow definitions, submissions, users and grants.

Stored blobs (stages, transitions, history, permission flags) arrive as plain
JSON from either backend. Each record parses them with ``from_json`` and
rejects malformed input with :class:`ValidationError`, so the workflow engine
and the permission evaluator only ever see these types.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from formflow.core.errors import ValidationError


class Role(str, enum.Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    USER = "user"


class SubmissionStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"


CRUD_ACTIONS: tuple[str, ...] = ("create", "read", "update", "delete")
WILDCARD_RESOURCE = "*"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- parsing helpers ----


def _mapping(obj: object, what: str) -> Mapping[str, Any]:
    if not isinstance(obj, Mapping):
        raise ValidationError(f"{what} must be an object")
    return obj


def _opt_str(obj: Mapping[str, Any], key: str) -> str | None:
    v = obj.get(key)
    if v is None or v == "":
        return None
    # Ids coming from the relational backend may be integers.
    if isinstance(v, int) and not isinstance(v, bool):
        return str(v)
    if not isinstance(v, str):
        raise ValidationError(f"{key} must be a string")
    return v


def _req_str(obj: Mapping[str, Any], key: str) -> str:
    v = _opt_str(obj, key)
    if v is None:
        raise ValidationError(f"missing field: {key}")
    return v


def _str_list(obj: Mapping[str, Any], key: str) -> tuple[str, ...]:
    v = obj.get(key)
    if v is None:
        return ()
    if isinstance(v, (str, bytes)) or not isinstance(v, Iterable):
        raise ValidationError(f"{key} must be a list")
    out: list[str] = []
    for item in v:
        s = str(item)
        if s not in out:
            out.append(s)
    return tuple(out)


def _flags(v: object, what: str) -> dict[str, Any]:
    # Values are kept as stored: only a literal True grants an action.
    if v is None:
        return {}
    return {str(k): val for k, val in _mapping(v, what).items()}


def _parse_dt(v: object) -> datetime:
    if isinstance(v, datetime):
        return v
    if isinstance(v, str):
        try:
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp: {v!r}") from exc
    raise ValidationError("timestamp must be an ISO-8601 string")


# ---- workflow definition ----


@dataclass(frozen=True, slots=True)
class Stage:
    """One step of a workflow.

    ``users`` (explicit allow-list) takes precedence over ``role`` whenever it
    is non-empty.
    """

    id: str
    name: str = ""
    role: str | None = None
    users: frozenset[str] = frozenset()
    actions: tuple[str, ...] = ()

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "users": sorted(self.users),
            "actions": list(self.actions),
        }

    @staticmethod
    def from_json(obj: object) -> Stage:
        o = _mapping(obj, "stage")
        return Stage(
            id=_req_str(o, "id"),
            name=_opt_str(o, "name") or "",
            role=_opt_str(o, "role"),
            users=frozenset(_str_list(o, "users")),
            actions=_str_list(o, "actions"),
        )


@dataclass(frozen=True, slots=True)
class Transition:
    """Directed edge between two stages. ``action=None`` matches any action."""

    from_stage: str
    to_stage: str
    action: str | None = None
    condition: Any = None

    def matches(self, stage_id: str, action: str) -> bool:
        return self.from_stage == stage_id and (self.action is None or self.action == action)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"from": self.from_stage, "to": self.to_stage}
        if self.action is not None:
            out["action"] = self.action
        if self.condition is not None:
            out["condition"] = self.condition
        return out

    @staticmethod
    def from_json(obj: object) -> Transition:
        o = _mapping(obj, "transition")
        return Transition(
            from_stage=_req_str(o, "from"),
            to_stage=_req_str(o, "to"),
            action=_opt_str(o, "action"),
            condition=o.get("condition"),
        )


@dataclass(frozen=True, slots=True)
class WorkflowSettings:
    """Escalation/auto-progress configuration. Stored, never executed."""

    auto_progress: bool = False
    enable_escalation: bool = False
    escalation_time: float = 24

    def to_json(self) -> dict[str, object]:
        return {
            "autoProgress": self.auto_progress,
            "enableEscalation": self.enable_escalation,
            "escalationTime": self.escalation_time,
        }

    def merged(self, patch: Mapping[str, Any] | None) -> WorkflowSettings:
        data = self.to_json()
        data.update(patch or {})
        return WorkflowSettings.from_json(data)

    @staticmethod
    def from_json(obj: object) -> WorkflowSettings:
        if obj is None:
            return WorkflowSettings()
        o = _mapping(obj, "settings")
        hours = o.get("escalationTime", 24)
        if isinstance(hours, bool) or not isinstance(hours, (int, float)):
            raise ValidationError("escalationTime must be a number of hours")
        return WorkflowSettings(
            auto_progress=bool(o.get("autoProgress", False)),
            enable_escalation=bool(o.get("enableEscalation", False)),
            escalation_time=hours,
        )


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    id: str
    application_id: str
    stages: tuple[Stage, ...]
    transitions: tuple[Transition, ...] = ()
    form_id: str | None = None
    name: str = ""
    description: str = ""
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)
    created_by: str | None = None

    def __post_init__(self) -> None:
        if not self.stages:
            raise ValidationError("workflow must define at least one stage")
        ids = [s.id for s in self.stages]
        if len(set(ids)) != len(ids):
            raise ValidationError("stage ids must be unique")
        known = set(ids)
        for t in self.transitions:
            if t.from_stage not in known or t.to_stage not in known:
                raise ValidationError(
                    f"transition {t.from_stage} -> {t.to_stage} references an unknown stage"
                )

    @property
    def first_stage_id(self) -> str:
        return self.stages[0].id

    def stage(self, stage_id: str) -> Stage | None:
        for s in self.stages:
            if s.id == stage_id:
                return s
        return None

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "applicationId": self.application_id,
            "formId": self.form_id,
            "name": self.name,
            "description": self.description,
            "stages": [s.to_json() for s in self.stages],
            "transitions": [t.to_json() for t in self.transitions],
            "settings": self.settings.to_json(),
            "createdBy": self.created_by,
        }

    @staticmethod
    def from_json(obj: object) -> WorkflowDefinition:
        o = _mapping(obj, "workflow")
        stages_raw = o.get("stages") or []
        transitions_raw = o.get("transitions") or []
        if not isinstance(stages_raw, list) or not isinstance(transitions_raw, list):
            raise ValidationError("stages and transitions must be lists")
        return WorkflowDefinition(
            id=_opt_str(o, "id") or new_id(),
            application_id=_req_str(o, "applicationId"),
            form_id=_opt_str(o, "formId"),
            name=_opt_str(o, "name") or "",
            description=_opt_str(o, "description") or "",
            stages=tuple(Stage.from_json(s) for s in stages_raw),
            transitions=tuple(Transition.from_json(t) for t in transitions_raw),
            settings=WorkflowSettings.from_json(o.get("settings")),
            created_by=_opt_str(o, "createdBy"),
        )


# ---- submission workflow state ----


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    stage: str
    action: str
    user: str
    timestamp: datetime
    comments: str = ""

    def to_json(self) -> dict[str, object]:
        return {
            "stage": self.stage,
            "action": self.action,
            "user": self.user,
            "timestamp": self.timestamp.isoformat(),
            "comments": self.comments,
        }

    @staticmethod
    def from_json(obj: object) -> HistoryEntry:
        o = _mapping(obj, "history entry")
        return HistoryEntry(
            stage=_req_str(o, "stage"),
            action=_req_str(o, "action"),
            user=_req_str(o, "user"),
            timestamp=_parse_dt(o.get("timestamp")),
            comments=_opt_str(o, "comments") or "",
        )


@dataclass(frozen=True, slots=True)
class WorkflowState:
    """Append-only history plus the stage the submission currently sits in."""

    current_stage: str | None = None
    history: tuple[HistoryEntry, ...] = ()

    def append(self, entry: HistoryEntry) -> WorkflowState:
        return replace(self, history=self.history + (entry,))

    def to_json(self) -> dict[str, object]:
        return {
            "currentStage": self.current_stage,
            "history": [h.to_json() for h in self.history],
        }

    @staticmethod
    def from_json(obj: object) -> WorkflowState | None:
        if obj is None:
            return None
        o = _mapping(obj, "workflowState")
        history_raw = o.get("history") or []
        if not isinstance(history_raw, list):
            raise ValidationError("history must be a list")
        return WorkflowState(
            current_stage=_opt_str(o, "currentStage"),
            history=tuple(HistoryEntry.from_json(h) for h in history_raw),
        )


def _status(v: object) -> SubmissionStatus:
    if v is None:
        return SubmissionStatus.SUBMITTED
    try:
        return SubmissionStatus(v)
    except ValueError as exc:
        raise ValidationError(f"unknown submission status: {v!r}") from exc


@dataclass(frozen=True, slots=True)
class Submission:
    id: str
    form_id: str | None = None
    application_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    workflow_state: WorkflowState | None = None
    submitted_by: str | None = None
    # Bumped on every save; compared on save to detect lost updates.
    revision: int = 0

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "formId": self.form_id,
            "applicationId": self.application_id,
            "data": self.data,
            "status": self.status.value,
            "workflowState": self.workflow_state.to_json() if self.workflow_state else None,
            "submittedBy": self.submitted_by,
            "revision": self.revision,
        }

    @staticmethod
    def from_json(obj: object) -> Submission:
        o = _mapping(obj, "submission")
        data = o.get("data") or {}
        revision = o.get("revision", 0)
        if isinstance(revision, bool) or not isinstance(revision, int):
            raise ValidationError("revision must be an integer")
        return Submission(
            id=_req_str(o, "id"),
            form_id=_opt_str(o, "formId"),
            application_id=_opt_str(o, "applicationId"),
            data=dict(_mapping(data, "data")),
            status=_status(o.get("status")),
            workflow_state=WorkflowState.from_json(o.get("workflowState")),
            submitted_by=_opt_str(o, "submittedBy"),
            revision=revision,
        )


@dataclass(frozen=True, slots=True)
class SubmissionPatch:
    """The only fields the workflow engine writes back to a submission."""

    workflow_state: WorkflowState
    status: SubmissionStatus


# ---- users and grants ----


@dataclass(frozen=True, slots=True)
class GlobalPermission:
    """Coarse grant embedded in the user record, checked before stored grants."""

    resource: str
    actions: frozenset[str] = frozenset()

    def allows(self, resource: str, action: str) -> bool:
        return self.resource in (resource, WILDCARD_RESOURCE) and action in self.actions

    def to_json(self) -> dict[str, object]:
        return {"resource": self.resource, "actions": sorted(self.actions)}

    @staticmethod
    def from_json(obj: object) -> GlobalPermission:
        o = _mapping(obj, "permission")
        return GlobalPermission(
            resource=_req_str(o, "resource"),
            actions=frozenset(_str_list(o, "actions")),
        )


@dataclass(frozen=True, slots=True)
class User:
    id: str
    role: Role = Role.USER
    email: str = ""
    permissions: tuple[GlobalPermission, ...] = ()
    is_active: bool = True

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "permissions": [p.to_json() for p in self.permissions],
            "isActive": self.is_active,
        }

    @staticmethod
    def from_json(obj: object) -> User:
        o = _mapping(obj, "user")
        role_raw = o.get("role") or Role.USER.value
        try:
            role = Role(role_raw)
        except ValueError as exc:
            raise ValidationError(f"unknown role: {role_raw!r}") from exc
        perms_raw = o.get("permissions") or []
        if not isinstance(perms_raw, list):
            raise ValidationError("permissions must be a list")
        return User(
            id=_req_str(o, "id"),
            role=role,
            email=_opt_str(o, "email") or "",
            permissions=tuple(GlobalPermission.from_json(p) for p in perms_raw),
            is_active=bool(o.get("isActive", True)),
        )


@dataclass(frozen=True, slots=True)
class PermissionGrant:
    """Stored CRUD (and optional per-field CRUD) rights of one user on one resource.

    At most one grant exists per ``(user_id, resource, resource_id)``.
    """

    id: str
    user_id: str
    resource: str
    resource_id: str | None = None
    permissions: dict[str, Any] = field(default_factory=dict)
    field_permissions: dict[str, dict[str, Any]] | None = None
    application_id: str | None = None

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.user_id, self.resource, self.resource_id)

    def allows(self, action: str) -> bool:
        return self.permissions.get(action) is True

    def merged(
        self,
        permissions: Mapping[str, Any] | None,
        field_permissions: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> PermissionGrant:
        perms = {**self.permissions, **(permissions or {})}
        fields = self.field_permissions
        if field_permissions:
            fields = {**(self.field_permissions or {})}
            for name, flags in field_permissions.items():
                fields[name] = dict(flags)
        return replace(self, permissions=perms, field_permissions=fields)

    def revoked(self, actions: Iterable[str]) -> PermissionGrant:
        perms = dict(self.permissions)
        for action in actions:
            perms[action] = False
        return replace(self, permissions=perms)

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user": self.user_id,
            "resource": self.resource,
            "resourceId": self.resource_id,
            "permissions": dict(self.permissions),
            "fieldPermissions": (
                {k: dict(v) for k, v in self.field_permissions.items()}
                if self.field_permissions is not None
                else None
            ),
            "applicationId": self.application_id,
        }

    @staticmethod
    def from_json(obj: object) -> PermissionGrant:
        o = _mapping(obj, "grant")
        fields_raw = o.get("fieldPermissions")
        fields: dict[str, dict[str, Any]] | None = None
        if fields_raw is not None:
            fields = {
                str(name): _flags(flags, f"fieldPermissions.{name}")
                for name, flags in _mapping(fields_raw, "fieldPermissions").items()
            }
        return PermissionGrant(
            id=_opt_str(o, "id") or new_id(),
            user_id=_req_str(o, "user"),
            resource=_req_str(o, "resource"),
            resource_id=_opt_str(o, "resourceId"),
            permissions=_flags(o.get("permissions"), "permissions"),
            field_permissions=fields,
            application_id=_opt_str(o, "applicationId"),
        )
