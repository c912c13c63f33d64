"""Behaviour every storage backend has to share."""

import json
from dataclasses import replace

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from formflow.core.errors import ConcurrentUpdateError, NotFoundError
from formflow.core.models import (
    GlobalPermission,
    HistoryEntry,
    PermissionGrant,
    Role,
    Stage,
    Submission,
    SubmissionPatch,
    SubmissionStatus,
    User,
    WorkflowDefinition,
    WorkflowState,
)
from formflow.core.workflow import WorkflowEngine
from formflow.db.models import PermissionRow
from formflow.repositories.base import GrantFilters, WorkflowFilters
from formflow.repositories.memory import build_memory_repositories
from formflow.repositories.redis_store import build_redis_repositories


@pytest.fixture(params=["memory", "sql", "redis"])
def repos(request, fake_redis):
    if request.param == "sql":
        return request.getfixturevalue("sql_repos")
    if request.param == "redis":
        return build_redis_repositories(fake_redis, "test")
    return build_memory_repositories()


def _patch(clock, stage="review", status=SubmissionStatus.IN_REVIEW):
    entry = HistoryEntry(stage="draft", action="approve", user="u-1", timestamp=clock())
    return SubmissionPatch(workflow_state=WorkflowState(current_stage=stage, history=(entry,)), status=status)


def _workflow(wf_id, name, **kwargs):
    kwargs.setdefault("application_id", "app-1")
    return WorkflowDefinition(
        id=wf_id,
        name=name,
        stages=(Stage(id="draft", actions=("submit",)),),
        **kwargs,
    )


# ---- submissions ----


def test_submission_round_trip(repos):
    repos.users.add(User(id="u-1"))
    created = Submission(id="s-1", form_id="form-1", application_id="app-1", data={"amount": 12.5}, submitted_by="u-1")
    repos.submissions.create(created)

    assert repos.submissions.load("s-1") == created


def test_save_bumps_revision_and_writes_patch(repos, clock):
    repos.submissions.create(Submission(id="s-1", data={"amount": 3}))

    saved = repos.submissions.save("s-1", _patch(clock), expected_revision=0)

    assert saved.revision == 1
    loaded = repos.submissions.load("s-1")
    assert loaded.revision == 1
    assert loaded.status is SubmissionStatus.IN_REVIEW
    assert loaded.workflow_state.current_stage == "review"
    assert loaded.workflow_state.history[0].timestamp == saved.workflow_state.history[0].timestamp
    # data is never touched by a workflow save
    assert loaded.data == {"amount": 3}


def test_save_with_stale_revision_is_rejected(repos, clock):
    repos.submissions.create(Submission(id="s-1"))
    repos.submissions.save("s-1", _patch(clock), expected_revision=0)

    with pytest.raises(ConcurrentUpdateError):
        repos.submissions.save("s-1", _patch(clock, status=SubmissionStatus.REJECTED), expected_revision=0)

    assert repos.submissions.load("s-1").status is SubmissionStatus.IN_REVIEW


def test_save_without_expected_revision_always_applies(repos, clock):
    repos.submissions.create(Submission(id="s-1", revision=5))

    assert repos.submissions.save("s-1", _patch(clock)).revision == 6


def test_missing_submission(repos, clock):
    with pytest.raises(NotFoundError):
        repos.submissions.load("nope")
    with pytest.raises(NotFoundError):
        repos.submissions.save("nope", _patch(clock), expected_revision=0)


# ---- users ----


def test_users(repos):
    user = User(
        id="u-1",
        role=Role.MANAGER,
        email="m@example.com",
        permissions=(GlobalPermission(resource="forms", actions=frozenset({"read", "update"})),),
    )
    repos.users.add(user)

    assert repos.users.load("u-1") == user
    with pytest.raises(NotFoundError):
        repos.users.load("u-2")


# ---- grants ----


def test_upsert_keeps_one_grant_per_key(repos):
    first = repos.grants.upsert_grant(
        PermissionGrant(id="g-1", user_id="u-1", resource="forms", resource_id="f-1", permissions={"read": True})
    )
    second = repos.grants.upsert_grant(
        PermissionGrant(id="g-2", user_id="u-1", resource="forms", resource_id="f-1", permissions={"read": False})
    )

    assert first.id == "g-1"
    assert second.id == "g-1"
    stored = repos.grants.find_grant("u-1", "forms", "f-1")
    assert stored.id == "g-1"
    assert stored.permissions == {"read": False}
    assert len(repos.grants.list_grants("u-1")) == 1


def test_find_grant_exact_and_fallback(repos):
    repos.grants.upsert_grant(PermissionGrant(id="g-1", user_id="u-1", resource="forms", resource_id="f-1"))
    repos.grants.upsert_grant(PermissionGrant(id="g-2", user_id="u-1", resource="forms", resource_id="f-2"))

    assert repos.grants.find_grant("u-1", "forms", "f-2").id == "g-2"
    assert repos.grants.find_grant("u-1", "forms", None) is None
    assert repos.grants.find_grant("u-1", "forms", None, exact=False).id == "g-1"
    assert repos.grants.find_grant("u-1", "forms", "f-3", exact=False) is None
    assert repos.grants.find_grant("u-2", "forms", None, exact=False) is None

    repos.grants.upsert_grant(PermissionGrant(id="g-3", user_id="u-1", resource="forms"))
    assert repos.grants.find_grant("u-1", "forms", None, exact=False).id == "g-3"


def test_field_permissions_survive_storage(repos):
    repos.grants.upsert_grant(
        PermissionGrant(
            id="g-1",
            user_id="u-1",
            resource="forms",
            permissions={"read": True},
            field_permissions={"salary": {"read": False}, "notes": {}},
        )
    )
    repos.grants.upsert_grant(PermissionGrant(id="g-2", user_id="u-1", resource="reports"))

    assert repos.grants.find_grant("u-1", "forms").field_permissions == {"salary": {"read": False}, "notes": {}}
    assert repos.grants.find_grant("u-1", "reports").field_permissions is None


def test_list_grants_by_application(repos):
    for n, app in enumerate(["app-1", "app-2", "app-1"]):
        repos.grants.upsert_grant(
            PermissionGrant(id=f"g-{n}", user_id="u-1", resource=f"r-{n}", application_id=app)
        )
    repos.grants.upsert_grant(PermissionGrant(id="g-x", user_id="u-2", resource="r-0", application_id="app-1"))

    assert {g.id for g in repos.grants.list_grants("u-1")} == {"g-0", "g-1", "g-2"}
    assert {g.id for g in repos.grants.list_grants("u-1", "app-1")} == {"g-0", "g-2"}
    assert repos.grants.list_grants("u-3") == []


def _seed_grants(repos):
    rows = [
        ("g-0", "u-1", "forms", "app-1"),
        ("g-1", "u-1", "reports", "app-2"),
        ("g-2", "u-2", "forms", "app-1"),
        ("g-3", "u-2", "forms", "app-2"),
    ]
    for gid, uid, resource, app in rows:
        repos.grants.upsert_grant(
            PermissionGrant(id=gid, user_id=uid, resource=resource, resource_id=gid, application_id=app)
        )


def test_list_grants_page_newest_first(repos):
    _seed_grants(repos)

    first = repos.grants.list_grants_page(GrantFilters(), page=1, limit=3)
    assert [g.id for g in first.items] == ["g-3", "g-2", "g-1"]
    assert first.pagination() == {"total": 4, "page": 1, "limit": 3, "pages": 2}
    assert [g.id for g in repos.grants.list_grants_page(GrantFilters(), page=2, limit=3).items] == ["g-0"]


@pytest.mark.parametrize(
    "filters, expected",
    [
        (GrantFilters(resource="forms"), ["g-3", "g-2", "g-0"]),
        (GrantFilters(user_id="u-2"), ["g-3", "g-2"]),
        (GrantFilters(application_id="app-1"), ["g-2", "g-0"]),
        (GrantFilters(resource="forms", user_id="u-1", application_id="app-1"), ["g-0"]),
        (GrantFilters(resource="dashboards"), []),
    ],
)
def test_list_grants_page_filters(repos, filters, expected):
    _seed_grants(repos)

    result = repos.grants.list_grants_page(filters)

    assert [g.id for g in result.items] == expected
    assert result.total == len(expected)


def test_update_grant_by_id(repos):
    repos.grants.upsert_grant(
        PermissionGrant(id="g-1", user_id="u-1", resource="forms", resource_id="f-1", permissions={"read": True})
    )

    updated = repos.grants.update_grant(
        PermissionGrant(
            id="g-1",
            user_id="ignored",
            resource="ignored",
            permissions={"update": True},
            field_permissions={"salary": {"read": False}},
            application_id="app-9",
        )
    )

    assert (updated.user_id, updated.resource, updated.resource_id) == ("u-1", "forms", "f-1")
    stored = repos.grants.get_grant("g-1")
    assert stored == updated
    assert stored.permissions == {"update": True}
    assert stored.field_permissions == {"salary": {"read": False}}
    assert stored.application_id == "app-9"
    assert repos.grants.find_grant("u-1", "forms", "f-1") == stored
    with pytest.raises(NotFoundError):
        repos.grants.update_grant(PermissionGrant(id="g-404", user_id="u-1", resource="forms"))


def test_delete_grant_by_id(repos):
    _seed_grants(repos)

    assert repos.grants.delete_grant("g-2") is True
    assert repos.grants.delete_grant("g-2") is False
    with pytest.raises(NotFoundError):
        repos.grants.get_grant("g-2")
    assert repos.grants.find_grant("u-2", "forms", "g-2") is None
    assert [g.id for g in repos.grants.list_grants_page(GrantFilters(user_id="u-2")).items] == ["g-3"]

    # the freed key can be granted again
    repos.grants.upsert_grant(PermissionGrant(id="g-5", user_id="u-2", resource="forms", resource_id="g-2"))
    assert repos.grants.get_grant("g-5").resource_id == "g-2"


# ---- workflows ----


def test_workflow_crud(repos):
    wf = _workflow("wf-1", "Expense approval", form_id="form-1", created_by="u-1")
    repos.workflows.create(wf)
    assert repos.workflows.get("wf-1") == wf

    renamed = replace(wf, name="Expense approval v2")
    repos.workflows.update(renamed)
    assert repos.workflows.get("wf-1").name == "Expense approval v2"

    assert repos.workflows.delete("wf-1") is True
    assert repos.workflows.delete("wf-1") is False
    with pytest.raises(NotFoundError):
        repos.workflows.get("wf-1")
    with pytest.raises(NotFoundError):
        repos.workflows.update(renamed)


def test_workflow_list_filters_and_pages(repos):
    repos.workflows.create(_workflow("wf-1", "Expense approval", created_by="u-1", form_id="form-1"))
    repos.workflows.create(_workflow("wf-2", "Leave request", created_by="u-1", description="HR expense-free"))
    repos.workflows.create(_workflow("wf-3", "Travel", created_by="u-2", application_id="app-2"))

    everything = repos.workflows.list(WorkflowFilters(), page=1, limit=2)
    assert everything.total == 3
    assert len(everything.items) == 2
    assert everything.pagination() == {"total": 3, "page": 1, "limit": 2, "pages": 2}
    assert len(repos.workflows.list(WorkflowFilters(), page=2, limit=2).items) == 1

    mine = repos.workflows.list(WorkflowFilters(created_by="u-1"))
    assert {wf.id for wf in mine.items} == {"wf-1", "wf-2"}

    searched = repos.workflows.list(WorkflowFilters(search="EXPENSE"))
    assert {wf.id for wf in searched.items} == {"wf-1", "wf-2"}

    assert [wf.id for wf in repos.workflows.list(WorkflowFilters(application_id="app-2")).items] == ["wf-3"]
    assert [wf.id for wf in repos.workflows.list(WorkflowFilters(form_id="form-1")).items] == ["wf-1"]


# ---- engine on top of each backend ----


def test_engine_runs_on_every_backend(repos, clock):
    wf = WorkflowDefinition.from_json(
        {
            "id": "wf-1",
            "applicationId": "app-1",
            "stages": [
                {"id": "draft", "actions": ["submit"]},
                {"id": "review", "role": "manager", "actions": ["approve", "reject"]},
            ],
            "transitions": [{"from": "draft", "to": "review", "action": "submit"}],
        }
    )
    repos.users.add(User(id="u-staff", role=Role.STAFF))
    repos.users.add(User(id="u-manager", role=Role.MANAGER))
    repos.submissions.create(Submission(id="s-1", submitted_by="u-staff"))
    engine = WorkflowEngine(repos.submissions, repos.users, clock=clock)

    engine.execute_action(wf, "s-1", "submit", "u-staff")
    result = engine.execute_action(wf, "s-1", "approve", "u-manager", "ok")

    assert result.status is SubmissionStatus.APPROVED
    stored = repos.submissions.load("s-1")
    assert stored.revision == 2
    assert [(h.stage, h.action) for h in stored.workflow_state.history] == [("draft", "submit"), ("review", "approve")]


# ---- backend specifics ----


def test_redis_save_detects_concurrent_writer(fake_redis, clock):
    repos = build_redis_repositories(fake_redis, "test")
    repos.submissions.create(Submission(id="s-1"))

    def other_writer():
        fake_redis.before_execute = None
        fake_redis.set("test:submission:s-1", json.dumps(Submission(id="s-1", revision=7).to_json()))

    fake_redis.before_execute = other_writer

    with pytest.raises(ConcurrentUpdateError):
        repos.submissions.save("s-1", _patch(clock), expected_revision=0)
    assert repos.submissions.load("s-1").revision == 7


def test_redis_key_layout(fake_redis):
    repos = build_redis_repositories(fake_redis, "ff")
    repos.submissions.create(Submission(id="s-1"))
    repos.users.add(User(id="u-1"))
    repos.grants.upsert_grant(PermissionGrant(id="g-1", user_id="u-1", resource="forms", resource_id="f-1"))
    repos.workflows.create(_workflow("wf-1", "Expense"))

    assert {"ff:submission:s-1", "ff:user:u-1", "ff:workflow:wf-1", "ff:grant_seq"} <= set(fake_redis.strings)
    assert list(fake_redis.hashes["ff:grants:u-1"]) == ['["forms", "f-1"]']
    assert list(fake_redis.zsets["ff:workflows"]) == ["wf-1"]


def test_sql_grant_lookup_is_per_user(sql_repos):
    sql_repos.users.add(User(id="u-1"))
    sql_repos.grants.upsert_grant(PermissionGrant(id="g-1", user_id="u-1", resource="forms"))

    assert sql_repos.grants.find_grant("u-1", "forms").id == "g-1"
    assert sql_repos.grants.find_grant("u-2", "forms") is None


def test_sql_rejects_duplicate_grant_rows(sql_repos, sql_engine):
    sql_repos.grants.upsert_grant(PermissionGrant(id="g-1", user_id="u-1", resource="forms", resource_id="f-1"))

    with Session(sql_engine) as db:
        db.add(PermissionRow(id="g-2", user_id="u-1", resource="forms", resource_id="f-1"))
        with pytest.raises(IntegrityError):
            db.commit()


def test_sql_unique_key_does_not_cover_null_resource_id(sql_repos, sql_engine):
    # resource-wide rows only stay unique through upsert_grant
    with Session(sql_engine) as db:
        db.add(PermissionRow(id="g-1", user_id="u-1", resource="forms", resource_id=None))
        db.add(PermissionRow(id="g-2", user_id="u-1", resource="forms", resource_id=None))
        db.commit()

    assert sql_repos.grants.find_grant("u-1", "forms").id == "g-1"


def test_redis_grant_index_follows_writes(fake_redis):
    repos = build_redis_repositories(fake_redis, "ff")
    repos.grants.upsert_grant(PermissionGrant(id="g-1", user_id="u-1", resource="forms", resource_id="f-1"))

    assert json.loads(fake_redis.hashes["ff:grant_ids"]["g-1"]) == ["u-1", '["forms", "f-1"]']
    assert list(fake_redis.zsets["ff:grant_order"]) == ["g-1"]

    repos.grants.delete_grant("g-1")

    assert fake_redis.hashes["ff:grant_ids"] == {}
    assert fake_redis.hashes["ff:grants:u-1"] == {}
    assert fake_redis.zsets["ff:grant_order"] == {}
