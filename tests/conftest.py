"""Test configuration and fixtures."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from redis.exceptions import WatchError
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from formflow.core.config import Settings
from formflow.core.models import (
    Role,
    Stage,
    Submission,
    Transition,
    User,
    WorkflowDefinition,
)
from formflow.repositories.memory import build_memory_repositories
from formflow.repositories.sql import build_sql_repositories


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


class FakeRedis:
    """Just enough of redis-py's client (decode_responses=True) for the document store."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.versions: Counter[str] = Counter()
        # Called right before a watched transaction commits.
        self.before_execute: Callable[[], None] | None = None

    def _touch(self, key: str) -> None:
        self.versions[key] += 1

    def get(self, key: str) -> str | None:
        return self.strings.get(key)

    def set(self, key: str, value: Any) -> bool:
        self.strings[key] = str(value)
        self._touch(key)
        return True

    def exists(self, key: str) -> int:
        return int(key in self.strings or key in self.hashes or key in self.zsets)

    def delete(self, *keys: str) -> int:
        n = 0
        for key in keys:
            for store in (self.strings, self.hashes, self.zsets):
                if key in store:
                    del store[key]
                    self._touch(key)
                    n += 1
        return n

    def mget(self, keys: list[str]) -> list[str | None]:
        return [self.strings.get(k) for k in keys]

    def incr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) + 1
        self.set(key, value)
        return value

    def hget(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    def hset(self, key: str, field: str, value: str) -> int:
        h = self.hashes.setdefault(key, {})
        added = field not in h
        h[field] = value
        self._touch(key)
        return int(added)

    def hdel(self, key: str, *fields: str) -> int:
        h = self.hashes.get(key, {})
        n = sum(1 for f in fields if h.pop(f, None) is not None)
        self._touch(key)
        return n

    def hvals(self, key: str) -> list[str]:
        return list(self.hashes.get(key, {}).values())

    def zadd(self, key: str, mapping: dict[str, float]) -> int:
        z = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in z)
        z.update(mapping)
        self._touch(key)
        return added

    def zrem(self, key: str, *members: str) -> int:
        z = self.zsets.get(key, {})
        n = 0
        for m in members:
            if z.pop(m, None) is not None:
                n += 1
        self._touch(key)
        return n

    def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1], reverse=True)
        members = [m for m, _ in items]
        return members[start:] if end == -1 else members[start : end + 1]

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, client: FakeRedis) -> None:
        self._r = client
        self._reset()

    def _reset(self) -> None:
        self._watched: dict[str, int] = {}
        self._queue: list[tuple[str, tuple, dict]] = []
        self._multi = False

    def __enter__(self) -> FakePipeline:
        return self

    def __exit__(self, *exc: object) -> None:
        self._reset()

    def watch(self, *keys: str) -> None:
        for key in keys:
            self._watched[key] = self._r.versions[key]

    def multi(self) -> None:
        self._multi = True

    def __getattr__(self, name: str):
        fn = getattr(self._r, name)

        def call(*args, **kwargs):
            # Watched and not yet in MULTI: commands run immediately.
            if self._watched and not self._multi:
                return fn(*args, **kwargs)
            self._queue.append((name, args, kwargs))
            return self

        return call

    def execute(self) -> list[Any]:
        if self._watched and self._r.before_execute is not None:
            self._r.before_execute()
        for key, version in self._watched.items():
            if self._r.versions[key] != version:
                self._reset()
                raise WatchError("Watched variable changed.")
        results = [getattr(self._r, name)(*args, **kwargs) for name, args, kwargs in self._queue]
        self._reset()
        return results


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def memory_repos():
    return build_memory_repositories()


@pytest.fixture
def sql_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def sql_repos(sql_engine):
    return build_sql_repositories(sql_engine, create_tables=True)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None, DB_BACKEND="memory", SECRET_KEY="test-secret", LOG_LEVEL="DEBUG")


@pytest.fixture
def review_workflow() -> WorkflowDefinition:
    """Two stages, one approve edge: draft -> review."""
    return WorkflowDefinition(
        id="wf-1",
        application_id="app-1",
        form_id="form-1",
        name="Expense approval",
        stages=(
            Stage(id="draft", name="Draft", actions=("submit", "approve", "reject")),
            Stage(id="review", name="Review", actions=("approve", "reject", "comment")),
        ),
        transitions=(Transition(from_stage="draft", to_stage="review", action="approve"),),
        created_by="u-manager",
    )


@pytest.fixture
def seeded(memory_repos):
    """Memory repositories with a few users and one untouched submission."""
    repos = memory_repos
    repos.users.add(User(id="u-admin", role=Role.SUPER_ADMIN))
    repos.users.add(User(id="u-manager", role=Role.MANAGER))
    repos.users.add(User(id="u-staff", role=Role.STAFF))
    repos.users.add(User(id="u-plain", role=Role.USER))
    repos.submissions.create(Submission(id="s-1", form_id="form-1", application_id="app-1"))
    return repos
