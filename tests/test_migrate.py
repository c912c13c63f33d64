import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from formflow.core.config import Settings
from formflow.core.models import Role
from formflow.db.base import Base
from formflow.repositories.sql import build_sql_repositories
from formflow.scripts import migrate


def test_wait_for_db_returns_once_reachable(sql_engine):
    migrate.wait_for_db(sql_engine, timeout_s=1, sleep=lambda s: pytest.fail("should not sleep"))


def test_wait_for_db_gives_up_after_timeout(tmp_path):
    # a directory cannot be opened as a database file
    engine = create_engine(f"sqlite:///{tmp_path}")
    naps = []

    with pytest.raises(OperationalError):
        migrate.wait_for_db(engine, timeout_s=-1, sleep=naps.append)
    assert naps == []


def test_ensure_admin_is_idempotent(sql_engine):
    Base.metadata.create_all(bind=sql_engine)
    cfg = Settings(_env_file=None, DEFAULT_ADMIN_ID="root", DEFAULT_ADMIN_EMAIL="root@example.com")

    assert migrate.ensure_admin(cfg, sql_engine) is True
    assert migrate.ensure_admin(cfg, sql_engine) is False

    admin = build_sql_repositories(sql_engine).users.load("root")
    assert admin.role is Role.SUPER_ADMIN
    assert admin.email == "root@example.com"


def test_main_skips_non_sql_backends(monkeypatch):
    monkeypatch.setattr(migrate, "run", lambda cmd: pytest.fail("alembic should not run"))

    assert migrate.main(Settings(_env_file=None, DB_BACKEND="memory")) == 0


def test_main_upgrades_then_seeds(monkeypatch, tmp_path):
    calls = []
    monkeypatch.setattr(migrate, "run", lambda cmd: calls.append(cmd) or 0)
    seeded = []
    monkeypatch.setattr(migrate, "ensure_admin", lambda cfg, engine: seeded.append(cfg.DEFAULT_ADMIN_ID))
    cfg = Settings(
        _env_file=None,
        DATABASE_DSN=f"sqlite:///{tmp_path / 'ff.db'}",
        AUTO_CREATE_ADMIN=True,
    )

    assert migrate.main(cfg) == 0
    assert calls == [["alembic", "upgrade", "head"]]
    assert seeded == ["admin"]


def test_main_stops_when_alembic_fails(monkeypatch, tmp_path):
    monkeypatch.setattr(migrate, "run", lambda cmd: 3)
    monkeypatch.setattr(migrate, "ensure_admin", lambda cfg, engine: pytest.fail("must not seed"))
    cfg = Settings(_env_file=None, DATABASE_DSN=f"sqlite:///{tmp_path / 'ff.db'}", AUTO_CREATE_ADMIN=True)

    assert migrate.main(cfg) == 3
