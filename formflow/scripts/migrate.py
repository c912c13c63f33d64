from __future__ import annotations

import logging
import os
import subprocess
import time

from sqlalchemy import Engine, inspect, text
from sqlalchemy.exc import OperationalError

from formflow.core.config import Settings, settings
from formflow.core.errors import NotFoundError
from formflow.core.logging import configure_logging
from formflow.core.models import Role, User
from formflow.db.session import make_engine

logger = logging.getLogger("formflow.migrate")


def wait_for_db(engine: Engine, timeout_s: int = 60, sleep=time.sleep) -> None:
    """Wait until the database is accepting connections."""
    start = time.time()
    delay = 1.0

    while True:
        try:
            with engine.begin() as conn:
                conn.execute(text("SELECT 1"))
            return
        except OperationalError:
            if time.time() - start > timeout_s:
                raise
            logger.info("Database not ready, retrying in %.1fs", delay)
            sleep(delay)
            delay = min(delay * 1.5, 5.0)


def run(cmd: list[str]) -> int:
    p = subprocess.run(cmd, check=False)
    return p.returncode


def ensure_admin(cfg: Settings, engine: Engine) -> bool:
    """Create the bootstrap super admin once. Returns True if it was created."""
    from formflow.repositories.sql import build_sql_repositories

    users = build_sql_repositories(engine).users
    try:
        users.load(cfg.DEFAULT_ADMIN_ID)
        return False
    except NotFoundError:
        users.add(User(id=cfg.DEFAULT_ADMIN_ID, email=cfg.DEFAULT_ADMIN_EMAIL, role=Role.SUPER_ADMIN))
        logger.info("Created bootstrap super admin %s", cfg.DEFAULT_ADMIN_ID)
        return True


def main(cfg: Settings = settings) -> int:
    configure_logging(cfg.LOG_LEVEL)
    if cfg.DB_BACKEND != "sql":
        logger.info("DB_BACKEND=%s has no schema to migrate", cfg.DB_BACKEND)
        return 0

    engine = make_engine(cfg)
    wait_for_db(engine, timeout_s=int(os.getenv("DB_WAIT_TIMEOUT", "90")))

    tables = set(inspect(engine).get_table_names())
    if "alembic_version" not in tables and "form_submissions" in tables:
        # Existing schema without alembic tracking: stamp head
        rc = run(["alembic", "stamp", "head"])
    else:
        rc = run(["alembic", "upgrade", "head"])
    if rc != 0:
        # Don't seed on failure; fail fast so schema doesn't drift from alembic_version.
        return rc

    if cfg.AUTO_CREATE_ADMIN:
        ensure_admin(cfg, engine)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
