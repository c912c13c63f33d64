from __future__ import annotations

import logging

from formflow.core.config import Settings
from formflow.repositories.base import Repositories

logger = logging.getLogger("formflow.repositories")


def build_repositories(settings: Settings) -> Repositories:
    """Pick the storage backend once, from configuration."""
    backend = settings.DB_BACKEND

    if backend == "sql":
        from formflow.db.session import make_engine
        from formflow.repositories.sql import build_sql_repositories

        engine = make_engine(settings)
        repos = build_sql_repositories(engine, create_tables=settings.AUTO_CREATE_TABLES)
    elif backend == "redis":
        from formflow.core.redis import close_redis, get_redis
        from formflow.repositories.redis_store import build_redis_repositories

        client = get_redis(settings.REDIS_URL)
        if client is None:
            raise RuntimeError(f"DB_BACKEND=redis but Redis is unreachable at {settings.REDIS_URL}")
        repos = build_redis_repositories(client, settings.REDIS_KEY_PREFIX, closer=close_redis)
    elif backend == "memory":
        from formflow.repositories.memory import build_memory_repositories

        repos = build_memory_repositories()
    else:
        raise ValueError(f"Unsupported DB_BACKEND: {backend}")

    logger.info("Storage backend: %s", backend)
    return repos
