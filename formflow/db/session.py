from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from formflow.core.config import Settings


def make_engine(settings: Settings) -> Engine:
    dsn = settings.DATABASE_DSN
    if dsn.startswith("sqlite"):
        # SQLite pools do not take size/overflow arguments.
        return create_engine(dsn, connect_args={"check_same_thread": False})
    return create_engine(
        dsn,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=30,
    )


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
