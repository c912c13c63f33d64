from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from formflow.core.config import Settings, settings as default_settings
from formflow.core.errors import (
    ConcurrentUpdateError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from formflow.core.logging import configure_logging
from formflow.core.rbac import PermissionService
from formflow.core.workflow import WorkflowEngine
from formflow.modules.permissions.router import router as permissions_router
from formflow.modules.workflows.router import router as workflows_router
from formflow.repositories.base import Repositories
from formflow.repositories.factory import build_repositories

logger = logging.getLogger("formflow")


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "detail": detail})


def create_app(settings: Settings | None = None, repositories: Repositories | None = None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)

    repos = repositories or build_repositories(settings)

    app = FastAPI(title=settings.APP_NAME)
    app.state.settings = settings
    app.state.repositories = repos
    app.state.workflow_engine = WorkflowEngine(repos.submissions, repos.users)
    app.state.permission_service = PermissionService(repos.users, repos.grants)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start = time.perf_counter()
        resp = await call_next(request)
        resp.headers["X-Process-Time-ms"] = f"{(time.perf_counter() - start) * 1000:.2f}"
        return resp

    @app.exception_handler(ForbiddenError)
    async def forbidden_handler(request: Request, exc: ForbiddenError):
        return _error(403, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError):
        return _error(409, str(exc))

    @app.exception_handler(ConcurrentUpdateError)
    async def conflict_handler(request: Request, exc: ConcurrentUpdateError):
        return _error(409, str(exc))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(422, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception", exc_info=exc)
        return _error(500, "Internal Server Error")

    app.include_router(workflows_router)
    app.include_router(permissions_router)

    @app.on_event("shutdown")
    def on_shutdown():
        repos.close()

    @app.get("/health", response_class=JSONResponse)
    def health():
        return {"status": "ok", "app": settings.APP_NAME, "backend": settings.DB_BACKEND}

    return app


app = create_app()
