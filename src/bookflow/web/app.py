"""FastAPI application exposing the production workflow."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from bookflow.context import WorkflowSettings, get_default_settings
from bookflow.db_config import close_mongo_clients
from bookflow.error_handling import (
    ConflictError,
    ErrorAnalyzer,
    GenerationBlockedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from bookflow.web.routes import projects
from bookflow.workflow.service import WorkflowService, create_workflow_service

logger = logging.getLogger(__name__)


def _error_body(error: Exception, **extra) -> dict:
    return {
        "error": type(error).__name__,
        "detail": str(error),
        "category": ErrorAnalyzer.categorize_error(error).value,
        **extra,
    }


def register_error_handlers(app: FastAPI) -> None:
    """Map workflow errors onto HTTP status codes."""

    @app.exception_handler(InvalidTransitionError)
    async def _invalid_transition(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content=_error_body(exc, status=exc.status, event=exc.event))

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content=_error_body(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content=_error_body(exc))

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content=_error_body(exc))

    @app.exception_handler(GenerationBlockedError)
    async def _blocked(request: Request, exc: GenerationBlockedError):
        return JSONResponse(status_code=422, content=_error_body(exc, reason=exc.reason))

    @app.exception_handler(WorkflowError)
    async def _workflow(request: Request, exc: WorkflowError):
        logger.error(f"Unhandled workflow error on {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=502, content=_error_body(exc))


def create_app(
    service: Optional[WorkflowService] = None,
    settings: Optional[WorkflowSettings] = None,
) -> FastAPI:
    """Create the API application.

    A pre-built ``service`` is used as-is; otherwise one is wired from
    ``settings`` (or the environment) when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_service = service is None
        if owns_service:
            app.state.workflow_service = create_workflow_service(settings or get_default_settings())
        else:
            app.state.workflow_service = service
        try:
            yield
        finally:
            await app.state.workflow_service.orchestrator.wait_for_idle()
            if owns_service:
                close_mongo_clients()

    app = FastAPI(
        title="Bookflow",
        description="Production workflow for illustrated children's books",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(projects.router, prefix="/api/projects", tags=["projects"])

    storage_settings = settings or (None if service is not None else get_default_settings())
    if storage_settings is not None and storage_settings.storage_public_base_url.startswith("/"):
        storage_dir = Path(storage_settings.storage_root)
        storage_dir.mkdir(parents=True, exist_ok=True)
        app.mount(storage_settings.storage_public_base_url, StaticFiles(directory=str(storage_dir)), name="storage")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "bookflow"}

    return app


def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False) -> None:
    uvicorn.run(
        "bookflow.web.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )
