from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .bootstrap import build_orchestrator
from .errors import CollaboratorError, MCPError, TemplateValidationError
from .logging_config import configure_logging
from .orchestrator import TaskOrchestrator
from .routes.task_routes import router as task_router
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(settings: Optional[Settings] = None, *, orchestrator: Optional[TaskOrchestrator] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        app.state.settings = settings
        app.state.orchestrator = orchestrator or build_orchestrator(settings)
        logger.info("walemcp API %s ready (dry_run=%s)", settings.api_version, settings.solana_dry_run)
        yield

    app = FastAPI(title="WaleMCP Task Orchestrator", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # also catches the router's own 404 and 405 responses
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        return _error(422, f"Invalid request: {where} {first.get('msg', '')}".strip())

    @app.exception_handler(TemplateValidationError)
    async def template_error(request: Request, exc: TemplateValidationError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(CollaboratorError)
    async def collaborator_error(request: Request, exc: CollaboratorError) -> JSONResponse:
        logger.error("Collaborator failure on %s: %s", request.url.path, exc)
        return _error(502, "Upstream service error" if settings.production else str(exc))

    @app.exception_handler(MCPError)
    async def mcp_error(request: Request, exc: MCPError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s: %s", request.url.path, exc)
        return _error(500, "Internal server error" if settings.production else str(exc))

    app.include_router(task_router, prefix=f"/api/{settings.api_version}")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"success": True, "service": "walemcp", "version": settings.api_version}

    return app


app = create_app()
