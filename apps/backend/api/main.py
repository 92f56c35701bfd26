"""
API Application
===============

FastAPI application exposing the workflow engine over REST, with the
Socket.IO ``/agent`` namespace mounted alongside for live agent logs.

Run with::

    uvicorn --factory api.main:create_asgi_app --app-dir apps/backend

The project directory comes from ``CODE_AUTO_PROJECT_DIR`` (or the current
directory); see ``core.config.load_config``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import EngineConfig, load_config
from core.errors import (
    ConflictError,
    ExternalToolError,
    NotFoundError,
    ValidationError,
    WaitTimeoutError,
    WorkflowError,
)
from workflow.engine import TaskWorkflowEngine

from .routes import agents, cli, health, tasks, worktrees
from .websocket import register_agent_namespace

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
_ERROR_STATUS: list[tuple[type[WorkflowError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationError, 400),
    (ExternalToolError, 502),
    (WaitTimeoutError, 504),
]


def _status_for(error: WorkflowError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def _workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status = _status_for(exc)
    if status >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
    body: dict = {"success": False, "error": str(exc)}
    if isinstance(exc, ValidationError) and exc.issues:
        body["issues"] = [
            {"field": i.field, "issue": i.issue, "subtaskId": i.subtask_id} for i in exc.issues
        ]
    return JSONResponse(status_code=status, content=body)


def create_app(
    config: EngineConfig | None = None,
    engine: TaskWorkflowEngine | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        config: Engine settings; loaded from the environment when omitted
        engine: Pre-built engine (tests inject one with a scripted adapter)
    """
    config = config or (engine.config if engine else load_config())
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine or TaskWorkflowEngine(config)
        logger.info("[API] Engine ready for %s", config.project_dir)
        yield
        relay = getattr(app.state, "log_relay", None)
        if relay is not None:
            await relay.stop_all()
        await app.state.engine.shutdown()

    app = FastAPI(
        title="Code Auto API",
        description="Task workflow engine: planning, sequential subtasks and review",
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
    app.add_exception_handler(WorkflowError, _workflow_error_handler)

    app.include_router(health.router)
    app.include_router(tasks.router)
    app.include_router(agents.router)
    app.include_router(worktrees.router)
    app.include_router(cli.router)
    return app


def create_asgi_app(config: EngineConfig | None = None) -> socketio.ASGIApp:
    """FastAPI app wrapped with the Socket.IO server."""
    app = create_app(config)
    sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")

    @asynccontextmanager
    async def with_socketio(app: FastAPI):
        async with lifespan(app):
            app.state.log_relay = register_agent_namespace(sio, app.state.engine)
            yield

    lifespan = app.router.lifespan_context
    app.router.lifespan_context = with_socketio
    return socketio.ASGIApp(sio, other_asgi_app=app)

