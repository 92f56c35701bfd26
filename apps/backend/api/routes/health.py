"""
Health Check Route
==================

Provides a basic health check endpoint for monitoring and readiness checks.
"""

from fastapi import APIRouter, Request

from .tasks import get_engine

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Return service health plus the engine's live counters."""
    engine = get_engine(request)
    running = [s for s in engine.supervisor.list_sessions() if s.is_running]
    return {
        "status": "ok",
        "projectDir": str(engine.config.project_dir),
        "gitAvailable": await engine.git_available(),
        "runningAgents": len(running),
    }
