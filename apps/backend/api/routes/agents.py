"""
Agent Routes
============

REST endpoints for the agent-driven workflow actions (planning,
development, review, stop) and for agent sessions: status with logs and
the raw run log for clients that cannot hold a Socket.IO connection.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from core.errors import NotFoundError

from .tasks import get_engine

router = APIRouter(prefix="/api", tags=["agents"])


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class TaskActionRequest(BaseModel):
    task_id: str = Field(alias="taskId")

    model_config = {"populate_by_name": True}


class ApprovePlanRequest(TaskActionRequest):
    start_development: bool = Field(default=False, alias="startDevelopment")


class ModifyPlanRequest(TaskActionRequest):
    method: str
    new_plan: str | None = Field(default=None, alias="newPlan")
    feedback: str | None = None


class StopAgentRequest(BaseModel):
    thread_id: str = Field(alias="threadId")
    revert_to_planning: bool = Field(default=False, alias="revertToPlanning")

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Workflow actions
# ---------------------------------------------------------------------------


@router.post("/agents/start-planning")
async def start_planning(request: Request, body: TaskActionRequest) -> dict[str, Any]:
    thread_id = await get_engine(request).start_planning(body.task_id)
    return {"success": True, "data": {"taskId": body.task_id, "threadId": thread_id}}


@router.post("/agents/approve-plan")
async def approve_plan(request: Request, body: ApprovePlanRequest) -> dict[str, Any]:
    task = await get_engine(request).approve_plan(
        body.task_id, start_development=body.start_development
    )
    return {"success": True, "data": task.to_dict()}


@router.post("/agents/modify-plan")
async def modify_plan(request: Request, body: ModifyPlanRequest) -> dict[str, Any]:
    """Edit the plan inline or regenerate it from feedback."""
    engine = get_engine(request)
    thread_id = await engine.modify_plan(
        body.task_id, body.method, new_plan=body.new_plan, feedback=body.feedback
    )
    task = await engine.get_task(body.task_id)
    return {"success": True, "data": {"threadId": thread_id, "task": task.to_dict()}}


@router.post("/agents/start-development")
async def start_development(request: Request, body: TaskActionRequest) -> dict[str, Any]:
    thread_id = await get_engine(request).start_development(body.task_id)
    return {"success": True, "data": {"taskId": body.task_id, "threadId": thread_id}}


@router.post("/agents/start-review")
async def start_review(request: Request, body: TaskActionRequest) -> dict[str, Any]:
    await get_engine(request).start_review(body.task_id)
    return {"success": True, "data": {"taskId": body.task_id}}


@router.post("/agents/stop")
async def stop_agent(request: Request, body: StopAgentRequest) -> dict[str, Any]:
    task_id = await get_engine(request).stop_agent(
        body.thread_id, revert_to_planning=body.revert_to_planning
    )
    return {
        "success": True,
        "data": {"threadId": body.thread_id, "taskId": task_id, "status": "stopped"},
    }


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/agents")
async def list_agents(request: Request, task_id: str | None = None) -> dict[str, Any]:
    """Sessions known to this process, optionally for one task."""
    sessions = get_engine(request).supervisor.list_sessions(task_id)
    return {"success": True, "data": [s.to_dict(include_logs=False) for s in sessions]}


@router.get("/agents/{thread_id}")
async def get_agent_status(request: Request, thread_id: str) -> dict[str, Any]:
    return {"success": True, "data": get_engine(request).get_agent_status(thread_id)}


@router.get("/agents/{thread_id}/stream")
async def read_agent_stream(request: Request, thread_id: str, offset: int = 0) -> dict[str, Any]:
    """Run log records written after byte *offset*.

    Works for runs of earlier processes too, through the thread index.
    """
    engine = get_engine(request)
    session = engine.supervisor.get_session(thread_id)
    task_id = session.task_id if session else None
    if task_id is None:
        task_id = await asyncio.to_thread(engine.stream_log.task_for_thread, thread_id)
    if task_id is None:
        raise NotFoundError(f"Agent session {thread_id} not found")

    chunk = await asyncio.to_thread(engine.stream_log.read, task_id, thread_id, offset)
    return {
        "success": True,
        "data": {"threadId": thread_id, "records": chunk.records, "offset": chunk.offset},
    }
