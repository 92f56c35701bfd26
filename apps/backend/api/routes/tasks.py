"""
Task Routes
===========

REST endpoints for tasks and their subtasks: CRUD plus the workflow
actions that act on a task record (skip, delete, reorder, resume,
complete review).

Errors raised by the engine are mapped to HTTP statuses by the handlers
registered in ``api.main``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from workflow.engine import TaskWorkflowEngine

router = APIRouter(prefix="/api", tags=["tasks"])


def get_engine(request: Request) -> TaskWorkflowEngine:
    """The engine created by the application lifespan."""
    return request.app.state.engine


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    cli_tool: str | None = Field(default=None, alias="cliTool")
    cli_config: dict[str, Any] = Field(default_factory=dict, alias="cliConfig")
    requires_human_review: bool = Field(default=True, alias="requiresHumanReview")
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class UpdateTaskRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    cli_tool: str | None = Field(default=None, alias="cliTool")
    cli_config: dict[str, Any] | None = Field(default=None, alias="cliConfig")
    requires_human_review: bool | None = Field(default=None, alias="requiresHumanReview")
    metadata: dict[str, Any] | None = None
    restart: bool = False

    model_config = {"populate_by_name": True}


class ReorderRequest(BaseModel):
    subtask_ids: list[str] = Field(alias="subtaskIds")

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    tasks = await get_engine(request).list_tasks()
    return {"success": True, "data": [t.to_dict() for t in tasks]}


@router.post("/tasks", status_code=201)
async def create_task(request: Request, body: CreateTaskRequest) -> dict[str, Any]:
    task = await get_engine(request).create_task(
        body.title,
        body.description,
        cli_tool=body.cli_tool,
        cli_config=body.cli_config,
        requires_human_review=body.requires_human_review,
        metadata=body.metadata,
    )
    return {"success": True, "data": task.to_dict()}


@router.get("/tasks/{task_id}")
async def get_task(request: Request, task_id: str) -> dict[str, Any]:
    task = await get_engine(request).get_task(task_id)
    return {"success": True, "data": task.to_dict()}


@router.patch("/tasks/{task_id}")
async def update_task(
    request: Request, task_id: str, body: UpdateTaskRequest
) -> dict[str, Any]:
    """Edit a task; ``restart`` also sends it back to the start of planning."""
    task = await get_engine(request).update_task(
        task_id,
        title=body.title,
        description=body.description,
        cli_tool=body.cli_tool,
        cli_config=body.cli_config,
        requires_human_review=body.requires_human_review,
        metadata=body.metadata,
        restart=body.restart,
    )
    return {"success": True, "data": task.to_dict()}


@router.delete("/tasks/{task_id}")
async def delete_task(request: Request, task_id: str) -> dict[str, Any]:
    """Delete a task, its agent, its worktree and its logs.

    Teardown failures do not abort the delete; they come back as warnings.
    """
    warnings = await get_engine(request).delete_task(task_id)
    return {"success": True, "data": {"taskId": task_id, "warnings": warnings}}


@router.get("/tasks/{task_id}/logs/{phase}")
async def get_phase_log(request: Request, task_id: str, phase: str) -> dict[str, Any]:
    """Human-readable history of one phase (planning, development, review)."""
    engine = get_engine(request)
    await engine.get_task(task_id)
    content = engine.stream_log.read_phase_log(task_id, phase)
    return {"success": True, "data": {"taskId": task_id, "phase": phase, "content": content}}


@router.post("/tasks/{task_id}/resume")
async def resume_task(request: Request, task_id: str) -> dict[str, Any]:
    """Continue a blocked or halted task from where it stopped."""
    thread_id = await get_engine(request).resume_task(task_id)
    return {"success": True, "data": {"taskId": task_id, "threadId": thread_id}}


@router.post("/tasks/{task_id}/complete-review")
async def complete_review(request: Request, task_id: str) -> dict[str, Any]:
    task = await get_engine(request).complete_review(task_id)
    return {"success": True, "data": task.to_dict()}


# ---------------------------------------------------------------------------
# Subtasks
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/subtasks/{subtask_id}/skip")
async def skip_subtask(request: Request, task_id: str, subtask_id: str) -> dict[str, Any]:
    task = await get_engine(request).skip_subtask(task_id, subtask_id)
    return {"success": True, "data": task.to_dict()}


@router.delete("/tasks/{task_id}/subtasks/{subtask_id}")
async def delete_subtask(request: Request, task_id: str, subtask_id: str) -> dict[str, Any]:
    task = await get_engine(request).delete_subtask(task_id, subtask_id)
    return {"success": True, "data": task.to_dict()}


@router.post("/tasks/{task_id}/subtasks/reorder")
async def reorder_subtasks(
    request: Request, task_id: str, body: ReorderRequest
) -> dict[str, Any]:
    task = await get_engine(request).reorder_subtasks(task_id, body.subtask_ids)
    return {"success": True, "data": task.to_dict()}
