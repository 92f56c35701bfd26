"""
Worktree Routes
===============

REST endpoints for the per-task git worktrees.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from .tasks import get_engine

router = APIRouter(prefix="/api", tags=["worktrees"])


@router.get("/worktrees")
async def list_worktrees(request: Request, enriched: bool = True) -> dict[str, Any]:
    """Managed worktrees; enriched entries carry dirty/size/orphan flags."""
    worktrees = await get_engine(request).list_worktrees(enriched=enriched)
    return {"success": True, "data": [w.to_dict() for w in worktrees]}


@router.get("/worktrees/{task_id}")
async def get_worktree_status(request: Request, task_id: str) -> dict[str, Any]:
    status = await get_engine(request).get_worktree_status(task_id)
    return {"success": True, "data": status.to_dict()}


@router.delete("/worktrees/{task_id}")
async def delete_worktree(
    request: Request, task_id: str, force: bool = False, delete_branch: bool = False
) -> dict[str, Any]:
    await get_engine(request).delete_worktree(task_id, force=force, delete_branch=delete_branch)
    return {"success": True, "data": {"taskId": task_id}}


@router.post("/worktrees/cleanup")
async def cleanup_worktrees(request: Request, force: bool = False) -> dict[str, Any]:
    removed = await get_engine(request).cleanup_worktrees(force=force)
    return {"success": True, "data": {"removed": removed}}
