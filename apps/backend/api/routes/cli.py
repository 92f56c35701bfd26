"""
CLI Adapter Routes
==================

Lists the agent providers a task can name in ``cliTool``, with their
capabilities and configuration schemas.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from agents.adapters import describe_providers

router = APIRouter(prefix="/api", tags=["cli"])


@router.get("/cli/adapters")
async def list_adapters() -> dict[str, Any]:
    return {"success": True, "data": describe_providers()}
