"""
Agent WebSocket Namespace
=========================

Socket.IO ``/agent`` namespace for live agent logs.

Events (client to server):
    agent:join   - Join a thread room and start receiving its log
    agent:leave  - Leave a thread room
    agent:stop   - Stop a running agent

Events (server to client):
    agent:log    - One run log record
    agent:status - The run ended (completed / error / stopped)
    agent:error  - The relay could not follow the thread
"""

from __future__ import annotations

import logging
from typing import Any

import socketio

from core.errors import NotFoundError
from workflow.engine import TaskWorkflowEngine

from ..services.log_relay import NAMESPACE, LogRelay

logger = logging.getLogger(__name__)


class AgentNamespace(socketio.AsyncNamespace):
    """Socket.IO namespace for /agent."""

    def __init__(self, engine: TaskWorkflowEngine, relay: LogRelay) -> None:
        super().__init__(NAMESPACE)
        self.engine = engine
        self.relay = relay
        self._rooms: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def on_connect(self, sid: str, environ: dict[str, Any]) -> None:
        self._rooms[sid] = set()
        logger.info("[AgentNS] Client connected: %s", sid)

    async def trigger_event(self, event: str, *args: Any) -> Any:
        # "agent:join" is handled by on_agent_join
        return await super().trigger_event(event.replace(":", "_"), *args)

    async def on_disconnect(self, sid: str, reason: Any = None) -> None:
        for thread_id in self._rooms.pop(sid, set()):
            await self.relay.unwatch(thread_id)
        logger.info("[AgentNS] Client disconnected: %s", sid)

    # ------------------------------------------------------------------
    # Room management
    # ------------------------------------------------------------------

    async def on_agent_join(self, sid: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Join a thread room to receive its log.

        Expected *data*::

            {"threadId": str}
        """
        thread_id: str = (data or {}).get("threadId", "")
        if not thread_id:
            return {"ok": False, "error": "threadId is required"}

        joined = self._rooms.setdefault(sid, set())
        if thread_id not in joined:
            joined.add(thread_id)
            await self.enter_room(sid, thread_id)
            await self.relay.watch(thread_id)
        logger.info("[AgentNS] Client %s joined room %s", sid, thread_id)
        return {"ok": True, "threadId": thread_id}

    async def on_agent_leave(self, sid: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Leave a thread room.

        Expected *data*::

            {"threadId": str}
        """
        thread_id: str = (data or {}).get("threadId", "")
        if not thread_id:
            return {"ok": False, "error": "threadId is required"}

        joined = self._rooms.get(sid, set())
        if thread_id in joined:
            joined.discard(thread_id)
            await self.leave_room(sid, thread_id)
            await self.relay.unwatch(thread_id)
        logger.info("[AgentNS] Client %s left room %s", sid, thread_id)
        return {"ok": True, "threadId": thread_id}

    # ------------------------------------------------------------------
    # Agent control
    # ------------------------------------------------------------------

    async def on_agent_stop(self, sid: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Stop a running agent.

        Expected *data*::

            {"threadId": str, "revertToPlanning": bool | None}
        """
        thread_id: str = (data or {}).get("threadId", "")
        if not thread_id:
            return {"ok": False, "error": "threadId is required"}

        try:
            task_id = await self.engine.stop_agent(
                thread_id, revert_to_planning=bool(data.get("revertToPlanning", False))
            )
        except NotFoundError as e:
            return {"ok": False, "error": str(e)}

        logger.info("[AgentNS] Agent %s stopped by %s", thread_id, sid)
        return {"ok": True, "threadId": thread_id, "taskId": task_id}


def register_agent_namespace(
    sio_server: socketio.AsyncServer, engine: TaskWorkflowEngine
) -> LogRelay:
    """Register the /agent namespace on the given Socket.IO server."""
    relay = LogRelay(sio_server, engine)
    sio_server.register_namespace(AgentNamespace(engine, relay))
    logger.info("[AgentNS] Registered /agent namespace")
    return relay
