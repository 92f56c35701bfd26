"""
Log Relay Service
=================

Tails agent run logs as background asyncio tasks and emits each record to
the Socket.IO room of its thread.

One tail runs per watched thread, shared by every client in the room. A
tail ends after relaying the terminal ``status`` record, or when the last
client leaves.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import socketio

from workflow.engine import TaskWorkflowEngine

logger = logging.getLogger(__name__)

NAMESPACE = "/agent"


class LogRelay:
    """Relays NDJSON run logs to ``agent:log`` / ``agent:status`` events."""

    def __init__(
        self,
        sio: socketio.AsyncServer,
        engine: TaskWorkflowEngine,
        poll_interval: float = 0.25,
    ) -> None:
        self.sio = sio
        self.engine = engine
        self.poll_interval = poll_interval
        self._tails: dict[str, asyncio.Task[None]] = {}
        self._watchers: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def watch(self, thread_id: str) -> None:
        """Start (or share) the tail of *thread_id*."""
        self._watchers[thread_id] = self._watchers.get(thread_id, 0) + 1
        tail = self._tails.get(thread_id)
        if tail is not None and not tail.done():
            return
        self._tails[thread_id] = asyncio.create_task(self._tail(thread_id))
        logger.info("[LogRelay] Tailing thread %s", thread_id)

    async def unwatch(self, thread_id: str) -> None:
        """Drop one watcher; the tail stops with the last one."""
        remaining = self._watchers.get(thread_id, 0) - 1
        if remaining > 0:
            self._watchers[thread_id] = remaining
            return
        self._watchers.pop(thread_id, None)
        tail = self._tails.pop(thread_id, None)
        if tail is None or tail.done():
            return
        tail.cancel()
        try:
            await tail
        except asyncio.CancelledError:
            pass
        logger.info("[LogRelay] Stopped tailing thread %s", thread_id)

    def is_tailing(self, thread_id: str) -> bool:
        tail = self._tails.get(thread_id)
        return tail is not None and not tail.done()

    async def stop_all(self) -> None:
        for thread_id in list(self._tails):
            self._watchers[thread_id] = 1
            await self.unwatch(thread_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _emit(self, event: str, thread_id: str, data: dict[str, Any]) -> None:
        payload = {"threadId": thread_id, **data}
        await self.sio.emit(event, payload, namespace=NAMESPACE, room=thread_id)

    async def _resolve_task(self, thread_id: str) -> str | None:
        session = self.engine.supervisor.get_session(thread_id)
        if session is not None:
            return session.task_id
        return await asyncio.to_thread(self.engine.stream_log.task_for_thread, thread_id)

    async def _tail(self, thread_id: str) -> None:
        try:
            task_id = await self._resolve_task(thread_id)
            if task_id is None:
                await self._emit("agent:error", thread_id, {"error": "Unknown thread"})
                return

            offset = 0
            while True:
                chunk = await asyncio.to_thread(
                    self.engine.stream_log.read, task_id, thread_id, offset
                )
                offset = chunk.offset
                for record in chunk.records:
                    if record.get("type") == "status":
                        await self._emit(
                            "agent:status",
                            thread_id,
                            {
                                "taskId": task_id,
                                "status": record.get("status"),
                                "error": record.get("error"),
                            },
                        )
                        return
                    await self._emit("agent:log", thread_id, {"taskId": task_id, **record})
                await asyncio.sleep(self.poll_interval)

        except asyncio.CancelledError:
            raise

        except Exception:
            logger.exception("[LogRelay] Tail of thread %s failed", thread_id)
            await self._emit("agent:error", thread_id, {"error": "Log relay failed"})

        finally:
            if self._tails.get(thread_id) is asyncio.current_task():
                self._tails.pop(thread_id, None)
