"""
Agent Process Supervisor
========================

Starts agent runs, streams their log events and tells the caller when they
end. One supervisor instance is constructed per engine and injected where
it is needed.

Guarantees:
- At most one running session per task; a second ``start_agent`` for the
  same task raises ConflictError.
- ``on_complete`` fires exactly once per session, whether the run succeeds,
  fails or is stopped.
- Log events are appended to the in-memory session log and queued for the
  NDJSON run log; the producer never waits on disk I/O.

The supervisor never touches task records. Clearing ``assigned_agent`` and
moving phases is the completion callback's job.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from core.config import DEFAULT_MAX_AGENTS
from core.errors import ConflictError, ExternalToolError, NotFoundError, WorkflowError
from tasks.models import now_ms

from .adapters import AdapterFactory, AgentAdapter, MessageType, create_adapter
from .events import TaskEventBus
from .stream_log import StreamLog

logger = logging.getLogger(__name__)

MAX_SESSION_LOG_ENTRIES = 1000


class SessionStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class AgentResult:
    """Outcome passed to the completion callback."""

    success: bool
    output: str = ""
    error: str | None = None
    structured: dict[str, Any] | None = None


CompletionCallback = Callable[[AgentResult], Awaitable[None] | None]


@dataclass
class LogEntry:
    timestamp: int
    type: str
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "type": self.type, "content": self.content}


@dataclass
class AgentSession:
    """Runtime handle of one agent invocation."""

    thread_id: str
    task_id: str
    working_dir: str
    provider: str
    status: SessionStatus = SessionStatus.RUNNING
    started_at: int = field(default_factory=now_ms)
    completed_at: int | None = None
    # Most recent entries only; the NDJSON run log keeps the full history
    logs: deque[LogEntry] = field(default_factory=lambda: deque(maxlen=MAX_SESSION_LOG_ENTRIES))
    error: str | None = None
    result: AgentResult | None = None
    on_complete: CompletionCallback | None = None
    adapter: AgentAdapter | None = field(default=None, repr=False)
    runner: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING

    def to_dict(self, include_logs: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "threadId": self.thread_id,
            "taskId": self.task_id,
            "workingDir": self.working_dir,
            "provider": self.provider,
            "status": self.status.value,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
        }
        if include_logs:
            # Snapshot; the run keeps appending
            data["logs"] = [entry.to_dict() for entry in list(self.logs)]
        return data


class AgentSupervisor:
    """Owns every agent session of one engine.

    Args:
        adapter_factory: Maps a provider id to a fresh adapter
        stream_log: Destination of the NDJSON run logs (optional)
        events: Bus notified when a session ends (optional)
        max_concurrent: Ceiling on simultaneously running sessions
    """

    def __init__(
        self,
        adapter_factory: AdapterFactory = create_adapter,
        stream_log: StreamLog | None = None,
        events: TaskEventBus | None = None,
        max_concurrent: int = DEFAULT_MAX_AGENTS,
    ) -> None:
        self.adapter_factory = adapter_factory
        self.stream_log = stream_log
        self.events = events
        self.max_concurrent = max_concurrent
        self._sessions: dict[str, AgentSession] = {}
        self._lock = asyncio.Lock()
        self._log_queue: asyncio.Queue[tuple[str, str, dict[str, Any]] | None] | None = None
        self._writer: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_agent(
        self,
        task_id: str,
        prompt: str,
        *,
        working_dir: str,
        on_complete: CompletionCallback | None = None,
        provider: str = "mock",
        config: dict[str, Any] | None = None,
    ) -> str:
        """Start an agent run for *task_id* and return its thread id.

        Returns as soon as the run is scheduled.

        Raises:
            ConflictError: A session for the task is running, or the
                concurrency ceiling is reached
            ValidationError: Unknown provider or invalid adapter config
            ExternalToolError: The adapter could not be initialized
        """
        async with self._lock:
            running = self.get_running_session(task_id)
            if running is not None:
                raise ConflictError(
                    f"Agent {running.thread_id} is already running for task {task_id}"
                )
            active = sum(1 for s in self._sessions.values() if s.is_running)
            if active >= self.max_concurrent:
                raise ConflictError(
                    f"Maximum number of concurrent agents ({self.max_concurrent}) reached"
                )

            adapter = self.adapter_factory(provider)
            try:
                await adapter.initialize(config or {})
                thread_id = await adapter.create_thread(working_dir)
            except WorkflowError:
                raise
            except Exception as e:
                raise ExternalToolError(
                    f"Failed to initialize {provider} adapter: {e}"
                ) from e

            session = AgentSession(
                thread_id=thread_id,
                task_id=task_id,
                working_dir=working_dir,
                provider=provider,
                on_complete=on_complete,
                adapter=adapter,
            )
            self._sessions[thread_id] = session
            session.runner = asyncio.create_task(
                self._run(session, prompt), name=f"agent-{thread_id}"
            )

        if self.stream_log is not None:
            await asyncio.to_thread(self.stream_log.register_thread, thread_id, task_id)
        logger.info(
            "[Supervisor] Started %s agent %s for task %s in %s",
            provider,
            thread_id,
            task_id,
            working_dir,
        )
        return thread_id

    def get_agent_status(self, thread_id: str) -> dict[str, Any]:
        """Snapshot of one session: status, logs, error and timestamps.

        Raises:
            NotFoundError: Unknown thread id
        """
        return self._get_session(thread_id).to_dict()

    def get_session(self, thread_id: str) -> AgentSession | None:
        return self._sessions.get(thread_id)

    def get_running_session(self, task_id: str) -> AgentSession | None:
        for session in self._sessions.values():
            if session.task_id == task_id and session.is_running:
                return session
        return None

    def list_sessions(self, task_id: str | None = None) -> list[AgentSession]:
        return [
            s for s in self._sessions.values() if task_id is None or s.task_id == task_id
        ]

    async def stop_agent_by_thread_id(self, thread_id: str) -> str:
        """Stop the run of *thread_id* and return the owning task id.

        Stopping a session that already ended does nothing.

        Raises:
            NotFoundError: Unknown thread id
        """
        session = self._get_session(thread_id)
        result = AgentResult(success=False, error="Agent stopped")
        if not self._mark_finished(session, SessionStatus.STOPPED, result):
            return session.task_id

        logger.info("[Supervisor] Stopping agent %s (task %s)", thread_id, session.task_id)
        if session.adapter is not None:
            try:
                await session.adapter.stop_thread(thread_id)
            except Exception:
                logger.exception("[Supervisor] Adapter failed to stop %s", thread_id)

        runner = session.runner
        if runner is not None and not runner.done() and runner is not asyncio.current_task():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner

        await self._notify(session, result)
        return session.task_id

    async def stop_task_agents(self, task_id: str) -> list[str]:
        """Stop every running session of *task_id*; returns their thread ids."""
        stopped = []
        for session in self.list_sessions(task_id):
            if session.is_running:
                await self.stop_agent_by_thread_id(session.thread_id)
                stopped.append(session.thread_id)
        return stopped

    def forget_task(self, task_id: str) -> int:
        """Drop the finished sessions of *task_id*; returns how many."""
        finished = [
            s.thread_id for s in self.list_sessions(task_id) if not s.is_running
        ]
        for thread_id in finished:
            del self._sessions[thread_id]
        if finished:
            logger.info("[Supervisor] Forgot %d session(s) of task %s", len(finished), task_id)
        return len(finished)

    async def flush(self) -> None:
        """Wait until every queued log record has been written."""
        if self._log_queue is not None:
            await self._log_queue.join()

    async def shutdown(self) -> None:
        """Stop all running sessions and the log writer."""
        for session in list(self._sessions.values()):
            if session.is_running:
                await self.stop_agent_by_thread_id(session.thread_id)
        if self._writer is not None and self._log_queue is not None:
            await self._log_queue.put(None)
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
            self._log_queue = None
        logger.info("[Supervisor] Shut down")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get_session(self, thread_id: str) -> AgentSession:
        session = self._sessions.get(thread_id)
        if session is None:
            raise NotFoundError(f"Agent session {thread_id} not found")
        return session

    async def _run(self, session: AgentSession, prompt: str) -> None:
        result: AgentResult | None = None
        try:
            if session.adapter is None:
                raise ExternalToolError(f"Agent {session.thread_id} has no adapter")
            async for message in session.adapter.execute(prompt, session.thread_id):
                if not session.is_running:
                    break
                self._record(session, message.type.value, message.content, message.timestamp)
                if message.type == MessageType.RESULT:
                    structured = message.data.get("structured")
                    result = AgentResult(
                        success=True,
                        output=str(message.data.get("output") or ""),
                        structured=structured if isinstance(structured, dict) else None,
                    )
                    break
                if message.type == MessageType.ERROR:
                    result = AgentResult(success=False, error=message.content)
                    break
        except asyncio.CancelledError:
            # Cancelled by stop_agent_by_thread_id, which has already
            # finished the session, or by loop teardown
            stopped = AgentResult(success=False, error="Agent stopped")
            if self._mark_finished(session, SessionStatus.STOPPED, stopped):
                await self._notify(session, stopped)
            raise
        except Exception as e:
            logger.exception("[Supervisor] Agent %s crashed", session.thread_id)
            result = AgentResult(success=False, error=str(e) or type(e).__name__)

        if result is None:
            result = AgentResult(success=False, error="Agent ended without a result")
        status = SessionStatus.COMPLETED if result.success else SessionStatus.ERROR
        if self._mark_finished(session, status, result):
            await self._notify(session, result)

    def _record(self, session: AgentSession, kind: str, content: str, timestamp: int) -> None:
        entry = LogEntry(timestamp=timestamp, type=kind, content=content)
        session.logs.append(entry)
        self._enqueue(session, entry.to_dict())

    def _enqueue(self, session: AgentSession, record: dict[str, Any]) -> None:
        if self.stream_log is None:
            return
        if self._log_queue is None:
            self._log_queue = asyncio.Queue()
            self._writer = asyncio.create_task(
                self._write_logs(self._log_queue, self.stream_log), name="agent-log-writer"
            )
        self._log_queue.put_nowait((session.task_id, session.thread_id, record))

    async def _write_logs(self, queue: asyncio.Queue, stream_log: StreamLog) -> None:
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                task_id, thread_id, record = item
                await asyncio.to_thread(stream_log.append, task_id, thread_id, record)
            except OSError as e:
                logger.warning("[Supervisor] Failed to write run log: %s", e)
            finally:
                queue.task_done()

    def _mark_finished(
        self, session: AgentSession, status: SessionStatus, result: AgentResult
    ) -> bool:
        """Move a running session to *status*. Only the first caller wins."""
        if not session.is_running:
            return False
        session.status = status
        session.completed_at = now_ms()
        session.error = result.error
        session.result = result

        record: dict[str, Any] = {"type": "status", "status": status.value}
        if result.error:
            record["error"] = result.error
        self._enqueue(session, record)

        if status == SessionStatus.COMPLETED:
            logger.info("[Supervisor] Agent %s completed", session.thread_id)
        else:
            logger.warning(
                "[Supervisor] Agent %s ended with %s: %s",
                session.thread_id,
                status.value,
                result.error,
            )
        return True

    async def _notify(self, session: AgentSession, result: AgentResult) -> None:
        if session.on_complete is not None:
            try:
                outcome = session.on_complete(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "[Supervisor] Completion callback failed for %s", session.thread_id
                )

        if self.events is not None:
            self.events.publish(session.task_id)
