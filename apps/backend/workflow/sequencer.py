"""
Subtask Sequencer
=================

Runs a task's subtasks of one type (dev or qa) strictly one at a time, in
record order.

Each step:
1. Reload the task and pick the first not-completed subtask of the type
   (this tolerates skip, delete and reorder between steps).
2. Mark it in_progress and persist.
3. Start an agent for it with a completion callback.
4. Wait until the subtask completes, the task is blocked or leaves the
   phase, the subtask disappears, or the wait ceiling elapses.

The wait listens on the task event bus and re-reads the store at least once
per poll interval. Hitting the ceiling is soft: it is logged and the
sequence halts without failing the task.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from agents.events import TaskEventBus
from agents.stream_log import StreamLog
from agents.supervisor import AgentResult, AgentSupervisor
from core.errors import NotFoundError, WaitTimeoutError, WorkflowError
from tasks.models import SubtaskStatus, SubtaskType, Task, TaskStatus, WorkflowPhase
from tasks.store import TaskStore

from . import state_machine
from .prompts import build_dev_subtask_prompt, build_qa_subtask_prompt

logger = logging.getLogger(__name__)

PHASE_FOR_TYPE = {
    SubtaskType.DEV: WorkflowPhase.IN_PROGRESS,
    SubtaskType.QA: WorkflowPhase.AI_REVIEW,
}

PHASE_LOG_FOR_TYPE = {
    SubtaskType.DEV: "development",
    SubtaskType.QA: "review",
}

PhaseHook = Callable[[str], Awaitable[None] | None]


class SequenceStatus(StrEnum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    HALTED = "halted"
    TIMED_OUT = "timed_out"
    TASK_MISSING = "task_missing"


class _WaitState(StrEnum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    REMOVED = "removed"
    LEFT_PHASE = "left_phase"
    TASK_MISSING = "task_missing"


@dataclass
class SequenceOutcome:
    """How one sequencing run ended."""

    status: SequenceStatus
    subtask_type: SubtaskType
    executed: list[str] = field(default_factory=list)
    detail: str | None = None


class SubtaskSequencer:
    """Drives the subtasks of one task, one agent at a time.

    Args:
        store: Task store used for every read and mutation
        supervisor: Starts the agent of each subtask
        events: Bus the wait listens on
        wait_timeout: Ceiling in seconds for one subtask wait
        poll_interval: Fallback re-read interval in seconds
        stream_log: Destination of the per-phase text logs (optional)
        default_working_dir: Used when a task has no worktree
        on_dev_complete: Called with the task id by whichever caller moved
            the task from in_progress to ai_review
    """

    def __init__(
        self,
        store: TaskStore,
        supervisor: AgentSupervisor,
        events: TaskEventBus,
        *,
        wait_timeout: float,
        poll_interval: float,
        stream_log: StreamLog | None = None,
        default_working_dir: str | Path | None = None,
        on_dev_complete: PhaseHook | None = None,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.events = events
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self.stream_log = stream_log
        self.default_working_dir = str(default_working_dir or Path.cwd())
        self.on_dev_complete = on_dev_complete

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, task_id: str, subtask_type: SubtaskType) -> SequenceOutcome:
        """Execute every remaining subtask of *subtask_type* in order."""
        log = logging.getLogger(f"{__name__}.{task_id}")
        phase = PHASE_FOR_TYPE[subtask_type]
        executed: list[str] = []

        def outcome(status: SequenceStatus, detail: str | None = None) -> SequenceOutcome:
            return SequenceOutcome(status, subtask_type, executed, detail)

        while True:
            task = await self.store.load_task(task_id)
            if task is None:
                return outcome(SequenceStatus.TASK_MISSING)
            if task.status == TaskStatus.BLOCKED:
                return outcome(SequenceStatus.BLOCKED, "task is blocked")
            if task.phase != phase:
                return outcome(SequenceStatus.HALTED, f"task is in {task.phase}")

            subtask = task.next_pending(subtask_type)
            if subtask is None:
                await self.check_completion(task_id, subtask_type)
                log.info("[Sequencer] All %s subtasks of %s completed", subtask_type, task_id)
                return outcome(SequenceStatus.COMPLETED)

            position = task.subtasks_of(subtask_type).index(subtask) + 1
            total = len(task.subtasks_of(subtask_type))
            log.info(
                "[Sequencer] Starting %s subtask %d/%d: %s",
                subtask_type,
                position,
                total,
                subtask.label,
            )
            await self.phase_log(
                task_id, subtask_type, f"[Subtask {position}/{total}] {subtask.label}"
            )

            try:
                thread_id = await self._start(task, subtask.id, subtask_type)
            except (WorkflowError, OSError) as e:
                log.error("[Sequencer] Could not start agent for %s: %s", subtask.id, e)
                await self.phase_log(task_id, subtask_type, f"[Error] {e}")
                await self._block(task_id, subtask.id)
                return outcome(SequenceStatus.BLOCKED, str(e))

            try:
                state = await self._wait_for_subtask(task_id, subtask.id, phase)
                if state in (_WaitState.COMPLETED, _WaitState.REMOVED):
                    await self._await_session_end(task_id, thread_id)
            except WaitTimeoutError as e:
                log.warning("[Sequencer] %s; halting sequence", e)
                await self.phase_log(task_id, subtask_type, f"[Timeout] {e}")
                return outcome(SequenceStatus.TIMED_OUT, str(e))

            if state == _WaitState.COMPLETED:
                executed.append(subtask.id)
                continue
            if state == _WaitState.REMOVED:
                log.info("[Sequencer] Subtask %s was removed, continuing", subtask.id)
                continue
            if state == _WaitState.BLOCKED:
                return outcome(SequenceStatus.BLOCKED, f"subtask {subtask.id} failed")
            if state == _WaitState.TASK_MISSING:
                return outcome(SequenceStatus.TASK_MISSING)
            return outcome(SequenceStatus.HALTED, "task left the phase")

    async def check_completion(self, task_id: str, subtask_type: SubtaskType) -> bool:
        """Advance the phase if every subtask of the type is completed.

        Idempotent: only the call that performs the move returns True, and
        only that call fires ``on_dev_complete``.
        """
        transition = (
            state_machine.complete_dev
            if subtask_type == SubtaskType.DEV
            else state_machine.complete_qa
        )
        try:
            task, advanced = await self.store.update_task(task_id, transition)
        except NotFoundError:
            return False
        if not advanced:
            return False

        logger.info("[Sequencer] Task %s moved to %s", task_id, task.phase)
        await self.phase_log(task_id, subtask_type, f"[Phase Complete] Task moved to {task.phase}")
        if subtask_type == SubtaskType.DEV and self.on_dev_complete is not None:
            result = self.on_dev_complete(task_id)
            if inspect.isawaitable(result):
                await result
        return True

    async def phase_log(self, task_id: str, subtask_type: SubtaskType, message: str) -> None:
        if self.stream_log is None:
            return
        try:
            await asyncio.to_thread(
                self.stream_log.append_phase_log,
                task_id,
                PHASE_LOG_FOR_TYPE[subtask_type],
                message,
            )
        except OSError as e:
            logger.warning("[Sequencer] Could not write phase log for %s: %s", task_id, e)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _start(
        self, task: Task, subtask_id: str, subtask_type: SubtaskType
    ) -> str | None:
        task, started = await self.store.update_task(
            task.id, lambda t: state_machine.start_subtask(t, subtask_id)
        )
        subtask = task.find_subtask(subtask_id)
        if not started or subtask is None:
            return None

        build_prompt = (
            build_dev_subtask_prompt if subtask_type == SubtaskType.DEV else build_qa_subtask_prompt
        )

        async def on_complete(result: AgentResult) -> None:
            await self._handle_result(task.id, subtask_id, subtask_type, result)

        thread_id = await self.supervisor.start_agent(
            task.id,
            build_prompt(task, subtask),
            working_dir=task.worktree_path or self.default_working_dir,
            on_complete=on_complete,
            provider=task.cli_tool,
            config=task.cli_config,
        )

        def assign(t: Task) -> bool:
            current = t.find_subtask(subtask_id)
            # The run may already have finished and cleared the agent
            if current is not None and current.status == SubtaskStatus.IN_PROGRESS:
                t.assigned_agent = thread_id
                return True
            return False

        try:
            _, assigned = await self.store.update_task(task.id, assign)
        except NotFoundError:
            assigned = False
        if not assigned:
            # Skipped, deleted or stopped while the agent was starting
            await self._stop_if_running(thread_id)
        return thread_id

    async def _stop_if_running(self, thread_id: str) -> None:
        session = self.supervisor.get_session(thread_id)
        if session is not None and session.is_running:
            logger.info("[Sequencer] Stopping agent %s of a finished subtask", thread_id)
            await self.supervisor.stop_agent_by_thread_id(thread_id)

    async def _await_session_end(self, task_id: str, thread_id: str | None) -> None:
        """Wait until the agent of a finished step is no longer running.

        Skip and delete finish the subtask before stopping its agent, so the
        next step must not start while that stop is still in flight.
        """
        if thread_id is None:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout
        async with self.events.watch(task_id) as changed:
            while True:
                changed.clear()
                session = self.supervisor.get_session(thread_id)
                if session is None or not session.is_running:
                    return
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise WaitTimeoutError(
                        f"Agent {thread_id} of task {task_id} is still running "
                        f"after {self.wait_timeout:.0f}s"
                    )
                try:
                    await asyncio.wait_for(
                        changed.wait(), timeout=min(self.poll_interval, remaining)
                    )
                except TimeoutError:
                    pass

    async def _block(self, task_id: str, subtask_id: str) -> None:
        def block(t: Task) -> None:
            state_machine.fail_subtask(t, subtask_id)
            state_machine.mark_blocked(t)

        try:
            await self.store.update_task(task_id, block)
        except NotFoundError:
            pass

    async def _handle_result(
        self,
        task_id: str,
        subtask_id: str,
        subtask_type: SubtaskType,
        result: AgentResult,
    ) -> None:
        log = logging.getLogger(f"{__name__}.{task_id}")
        try:
            if not result.success:
                _, failed = await self.store.update_task(
                    task_id, lambda t: state_machine.fail_subtask(t, subtask_id)
                )
                if failed:
                    log.warning("[Sequencer] Subtask %s failed: %s", subtask_id, result.error)
                    await self.phase_log(
                        task_id, subtask_type, f"[Subtask Failed] {subtask_id}: {result.error}"
                    )
                return

            def complete(t: Task) -> bool:
                t.assigned_agent = None
                return state_machine.complete_subtask(t, subtask_id)

            _, completed = await self.store.update_task(task_id, complete)
            if completed:
                log.info("[Sequencer] Subtask %s completed", subtask_id)
                await self.phase_log(task_id, subtask_type, f"[Subtask Completed] {subtask_id}")
                await self.check_completion(task_id, subtask_type)
        except NotFoundError:
            log.info("[Sequencer] Task %s was deleted before %s finished", task_id, subtask_id)

    async def _wait_for_subtask(
        self, task_id: str, subtask_id: str, phase: WorkflowPhase
    ) -> _WaitState:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout
        async with self.events.watch(task_id) as changed:
            while True:
                changed.clear()
                state = self._classify(await self.store.load_task(task_id), subtask_id, phase)
                if state is not None:
                    return state

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise WaitTimeoutError(
                        f"Subtask {subtask_id} of task {task_id} did not finish "
                        f"within {self.wait_timeout:.0f}s"
                    )
                try:
                    await asyncio.wait_for(
                        changed.wait(), timeout=min(self.poll_interval, remaining)
                    )
                except TimeoutError:
                    pass

    @staticmethod
    def _classify(task: Task | None, subtask_id: str, phase: WorkflowPhase) -> _WaitState | None:
        if task is None:
            return _WaitState.TASK_MISSING
        subtask = task.find_subtask(subtask_id)
        if subtask is None:
            return _WaitState.REMOVED
        if subtask.is_completed:
            return _WaitState.COMPLETED
        if task.status == TaskStatus.BLOCKED:
            return _WaitState.BLOCKED
        if task.status == TaskStatus.COMPLETED or task.phase != phase:
            return _WaitState.LEFT_PHASE
        return None
