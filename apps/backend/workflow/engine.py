"""
Task Workflow Engine
====================

Composition root of the workflow: wires the task store, agent supervisor,
worktree manager, event bus and subtask sequencer together, and exposes the
actions a human (or the HTTP API) can take on a task.

Flow of a task::

    create_task -> start_planning -> [plan agent] -> approve_plan
        -> start_development -> [subtask generation agent]
        -> dev flow (sequencer) -> ai_review -> QA flow (sequencer)
        -> human_review -> complete_review -> done

Sequencer runs ("flows") are tracked per task. A new flow for a task waits
for the previous one to end, so a task never runs two subtasks at once.
Git calls are synchronous and run via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import partial
from pathlib import Path
from typing import Any

from agents.adapters import AdapterFactory, create_adapter
from agents.events import TaskEventBus
from agents.stream_log import StreamLog
from agents.supervisor import AgentResult, AgentSupervisor
from core.config import EngineConfig
from core.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from core.worktree import WorktreeManager, clean_planning_artifacts
from tasks.models import (
    PlanningStatus,
    SubtaskStatus,
    SubtaskType,
    Task,
    TaskStatus,
    WorkflowPhase,
)
from tasks.store import JsonTaskStore, TaskStore

from . import state_machine
from .prompts import (
    build_plan_correction_prompt,
    build_plan_feedback_prompt,
    build_planning_prompt,
    build_subtask_generation_prompt,
)
from .sequencer import SequenceOutcome, SubtaskSequencer
from .validation import (
    PlanOutput,
    SubtaskPlanOutput,
    build_subtasks,
    parse_structured,
    validate_plan_markdown,
    validate_subtask_plan,
)

logger = logging.getLogger(__name__)

MAX_PLAN_ATTEMPTS = 3

PLAN_EDIT_METHODS = ("inline", "feedback")


class TaskWorkflowEngine:
    """Runs tasks through planning, development and review.

    Collaborators default to the file-backed implementations rooted at
    ``config.project_dir``; tests inject their own.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        store: TaskStore | None = None,
        events: TaskEventBus | None = None,
        supervisor: AgentSupervisor | None = None,
        worktrees: WorktreeManager | None = None,
        stream_log: StreamLog | None = None,
        adapter_factory: AdapterFactory = create_adapter,
    ) -> None:
        self.config = config
        self.events = events or TaskEventBus()
        self.store = store or JsonTaskStore(config.tasks_dir, self.events)
        self.stream_log = stream_log or StreamLog(config.tasks_dir, config.thread_index_path)
        self.supervisor = supervisor or AgentSupervisor(
            adapter_factory,
            self.stream_log,
            self.events,
            config.max_concurrent_agents,
        )
        self.worktrees = worktrees or WorktreeManager(
            config.project_dir, config.worktrees_dir
        )
        self.sequencer = SubtaskSequencer(
            self.store,
            self.supervisor,
            self.events,
            wait_timeout=config.subtask_wait_timeout,
            poll_interval=config.poll_interval,
            stream_log=self.stream_log,
            default_working_dir=config.project_dir,
            on_dev_complete=self._on_dev_complete,
        )
        self._flows: dict[str, asyncio.Task] = {}
        self._git_available: bool | None = None

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task(
        self,
        title: str,
        description: str = "",
        *,
        cli_tool: str | None = None,
        cli_config: dict[str, Any] | None = None,
        requires_human_review: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """Persist a new task and give it a worktree when git is available."""
        if not title or not title.strip():
            raise ValidationError("Task title is required")
        task = Task(
            title=title.strip(),
            description=description,
            cli_tool=cli_tool or self.config.default_cli,
            cli_config=cli_config or {},
            requires_human_review=requires_human_review,
            metadata=metadata or {},
        )
        await self.store.save_task(task)
        logger.info("[Engine] Created task %s: %s", task.id, task.title)
        return await self._ensure_worktree(task)

    async def get_task(self, task_id: str) -> Task:
        task = await self.store.load_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def list_tasks(self) -> list[Task]:
        return await self.store.list_tasks()

    async def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        cli_tool: str | None = None,
        cli_config: dict[str, Any] | None = None,
        requires_human_review: bool | None = None,
        metadata: dict[str, Any] | None = None,
        restart: bool = False,
    ) -> Task:
        """Edit the details of a task; None leaves a field unchanged.

        With *restart* the task also goes back to the start of planning:
        its plan and subtasks are discarded. Restarting needs an idle task.

        Raises:
            ValidationError: Blank title
            ConflictError: *restart* while an agent or flow is running
        """
        if title is not None and not title.strip():
            raise ValidationError("Task title is required")
        await self.get_task(task_id)
        if restart:
            self._ensure_idle(task_id)

        def edit(t: Task) -> None:
            if title is not None:
                t.title = title.strip()
            if description is not None:
                t.description = description
            if cli_tool is not None:
                t.cli_tool = cli_tool
            if cli_config is not None:
                t.cli_config = dict(cli_config)
            if requires_human_review is not None:
                t.requires_human_review = requires_human_review
            if metadata is not None:
                t.metadata = {**t.metadata, **metadata}
            if restart:
                state_machine.restart(t)

        task, _ = await self.store.update_task(task_id, edit)
        if restart:
            await self._phase_log(task_id, "planning", "[Task Edited] Restarting from planning")
            logger.info("[Engine] Task %s edited and sent back to planning", task_id)
        else:
            logger.info("[Engine] Task %s edited", task_id)
        return task

    async def delete_task(self, task_id: str) -> list[str]:
        """Tear down agent, worktree and record.

        Failing to stop the agent or remove the worktree does not prevent
        the record from being deleted.

        Returns:
            Warnings for the teardown steps that failed
        """
        await self.get_task(task_id)
        warnings: list[str] = []

        flow = self._flows.pop(task_id, None)
        if flow is not None and not flow.done():
            flow.cancel()

        try:
            await self.supervisor.stop_task_agents(task_id)
        except (WorkflowError, OSError) as e:
            logger.warning("[Engine] Failed to stop agent of %s: %s", task_id, e)
            warnings.append(f"Failed to stop agent: {e}")

        if await self.git_available():
            try:
                await asyncio.to_thread(self.worktrees.delete_worktree, task_id, True)
            except (WorkflowError, OSError) as e:
                logger.warning("[Engine] Failed to delete worktree of %s: %s", task_id, e)
                warnings.append(f"Failed to delete worktree: {e}")

        await self.supervisor.flush()
        self.supervisor.forget_task(task_id)
        await self.store.delete_task(task_id)
        try:
            await asyncio.to_thread(self.stream_log.forget_task, task_id)
        except OSError as e:
            warnings.append(f"Failed to update thread index: {e}")

        logger.info("[Engine] Deleted task %s (%d warning(s))", task_id, len(warnings))
        return warnings

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def start_planning(self, task_id: str) -> str:
        """Start the plan-generation agent; returns its thread id.

        Raises:
            ConflictError: An agent is already running for the task, or the
                task is past planning
        """
        task = await self.get_task(task_id)
        self._ensure_idle(task_id)
        if task.phase != WorkflowPhase.PLANNING:
            raise ConflictError(f"Task {task_id} is in {task.phase}, not planning")

        task = await self._ensure_worktree(task)
        await self._phase_log(task_id, "planning", "[Starting Planning Agent]")
        return await self._start_plan_agent(
            task, build_planning_prompt(task), partial(self._handle_plan_result, attempt=1)
        )

    async def modify_plan(
        self,
        task_id: str,
        method: str,
        *,
        new_plan: str | None = None,
        feedback: str | None = None,
    ) -> str | None:
        """Change the plan of a task that is still in planning.

        ``inline`` stores *new_plan* as written. ``feedback`` starts a plan
        agent that regenerates the current plan from *feedback*; a failed or
        malformed regeneration blocks the task. Either way the plan has to
        be approved again.

        Returns:
            Thread id of the regeneration agent, or None for inline edits

        Raises:
            ValidationError: Unknown method, or its input is missing
            ConflictError: An agent is running, the task is past planning,
                or there is no plan to regenerate
        """
        if method not in PLAN_EDIT_METHODS:
            raise ValidationError(
                f"Invalid method {method!r}. Must be one of: {', '.join(PLAN_EDIT_METHODS)}"
            )
        task = await self.get_task(task_id)
        self._ensure_idle(task_id)
        if task.phase != WorkflowPhase.PLANNING:
            raise ConflictError(f"Task {task_id} is in {task.phase}, not planning")

        if method == "inline":
            if not new_plan or not new_plan.strip():
                raise ValidationError("newPlan is required for inline edits")
            await self.store.update_task(task_id, lambda t: state_machine.revise_plan(t, new_plan))
            await self._phase_log(task_id, "planning", "[Plan Modified - Inline Edit]")
            logger.info("[Engine] Plan of %s edited inline", task_id)
            return None

        if not feedback or not feedback.strip():
            raise ValidationError("feedback is required to regenerate the plan")
        if not task.plan_content:
            raise ConflictError(f"Task {task_id} has no plan to modify")
        await self._phase_log(
            task_id, "planning", f"[Plan Modification Requested] Feedback: {feedback}"
        )
        return await self._start_plan_agent(
            task, build_plan_feedback_prompt(task, feedback), self._handle_revised_plan
        )

    async def approve_plan(self, task_id: str, start_development: bool = False) -> Task:
        """Approve the generated plan, optionally starting development."""
        task = await self.get_task(task_id)
        if task.phase != WorkflowPhase.PLANNING:
            raise ConflictError(f"Task {task_id} is in {task.phase}, not planning")
        task, _ = await self.store.update_task(task_id, state_machine.approve_plan)
        await self._phase_log(task_id, "planning", "[Plan Approved]")
        logger.info("[Engine] Plan approved for %s", task_id)
        if start_development:
            await self.start_development(task_id)
            task = await self.get_task(task_id)
        return task

    async def _start_plan_agent(
        self,
        task: Task,
        prompt: str,
        handle_result: Callable[[str, AgentResult], Awaitable[None]],
    ) -> str:
        task_id = task.id

        async def on_complete(result: AgentResult) -> None:
            await handle_result(task_id, result)

        def begin(t: Task) -> None:
            state_machine.begin_planning(t, None)
            t.plan_approved = False

        await self.store.update_task(task_id, begin)
        thread_id = await self._start_agent(
            task, prompt, on_complete, PlanOutput, phase_log="planning"
        )

        def assign(t: Task) -> None:
            if t.planning_status == PlanningStatus.GENERATING_PLAN and t.assigned_agent is None:
                t.assigned_agent = thread_id

        await self.store.update_task(task_id, assign)
        await self._phase_log(task_id, "planning", f"[Agent Started] Thread ID: {thread_id}")
        return thread_id

    async def _handle_plan_result(self, task_id: str, result: AgentResult, attempt: int) -> None:
        await self._phase_log(
            task_id, "planning", f"[Agent Completed] Success: {result.success}"
        )
        try:
            if not result.success:
                await self._phase_log(task_id, "planning", f"[Error] {result.error}")
                await self.store.update_task(task_id, state_machine.mark_blocked)
                return

            try:
                plan = parse_structured(result.structured, result.output, PlanOutput).plan
            except ValidationError as e:
                logger.warning("[Engine] Malformed plan output for %s: %s", task_id, e)
                await self._phase_log(task_id, "planning", f"[Parse Error]\n{e.feedback()}")
                await self.store.update_task(task_id, state_machine.mark_blocked)
                return

            validation = validate_plan_markdown(plan)
            await self._phase_log(
                task_id,
                "planning",
                f"[Plan Validation] valid={validation.valid} "
                f"errors={len(validation.errors)} warnings={len(validation.warnings)}",
            )

            task = await self.get_task(task_id)
            if not validation.valid and not task.requires_human_review:
                if attempt < MAX_PLAN_ATTEMPTS:
                    await self._phase_log(
                        task_id,
                        "planning",
                        f"[Plan Validation Failed] Attempt {attempt}/{MAX_PLAN_ATTEMPTS - 1}. "
                        "Re-generating with feedback...",
                    )
                    task, _ = await self.store.update_task(
                        task_id, lambda t: setattr(t, "plan_content", plan)
                    )
                    prompt = build_plan_correction_prompt(task, plan, validation.feedback())
                    await self._start_plan_agent(
                        task, prompt, partial(self._handle_plan_result, attempt=attempt + 1)
                    )
                    return

                await self._phase_log(
                    task_id, "planning", "[Plan Validation Failed] Exhausted retries."
                )

                def record_and_block(t: Task) -> None:
                    state_machine.record_plan(t, plan)
                    state_machine.mark_blocked(t)

                await self.store.update_task(task_id, record_and_block)
                return

            task, _ = await self.store.update_task(
                task_id, lambda t: state_machine.record_plan(t, plan)
            )
            await self._phase_log(task_id, "planning", "[Plan Generated]")

            if not task.requires_human_review and validation.valid:
                await self._phase_log(
                    task_id, "planning", "[Auto-approving plan (no human review required)]"
                )
                await self.store.update_task(task_id, state_machine.approve_plan)
                try:
                    await self.start_development(task_id)
                except WorkflowError as e:
                    logger.error("[Engine] Could not start development for %s: %s", task_id, e)
                    await self._phase_log(task_id, "planning", f"[Error Starting Development] {e}")
                    await self.store.update_task(task_id, state_machine.mark_blocked)
        except NotFoundError:
            logger.info("[Engine] Task %s was deleted while planning", task_id)

    async def _handle_revised_plan(self, task_id: str, result: AgentResult) -> None:
        await self._phase_log(
            task_id, "planning", f"[Plan Regeneration Completed] Success: {result.success}"
        )
        try:
            if not result.success:
                await self._phase_log(task_id, "planning", f"[Error] {result.error}")
                await self.store.update_task(task_id, state_machine.mark_blocked)
                return

            try:
                plan = parse_structured(result.structured, result.output, PlanOutput).plan
            except ValidationError as e:
                logger.warning("[Engine] Malformed revised plan for %s: %s", task_id, e)
                await self._phase_log(task_id, "planning", f"[Parse Error]\n{e.feedback()}")
                await self.store.update_task(task_id, state_machine.mark_blocked)
                return

            await self.store.update_task(task_id, lambda t: state_machine.revise_plan(t, plan))
            await self._phase_log(task_id, "planning", "[Updated Plan Saved]")
        except NotFoundError:
            logger.info("[Engine] Task %s was deleted while its plan was regenerated", task_id)

    # ------------------------------------------------------------------
    # Development and review
    # ------------------------------------------------------------------

    async def start_development(self, task_id: str) -> str:
        """Start the subtask-generation agent for an approved plan.

        Once the subtasks are stored the dev flow starts automatically.

        Returns:
            Thread id of the generation agent
        """
        task = await self.get_task(task_id)
        self._ensure_idle(task_id)
        if not task.plan_approved:
            raise ConflictError(f"Task {task_id} plan is not approved")
        if task.phase not in (WorkflowPhase.PLANNING, WorkflowPhase.IN_PROGRESS):
            raise ConflictError(f"Task {task_id} is in {task.phase}, cannot start development")

        task = await self._ensure_worktree(task)
        task, _ = await self.store.update_task(
            task_id, lambda t: state_machine.begin_development(t, None)
        )
        await asyncio.to_thread(clean_planning_artifacts, task.worktree_path)
        await self._phase_log(task_id, "development", "[Starting Subtask Generation Agent]")

        async def on_complete(result: AgentResult) -> None:
            await self._handle_subtasks_result(task_id, result)

        thread_id = await self._start_agent(
            task,
            build_subtask_generation_prompt(task),
            on_complete,
            SubtaskPlanOutput,
            phase_log="development",
        )

        def assign(t: Task) -> None:
            if t.assigned_agent is None and t.status == TaskStatus.IN_PROGRESS and not any(
                s.status != SubtaskStatus.PENDING for s in t.subtasks
            ):
                t.assigned_agent = thread_id

        await self.store.update_task(task_id, assign)
        await self._phase_log(task_id, "development", f"[Agent Started] Thread ID: {thread_id}")
        return thread_id

    async def _handle_subtasks_result(self, task_id: str, result: AgentResult) -> None:
        await self._phase_log(
            task_id, "development", f"[Subtask Generation Completed] Success: {result.success}"
        )
        try:
            if not result.success:
                await self._phase_log(task_id, "development", f"[Error] {result.error}")
                await self.store.update_task(task_id, state_machine.mark_blocked)
                return

            try:
                parsed = parse_structured(result.structured, result.output, SubtaskPlanOutput)
                warnings = validate_subtask_plan(parsed)
            except ValidationError as e:
                logger.warning("[Engine] Malformed subtask output for %s: %s", task_id, e)
                await self._phase_log(task_id, "development", f"[Parse Error]\n{e.feedback()}")
                await self.store.update_task(task_id, state_machine.mark_blocked)
                return

            for warning in warnings:
                logger.warning("[Engine] %s: %s", task_id, warning)

            def store_subtasks(t: Task) -> int:
                used = t.used_subtask_ids()
                for old in list(t.subtasks):
                    t.remove_subtask(old.id)
                t.subtasks = build_subtasks(parsed.subtasks, used)
                t.status = TaskStatus.IN_PROGRESS
                t.assigned_agent = None
                return len(t.subtasks)

            _, count = await self.store.update_task(task_id, store_subtasks)
            await self._phase_log(task_id, "development", f"[Validated {count} subtasks]")
            await self._phase_log(task_id, "development", "[Starting Sequential Execution]")
            self._schedule_flow(task_id, SubtaskType.DEV)
        except NotFoundError:
            logger.info("[Engine] Task %s was deleted during subtask generation", task_id)

    async def start_review(self, task_id: str) -> None:
        """Start (or restart) the QA flow of a task in ai_review."""
        task = await self.get_task(task_id)
        self._ensure_idle(task_id)
        if task.phase != WorkflowPhase.AI_REVIEW:
            raise ConflictError(f"Task {task_id} is in {task.phase}, not ai_review")
        await self._reactivate(task_id)
        await asyncio.to_thread(clean_planning_artifacts, task.worktree_path)
        await self._phase_log(task_id, "review", "[Starting QA]")
        self._schedule_flow(task_id, SubtaskType.QA)

    async def resume_task(self, task_id: str) -> str | None:
        """Continue a blocked or halted task from where it stopped.

        Returns:
            Thread id when resuming required starting a planning or
            generation agent, otherwise None
        """
        task = await self.get_task(task_id)
        self._ensure_idle(task_id)
        if not state_machine.is_active(task):
            raise ConflictError(f"Task {task_id} is in {task.phase}; nothing to resume")
        if task.phase == WorkflowPhase.PLANNING:
            if task.plan_approved:
                return await self.start_development(task_id)
            return await self.start_planning(task_id)
        if task.phase == WorkflowPhase.IN_PROGRESS:
            if not task.subtasks:
                return await self.start_development(task_id)
            await self._reactivate(task_id)
            self._schedule_flow(task_id, SubtaskType.DEV)
            return None
        await self.start_review(task_id)
        return None

    async def complete_review(self, task_id: str) -> Task:
        """Human approval: human_review -> done."""
        task, _ = await self.store.update_task(task_id, state_machine.finish_review)
        await asyncio.to_thread(clean_planning_artifacts, task.worktree_path)
        logger.info("[Engine] Task %s is done", task_id)
        return task

    async def _on_dev_complete(self, task_id: str) -> None:
        task = await self.get_task(task_id)
        await asyncio.to_thread(clean_planning_artifacts, task.worktree_path)
        await self._phase_log(task_id, "review", "[Development complete, starting QA]")
        logger.info("[Engine] Dev subtasks of %s completed, starting QA", task_id)
        self._schedule_flow(task_id, SubtaskType.QA)

    # ------------------------------------------------------------------
    # Subtask actions
    # ------------------------------------------------------------------

    async def skip_subtask(self, task_id: str, subtask_id: str) -> Task:
        """Mark a subtask completed without running it.

        A running agent for the subtask is stopped. The completion check
        runs as if the subtask had succeeded.
        """

        def skip(t: Task) -> tuple[SubtaskType, bool, str | None]:
            subtask = t.find_subtask(subtask_id)
            if subtask is None:
                raise NotFoundError(f"Subtask {subtask_id} not found in task {task_id}")
            running = subtask.status == SubtaskStatus.IN_PROGRESS
            thread_id = t.assigned_agent if running else None
            if running:
                t.assigned_agent = None
            state_machine.complete_subtask(t, subtask_id)
            return subtask.type, running, thread_id

        _, (subtask_type, running, thread_id) = await self.store.update_task(task_id, skip)
        logger.info("[Engine] Skipped subtask %s of %s", subtask_id, task_id)
        await self.sequencer.phase_log(task_id, subtask_type, f"[Subtask Skipped] {subtask_id}")
        if running:
            await self._stop_subtask_agent(task_id, thread_id)
        await self.sequencer.check_completion(task_id, subtask_type)
        return await self.get_task(task_id)

    async def delete_subtask(self, task_id: str, subtask_id: str) -> Task:
        """Remove a subtask, stopping its agent if it is running."""

        def delete(t: Task) -> tuple[SubtaskType, bool, str | None]:
            subtask = t.remove_subtask(subtask_id)
            if subtask is None:
                raise NotFoundError(f"Subtask {subtask_id} not found in task {task_id}")
            running = subtask.status == SubtaskStatus.IN_PROGRESS
            thread_id = t.assigned_agent if running else None
            if running:
                t.assigned_agent = None
            return subtask.type, running, thread_id

        _, (subtask_type, running, thread_id) = await self.store.update_task(task_id, delete)
        logger.info("[Engine] Deleted subtask %s of %s", subtask_id, task_id)
        await self.sequencer.phase_log(task_id, subtask_type, f"[Subtask Deleted] {subtask_id}")
        if running:
            await self._stop_subtask_agent(task_id, thread_id)
        await self.sequencer.check_completion(task_id, subtask_type)
        return await self.get_task(task_id)

    async def reorder_subtasks(self, task_id: str, subtask_ids: list[str]) -> Task:
        """Reorder subtasks. Dev subtasks always stay ahead of QA subtasks.

        Raises:
            ValidationError: *subtask_ids* is not exactly the task's subtask ids
        """

        def reorder(t: Task) -> None:
            current = [s.id for s in t.subtasks]
            if len(set(subtask_ids)) != len(subtask_ids) or set(subtask_ids) != set(current):
                raise ValidationError("Reorder must list every subtask id exactly once")
            by_id = {s.id: s for s in t.subtasks}
            ordered = [by_id[i] for i in subtask_ids]
            t.subtasks = [s for s in ordered if s.type == SubtaskType.DEV] + [
                s for s in ordered if s.type == SubtaskType.QA
            ]

        task, _ = await self.store.update_task(task_id, reorder)
        return task

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def stop_agent(self, thread_id: str, revert_to_planning: bool = False) -> str:
        """Stop an agent run and return its task id.

        A task whose agent was running is blocked in its current phase, or
        sent back to planning with *revert_to_planning*.
        """
        session = self.supervisor.get_session(thread_id)
        if session is None:
            raise NotFoundError(f"Agent session {thread_id} not found")
        was_running = session.is_running
        task_id = await self.supervisor.stop_agent_by_thread_id(thread_id)
        if was_running:
            try:
                await self.store.update_task(
                    task_id, lambda t: state_machine.mark_stopped(t, revert_to_planning)
                )
            except NotFoundError:
                pass
            logger.info("[Engine] Stopped agent %s of task %s", thread_id, task_id)
        return task_id

    def get_agent_status(self, thread_id: str) -> dict[str, Any]:
        return self.supervisor.get_agent_status(thread_id)

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    async def git_available(self) -> bool:
        if self._git_available is None:
            self._git_available = await asyncio.to_thread(self.worktrees.verify_git_available)
        return self._git_available

    async def list_worktrees(self, enriched: bool = True) -> list[Any]:
        """Managed worktrees; enriched entries flag orphans (no matching task)."""
        if not await self.git_available():
            return []
        if not enriched:
            return await asyncio.to_thread(self.worktrees.list_worktrees)
        known = [t.id for t in await self.store.list_tasks()]
        return await asyncio.to_thread(self.worktrees.list_worktrees_enriched, known)

    async def get_worktree_status(self, task_id: str):
        return await asyncio.to_thread(self.worktrees.get_worktree_status, task_id)

    async def delete_worktree(
        self, task_id: str, force: bool = False, delete_branch: bool = False
    ) -> None:
        await asyncio.to_thread(self.worktrees.delete_worktree, task_id, force, delete_branch)

        def forget(t: Task) -> None:
            t.worktree_path = None

        try:
            await self.store.update_task(task_id, forget)
        except NotFoundError:
            pass

    async def cleanup_worktrees(self, force: bool = False) -> int:
        return await asyncio.to_thread(self.worktrees.cleanup_all_worktrees, force)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_busy(self, task_id: str | None = None) -> bool:
        """Whether a flow or agent run (including its callback) is active."""
        for flow_task_id, flow in self._flows.items():
            if task_id in (None, flow_task_id) and not flow.done():
                return True
        for session in self.supervisor.list_sessions(task_id):
            if session.is_running or (session.runner is not None and not session.runner.done()):
                return True
        return False

    async def wait_idle(self, task_id: str | None = None, timeout: float = 30.0) -> None:
        """Wait until :meth:`is_busy` turns false.

        Raises:
            TimeoutError: Still busy after *timeout* seconds
        """
        async with asyncio.timeout(timeout):
            while self.is_busy(task_id):
                await asyncio.sleep(0.01)

    async def shutdown(self) -> None:
        for flow in list(self._flows.values()):
            flow.cancel()
        if self._flows:
            await asyncio.gather(*self._flows.values(), return_exceptions=True)
        self._flows.clear()
        await self.supervisor.shutdown()
        logger.info("[Engine] Shut down")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _ensure_idle(self, task_id: str) -> None:
        running = self.supervisor.get_running_session(task_id)
        if running is not None:
            raise ConflictError(
                f"Agent {running.thread_id} is already running for task {task_id}"
            )
        flow = self._flows.get(task_id)
        if flow is not None and not flow.done():
            raise ConflictError(f"Task {task_id} is already executing subtasks")

    async def _start_agent(
        self,
        task: Task,
        prompt: str,
        on_complete,
        output_schema: type,
        phase_log: str,
    ) -> str:
        config = {**task.cli_config, "outputSchema": output_schema.model_json_schema()}
        try:
            return await self.supervisor.start_agent(
                task.id,
                prompt,
                working_dir=task.worktree_path or str(self.config.project_dir),
                on_complete=on_complete,
                provider=task.cli_tool,
                config=config,
            )
        except ConflictError:
            raise
        except WorkflowError as e:
            logger.error("[Engine] Could not start agent for %s: %s", task.id, e)
            await self._phase_log(task.id, phase_log, f"[Error] {e}")
            await self.store.update_task(task.id, state_machine.mark_blocked)
            raise

    async def _stop_subtask_agent(self, task_id: str, thread_id: str | None) -> None:
        """Stop the agent of a subtask that was in progress.

        ``assigned_agent`` is written only after the agent has started, so
        the task's running session is used when it is not set yet. An agent
        still initializing is stopped by the sequencer once it starts.
        """
        if thread_id is None:
            running = self.supervisor.get_running_session(task_id)
            if running is None:
                return
            thread_id = running.thread_id
        try:
            await self.supervisor.stop_agent_by_thread_id(thread_id)
        except NotFoundError:
            pass

    async def _reactivate(self, task_id: str) -> None:
        def reactivate(t: Task) -> None:
            for subtask in t.subtasks:
                if subtask.status == SubtaskStatus.IN_PROGRESS:
                    subtask.status = SubtaskStatus.PENDING
            t.status = TaskStatus.IN_PROGRESS
            t.assigned_agent = None

        await self.store.update_task(task_id, reactivate)

    def _schedule_flow(self, task_id: str, subtask_type: SubtaskType) -> asyncio.Task:
        previous = self._flows.get(task_id)

        async def flow() -> SequenceOutcome | None:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            try:
                outcome = await self.sequencer.run(task_id, subtask_type)
                logger.info(
                    "[Engine] %s flow of %s ended: %s %s",
                    subtask_type,
                    task_id,
                    outcome.status,
                    outcome.detail or "",
                )
                return outcome
            except NotFoundError:
                return None
            except WorkflowError:
                logger.exception("[Engine] %s flow of %s failed", subtask_type, task_id)
                try:
                    await self.store.update_task(task_id, state_machine.mark_blocked)
                except NotFoundError:
                    pass
                return None
            finally:
                if self._flows.get(task_id) is asyncio.current_task():
                    del self._flows[task_id]

        flow_task = asyncio.create_task(flow(), name=f"flow-{task_id}-{subtask_type}")
        self._flows[task_id] = flow_task
        return flow_task

    async def _ensure_worktree(self, task: Task) -> Task:
        if task.worktree_path and Path(task.worktree_path).exists():
            return task
        if not await self.git_available():
            return task
        try:
            info = await asyncio.to_thread(self.worktrees.create_worktree, task.id)
        except WorkflowError as e:
            logger.warning("[Engine] No worktree for %s, using project dir: %s", task.id, e)
            return task

        def attach(t: Task) -> None:
            t.worktree_path = info.path
            t.branch_name = info.branch_name

        task, _ = await self.store.update_task(task.id, attach)
        return task

    async def _phase_log(self, task_id: str, phase: str, message: str) -> None:
        try:
            await asyncio.to_thread(self.stream_log.append_phase_log, task_id, phase, message)
        except OSError as e:
            logger.warning("[Engine] Could not write %s log for %s: %s", phase, task_id, e)
