"""
Phase State Machine
===================

Legal {phase, status} transitions of a task. Every transition is a plain
function that mutates a Task in place and returns whether it changed
anything, so it can be applied inside ``TaskStore.update_task`` and safely
re-applied to a record a concurrent writer already advanced.

    planning -> in_progress -> ai_review -> human_review -> done

``blocked`` is a status, not a phase: it is reachable from any active phase
and keeps the phase where it was. Phases never move backward on their own;
only ``move_phase(..., manual=True)``, ``restart`` and ``mark_stopped(...,
revert_to_planning=True)`` (human actions) do that.
"""

from __future__ import annotations

from core.errors import ConflictError
from tasks.models import (
    PlanningStatus,
    SubtaskStatus,
    SubtaskType,
    Task,
    TaskStatus,
    WorkflowPhase,
    now_ms,
)

ACTIVE_PHASES = (WorkflowPhase.PLANNING, WorkflowPhase.IN_PROGRESS, WorkflowPhase.AI_REVIEW)


def move_phase(task: Task, target: WorkflowPhase, manual: bool = False) -> bool:
    """Set the phase, refusing automatic regressions.

    Raises:
        ConflictError: *target* is behind the current phase and the move is
            not a human action
    """
    if task.phase == target:
        return False
    if target.rank < task.phase.rank and not manual:
        raise ConflictError(
            f"Task {task.id} cannot move back from {task.phase} to {target} automatically"
        )
    task.phase = target
    return True


def begin_planning(task: Task, thread_id: str | None) -> bool:
    if task.phase != WorkflowPhase.PLANNING:
        raise ConflictError(f"Task {task.id} is in {task.phase}, not planning")
    task.status = TaskStatus.PLANNING
    task.planning_status = PlanningStatus.GENERATING_PLAN
    task.assigned_agent = thread_id
    return True


def record_plan(task: Task, plan: str) -> bool:
    """Store a generated plan; the task then awaits approval."""
    task.plan_content = plan
    task.planning_status = PlanningStatus.PLAN_READY
    task.status = TaskStatus.PENDING
    task.assigned_agent = None
    return True


def revise_plan(task: Task, plan: str) -> bool:
    """Replace the plan after a human edit or a feedback regeneration.

    The revised plan has to be approved again.
    """
    if task.phase != WorkflowPhase.PLANNING:
        raise ConflictError(f"Task {task.id} is in {task.phase}, not planning")
    record_plan(task, plan)
    task.plan_approved = False
    return True


def restart(task: Task) -> bool:
    """Edit-and-restart: back to the start of planning.

    The plan is dropped and every subtask is removed (their ids stay
    retired).
    """
    for subtask in list(task.subtasks):
        task.remove_subtask(subtask.id)
    move_phase(task, WorkflowPhase.PLANNING, manual=True)
    task.status = TaskStatus.PENDING
    task.plan_content = None
    task.plan_approved = False
    task.planning_status = PlanningStatus.NOT_STARTED
    task.assigned_agent = None
    return True


def approve_plan(task: Task) -> bool:
    if task.plan_approved and task.planning_status == PlanningStatus.PLAN_APPROVED:
        return False
    if not task.plan_content:
        raise ConflictError(f"Task {task.id} has no plan to approve")
    task.plan_approved = True
    task.planning_status = PlanningStatus.PLAN_APPROVED
    return True


def begin_development(task: Task, thread_id: str | None) -> bool:
    """planning (approved) -> in_progress with an agent assigned."""
    if not task.plan_approved:
        raise ConflictError(f"Task {task.id} plan is not approved")
    changed = move_phase(task, WorkflowPhase.IN_PROGRESS)
    task.status = TaskStatus.IN_PROGRESS
    task.assigned_agent = thread_id
    return changed


def complete_dev(task: Task) -> bool:
    """in_progress -> ai_review once every dev subtask is completed.

    Returns True only for the call that performed the move.
    """
    if task.phase != WorkflowPhase.IN_PROGRESS or not task.all_completed(SubtaskType.DEV):
        return False
    move_phase(task, WorkflowPhase.AI_REVIEW)
    task.status = TaskStatus.IN_PROGRESS
    task.assigned_agent = None
    return True


def complete_qa(task: Task) -> bool:
    """ai_review -> human_review once every QA subtask is completed."""
    if task.phase != WorkflowPhase.AI_REVIEW or not task.all_completed(SubtaskType.QA):
        return False
    move_phase(task, WorkflowPhase.HUMAN_REVIEW)
    task.status = TaskStatus.COMPLETED
    task.assigned_agent = None
    return True


def finish_review(task: Task) -> bool:
    """human_review -> done (human approval)."""
    if task.phase == WorkflowPhase.DONE:
        return False
    if task.phase != WorkflowPhase.HUMAN_REVIEW:
        raise ConflictError(f"Task {task.id} is in {task.phase}, not human_review")
    move_phase(task, WorkflowPhase.DONE)
    task.status = TaskStatus.COMPLETED
    return True


def mark_blocked(task: Task) -> bool:
    """Execution failed: needs a human. The phase is kept."""
    changed = task.status != TaskStatus.BLOCKED or task.assigned_agent is not None
    task.status = TaskStatus.BLOCKED
    task.assigned_agent = None
    return changed


def mark_stopped(task: Task, revert_to_planning: bool = False) -> bool:
    """A human stopped the running agent.

    By default the task is blocked in its current phase. With
    *revert_to_planning* it goes back to an unapproved plan instead.
    """
    for subtask in task.subtasks:
        if subtask.status == SubtaskStatus.IN_PROGRESS:
            subtask.status = SubtaskStatus.PENDING
    if revert_to_planning:
        move_phase(task, WorkflowPhase.PLANNING, manual=True)
        task.status = TaskStatus.PENDING
        task.plan_approved = False
        task.planning_status = (
            PlanningStatus.PLAN_READY if task.plan_content else PlanningStatus.NOT_STARTED
        )
        task.assigned_agent = None
        return True
    return mark_blocked(task)


def start_subtask(task: Task, subtask_id: str, thread_id: str | None = None) -> bool:
    subtask = task.find_subtask(subtask_id)
    if subtask is None or subtask.status == SubtaskStatus.COMPLETED:
        return False
    subtask.status = SubtaskStatus.IN_PROGRESS
    task.status = TaskStatus.IN_PROGRESS
    if thread_id is not None:
        task.assigned_agent = thread_id
    return True


def complete_subtask(task: Task, subtask_id: str) -> bool:
    subtask = task.find_subtask(subtask_id)
    if subtask is None or subtask.status == SubtaskStatus.COMPLETED:
        return False
    subtask.status = SubtaskStatus.COMPLETED
    subtask.completed_at = now_ms()
    return True


def fail_subtask(task: Task, subtask_id: str) -> bool:
    """Reset a failed subtask to pending and block the task.

    Ignored when a human action already completed or removed the subtask.
    """
    subtask = task.find_subtask(subtask_id)
    if subtask is None or subtask.status == SubtaskStatus.COMPLETED:
        return False
    subtask.status = SubtaskStatus.PENDING
    mark_blocked(task)
    return True


def is_active(task: Task) -> bool:
    return task.phase in ACTIVE_PHASES
