"""
Task Models
===========

Task and subtask records as persisted by the task store. Field names are
snake_case in Python and camelCase on disk and over HTTP.
"""

from __future__ import annotations

import random
import string
import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WorkflowPhase(StrEnum):
    """Position of a task in the workflow, in forward order."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    AI_REVIEW = "ai_review"
    HUMAN_REVIEW = "human_review"
    DONE = "done"

    @property
    def rank(self) -> int:
        return list(WorkflowPhase).index(self)


class TaskStatus(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class PlanningStatus(StrEnum):
    NOT_STARTED = "not_started"
    GENERATING_PLAN = "generating_plan"
    PLAN_READY = "plan_ready"
    PLAN_APPROVED = "plan_approved"


class SubtaskType(StrEnum):
    DEV = "dev"
    QA = "qa"


class SubtaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_task_id() -> str:
    """Return an id of the form ``task-<epoch-ms>-<5 base36 chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
    return f"task-{now_ms()}-{suffix}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Subtask(_CamelModel):
    id: str
    content: str
    label: str
    type: SubtaskType = SubtaskType.DEV
    status: SubtaskStatus = SubtaskStatus.PENDING
    active_form: str | None = None
    completed_at: int | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == SubtaskStatus.COMPLETED


class Task(_CamelModel):
    """A unit of work routed through the five-phase workflow.

    ``assigned_agent`` is only a lookup key into the supervisor; the session
    itself is never stored on the task. ``version`` is bumped by the store
    on every successful save.
    """

    id: str = Field(default_factory=generate_task_id)
    title: str
    description: str = ""
    phase: WorkflowPhase = WorkflowPhase.PLANNING
    status: TaskStatus = TaskStatus.PENDING
    subtasks: list[Subtask] = Field(default_factory=list)
    cli_tool: str = "mock"
    cli_config: dict[str, Any] = Field(default_factory=dict)
    requires_human_review: bool = True
    plan_approved: bool = False
    plan_content: str | None = None
    planning_status: PlanningStatus = PlanningStatus.NOT_STARTED
    assigned_agent: str | None = None
    worktree_path: str | None = None
    branch_name: str | None = None
    # Ids of removed subtasks; never handed out again
    retired_subtask_ids: list[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    version: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    # ------------------------------------------------------------------
    # Subtask helpers
    # ------------------------------------------------------------------

    def find_subtask(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def subtasks_of(self, subtask_type: SubtaskType) -> list[Subtask]:
        return [s for s in self.subtasks if s.type == subtask_type]

    def next_pending(self, subtask_type: SubtaskType) -> Subtask | None:
        """First not-completed subtask of *subtask_type* in record order."""
        for subtask in self.subtasks_of(subtask_type):
            if not subtask.is_completed:
                return subtask
        return None

    def all_completed(self, subtask_type: SubtaskType) -> bool:
        return all(s.is_completed for s in self.subtasks_of(subtask_type))

    def used_subtask_ids(self) -> set[str]:
        return {s.id for s in self.subtasks} | set(self.retired_subtask_ids)

    def remove_subtask(self, subtask_id: str) -> Subtask | None:
        subtask = self.find_subtask(subtask_id)
        if subtask is None:
            return None
        self.subtasks.remove(subtask)
        if subtask_id not in self.retired_subtask_ids:
            self.retired_subtask_ids.append(subtask_id)
        return subtask

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def touch(self) -> None:
        self.updated_at = now_ms()

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls.model_validate(data)
