"""
Tasks Package
=============

Task records and the store that persists them.
"""

from .models import (
    PlanningStatus,
    Subtask,
    SubtaskStatus,
    SubtaskType,
    Task,
    TaskStatus,
    WorkflowPhase,
)
from .store import JsonTaskStore, TaskStore

__all__ = [
    "JsonTaskStore",
    "PlanningStatus",
    "Subtask",
    "SubtaskStatus",
    "SubtaskType",
    "Task",
    "TaskStatus",
    "TaskStore",
    "WorkflowPhase",
]
