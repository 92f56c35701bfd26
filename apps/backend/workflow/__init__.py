"""
Workflow Package
================

Phase state machine, subtask sequencing and the engine that composes them.

Uses lazy imports so that the pure state machine and validation helpers can
be imported without loading the supervisor stack.
"""

from typing import Any

# Module-level placeholders (with _ prefix) for CodeQL static analysis.
# The actual exported names (without _ prefix) trigger __getattr__ for lazy loading.
_TaskWorkflowEngine: Any = None
_SubtaskSequencer: Any = None
_SequenceOutcome: Any = None
_SequenceStatus: Any = None

__all__ = [
    "SequenceOutcome",
    "SequenceStatus",
    "SubtaskSequencer",
    "TaskWorkflowEngine",
]


def __getattr__(name: str) -> Any:
    """Lazy imports to avoid circular dependencies."""
    if name == "TaskWorkflowEngine":
        from .engine import TaskWorkflowEngine

        return TaskWorkflowEngine
    elif name in ("SubtaskSequencer", "SequenceOutcome", "SequenceStatus"):
        from . import sequencer

        return getattr(sequencer, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
