"""
Workflow Errors
===============

Typed errors raised by the worktree manager, the agent supervisor, the task
store and the workflow engine. The API layer maps each family to an HTTP
status; the sequencer converts execution failures into a blocked task
instead of propagating them.
"""

from __future__ import annotations

from dataclasses import dataclass


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""

    pass


class NotFoundError(WorkflowError):
    """A task, subtask, worktree or agent session does not exist."""

    pass


class ConflictError(WorkflowError):
    """The operation collides with current state (running agent, existing branch)."""

    pass


class StaleWriteError(ConflictError):
    """A task save was based on an outdated version of the record."""

    def __init__(self, task_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Task {task_id} was modified concurrently "
            f"(saving version {expected}, stored version {actual})"
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class ExternalToolError(WorkflowError):
    """git or a capability adapter failed."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command or []
        self.stdout = stdout
        self.stderr = stderr


class WaitTimeoutError(WorkflowError, TimeoutError):
    """A bounded wait exceeded its ceiling.

    Soft by policy: the sequencer logs it and halts without failing the task.
    """

    pass


@dataclass
class FieldIssue:
    """One problem found while validating structured agent output."""

    field: str
    issue: str
    subtask_id: str | None = None

    def __str__(self) -> str:
        return f"{self.field}: {self.issue}"


class ValidationError(WorkflowError):
    """Input or structured agent output does not match the expected schema."""

    def __init__(self, message: str, issues: list[FieldIssue] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or []

    def feedback(self) -> str:
        """Human-readable list of issues, one per line."""
        if not self.issues:
            return str(self)
        lines = [str(self)]
        lines.extend(f"- {issue}" for issue in self.issues)
        return "\n".join(lines)
