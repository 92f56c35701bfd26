"""
Agents Package
==============

Agent process supervision: capability adapters, the supervisor, run logs
and the task event bus.

Uses lazy imports so that ``agents.events`` can be imported by the task
store without loading the adapters.
"""

from typing import Any

# Module-level placeholders (with _ prefix) for CodeQL static analysis.
# The actual exported names (without _ prefix) trigger __getattr__ for lazy loading.
_AgentSupervisor: Any = None
_AgentResult: Any = None
_SessionStatus: Any = None
_StreamLog: Any = None
_TaskEventBus: Any = None

__all__ = [
    "AgentResult",
    "AgentSupervisor",
    "SessionStatus",
    "StreamLog",
    "TaskEventBus",
]


def __getattr__(name: str) -> Any:
    """Lazy imports to avoid circular dependencies."""
    if name in ("AgentSupervisor", "AgentResult", "SessionStatus"):
        from . import supervisor

        return getattr(supervisor, name)
    elif name == "StreamLog":
        from .stream_log import StreamLog

        return StreamLog
    elif name == "TaskEventBus":
        from .events import TaskEventBus

        return TaskEventBus
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
