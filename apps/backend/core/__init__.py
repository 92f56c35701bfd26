"""
Core Framework Module
=====================

Core components for the task workflow engine: configuration, the error
taxonomy, file locking and git worktree isolation.

Note: We use lazy imports here so that importing ``core.errors`` from the
lower layers does not pull in subprocess-heavy modules.
"""

from typing import Any

# Module-level placeholders (with _ prefix) for CodeQL static analysis.
# The actual exported names (without _ prefix) trigger __getattr__ for lazy loading.
_EngineConfig: Any = None
_load_config: Any = None
_WorktreeManager: Any = None

__all__ = [
    "EngineConfig",
    "load_config",
    "WorktreeManager",
]


def __getattr__(name: str) -> Any:
    """Lazy imports to avoid circular dependencies and heavy imports."""
    if name == "EngineConfig":
        from .config import EngineConfig

        return EngineConfig
    elif name == "load_config":
        from .config import load_config

        return load_config
    elif name == "WorktreeManager":
        from .worktree import WorktreeManager

        return WorktreeManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
