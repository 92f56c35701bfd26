"""
Engine Configuration
====================

Runtime settings for the workflow engine. Values are read once from the
project's ``.env`` file (via python-dotenv) and the process environment.

State layout under the project directory::

    .code-auto/
        tasks/<task-id>.json          task records
        tasks/<task-id>/              per-task logs and run streams
        worktrees/<task-id>/          isolated checkouts
        thread-index.json             thread id -> task id
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".code-auto"
BRANCH_PREFIX = "code-auto/"

DEFAULT_SUBTASK_WAIT_MS = 30 * 60 * 1000
DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_MAX_AGENTS = 12


@dataclass
class EngineConfig:
    """Settings shared by every engine component.

    Attributes:
        project_dir: Repository the engine operates on
        subtask_wait_timeout: Ceiling (seconds) for every subtask wait
        poll_interval: Fallback re-read interval (seconds) while waiting
        max_concurrent_agents: Maximum simultaneously running agent sessions
        default_cli: Capability adapter used when a task names none
        log_level: Logging level name for the API application
    """

    project_dir: Path
    subtask_wait_timeout: float = DEFAULT_SUBTASK_WAIT_MS / 1000
    poll_interval: float = DEFAULT_POLL_INTERVAL_MS / 1000
    max_concurrent_agents: int = DEFAULT_MAX_AGENTS
    default_cli: str = "mock"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.project_dir = Path(self.project_dir).resolve()

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @property
    def tasks_dir(self) -> Path:
        return self.state_dir / "tasks"

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / "worktrees"

    @property
    def thread_index_path(self) -> Path:
        return self.state_dir / "thread-index.json"

    def task_dir(self, task_id: str) -> Path:
        """Directory holding logs and run streams for one task."""
        return self.tasks_dir / task_id


def _positive_number(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[Config] Ignoring non-numeric %s=%r", name, raw)
        return default
    if value <= 0:
        logger.warning("[Config] Ignoring non-positive %s=%r", name, raw)
        return default
    return value


def load_config(project_dir: str | Path | None = None) -> EngineConfig:
    """Build an EngineConfig from ``.env`` and the environment.

    Args:
        project_dir: Explicit project directory. Falls back to
            ``CODE_AUTO_PROJECT_DIR`` and then the current directory.

    Returns:
        EngineConfig with every ceiling resolved
    """
    if project_dir is None:
        project_dir = os.environ.get("CODE_AUTO_PROJECT_DIR") or os.getcwd()
    project_path = Path(project_dir)

    env_file = project_path / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    wait_ms = _positive_number("CODE_AUTO_SUBTASK_WAIT_MS", DEFAULT_SUBTASK_WAIT_MS)
    poll_ms = _positive_number("CODE_AUTO_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS)
    max_agents = int(_positive_number("CODE_AUTO_MAX_AGENTS", DEFAULT_MAX_AGENTS))

    return EngineConfig(
        project_dir=project_path,
        subtask_wait_timeout=wait_ms / 1000,
        poll_interval=poll_ms / 1000,
        max_concurrent_agents=max_agents,
        default_cli=os.environ.get("CODE_AUTO_DEFAULT_CLI", "mock").strip().lower()
        or "mock",
        log_level=os.environ.get("CODE_AUTO_LOG_LEVEL", "INFO").upper(),
    )
