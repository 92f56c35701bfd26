"""
Tests for Engine Configuration
==============================

Tests covering core/config.py: defaults, ``.env`` loading through
python-dotenv, environment overrides and rejection of bad values.
"""

import pytest

from core.config import (
    DEFAULT_MAX_AGENTS,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_SUBTASK_WAIT_MS,
    STATE_DIR_NAME,
    EngineConfig,
    load_config,
)

CONFIG_KEYS = [
    "CODE_AUTO_PROJECT_DIR",
    "CODE_AUTO_SUBTASK_WAIT_MS",
    "CODE_AUTO_POLL_INTERVAL_MS",
    "CODE_AUTO_MAX_AGENTS",
    "CODE_AUTO_DEFAULT_CLI",
    "CODE_AUTO_LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Unset every engine variable and restore the environment afterwards.

    Setting first makes monkeypatch remember the variable, so values that
    load_dotenv writes are removed again at teardown.
    """
    for key in CONFIG_KEYS:
        monkeypatch.setenv(key, "placeholder")
        monkeypatch.delenv(key)
    return monkeypatch


class TestEngineConfig:
    """Tests for the EngineConfig dataclass."""

    def test_state_layout(self, temp_dir):
        config = EngineConfig(project_dir=temp_dir)

        assert config.state_dir == temp_dir.resolve() / STATE_DIR_NAME
        assert config.tasks_dir == config.state_dir / "tasks"
        assert config.worktrees_dir == config.state_dir / "worktrees"
        assert config.task_dir("task-1") == config.tasks_dir / "task-1"

    def test_project_dir_is_resolved(self, temp_dir):
        config = EngineConfig(project_dir=str(temp_dir / "a" / ".."))

        assert config.project_dir == temp_dir.resolve()


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self, temp_dir, clean_env):
        config = load_config(temp_dir)

        assert config.subtask_wait_timeout == DEFAULT_SUBTASK_WAIT_MS / 1000
        assert config.poll_interval == DEFAULT_POLL_INTERVAL_MS / 1000
        assert config.max_concurrent_agents == DEFAULT_MAX_AGENTS
        assert config.default_cli == "mock"
        assert config.log_level == "INFO"

    def test_reads_dotenv_file(self, temp_dir, clean_env):
        (temp_dir / ".env").write_text(
            "CODE_AUTO_SUBTASK_WAIT_MS=5000\n"
            "CODE_AUTO_MAX_AGENTS=3\n"
            "CODE_AUTO_DEFAULT_CLI=Claude-Code\n"
            "CODE_AUTO_LOG_LEVEL=debug\n"
        )

        config = load_config(temp_dir)

        assert config.subtask_wait_timeout == 5.0
        assert config.max_concurrent_agents == 3
        assert config.default_cli == "claude-code"
        assert config.log_level == "DEBUG"

    def test_environment_wins_over_dotenv(self, temp_dir, clean_env):
        (temp_dir / ".env").write_text("CODE_AUTO_POLL_INTERVAL_MS=2000\n")
        clean_env.setenv("CODE_AUTO_POLL_INTERVAL_MS", "250")

        config = load_config(temp_dir)

        assert config.poll_interval == 0.25

    @pytest.mark.parametrize("raw", ["soon", "0", "-5"])
    def test_bad_values_fall_back(self, temp_dir, clean_env, raw):
        clean_env.setenv("CODE_AUTO_SUBTASK_WAIT_MS", raw)

        config = load_config(temp_dir)

        assert config.subtask_wait_timeout == DEFAULT_SUBTASK_WAIT_MS / 1000

    def test_project_dir_from_environment(self, temp_dir, clean_env):
        clean_env.setenv("CODE_AUTO_PROJECT_DIR", str(temp_dir))

        assert load_config().project_dir == temp_dir.resolve()
