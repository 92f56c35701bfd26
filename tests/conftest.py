"""
Shared test fixtures
====================

Temporary directories, an isolated git repository and engine factories
driven by the scripted mock adapter.
"""

import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

# Make apps/backend importable without an editable install
_BACKEND = Path(__file__).parent.parent / "apps" / "backend"
if str(_BACKEND) not in sys.path:
    sys.path.insert(0, str(_BACKEND))

from agents.adapters import MockAdapter, MockScript  # noqa: E402
from agents.adapters.mock import MOCK_PLAN, MOCK_SUBTASKS  # noqa: E402
from core.config import EngineConfig  # noqa: E402
from workflow.engine import TaskWorkflowEngine  # noqa: E402


def _git(args, cwd, env):
    subprocess.run(["git", *args], cwd=cwd, env=env, check=True, capture_output=True)


@pytest.fixture
def temp_dir():
    """A fresh temporary directory, removed afterwards."""
    path = Path(tempfile.mkdtemp(prefix="code-auto-test-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def temp_git_repo(temp_dir, monkeypatch):
    """An isolated git repository with one commit on ``main``.

    GIT_* variables inherited from the caller (hooks, CI) are cleared so
    commands cannot escape into an enclosing repository.
    """
    for key in list(os.environ):
        if key.startswith("GIT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(temp_dir.parent))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")

    repo = temp_dir / "repo"
    repo.mkdir()
    env = dict(os.environ)
    _git(["init", "-q"], repo, env)
    _git(["checkout", "-q", "-b", "main"], repo, env)
    (repo / "README.md").write_text("# Test project\n")
    _git(["add", "README.md"], repo, env)
    _git(["commit", "-q", "-m", "Initial commit"], repo, env)
    return repo


@pytest.fixture
def engine_config(temp_dir):
    """Config for a non-git project directory with short ceilings."""
    project = temp_dir / "project"
    project.mkdir()
    return EngineConfig(project_dir=project, subtask_wait_timeout=10.0, poll_interval=0.05)


@pytest_asyncio.fixture
async def make_engine():
    """Build engines whose agents are MockAdapters (or *adapter_cls*) driven by *script*.

    Every adapter created is appended to ``engine.adapters`` so tests can
    inspect the prompts that were run.
    """
    engines = []

    def factory(config, script=None, adapter_cls=MockAdapter):
        adapters = []

        def adapter_factory(provider):
            adapter = adapter_cls(script)
            adapters.append(adapter)
            return adapter

        engine = TaskWorkflowEngine(config, adapter_factory=adapter_factory)
        engine.adapters = adapters
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.shutdown()


def prompts_of(engine):
    """Every prompt the engine's adapters were run with, in start order."""
    return [p for adapter in engine.adapters for p in adapter.prompts]


def fixed_script(**kwargs):
    """A script returning the same MockScript for every prompt."""

    def script(prompt, config):
        return MockScript(**kwargs)

    return script


def workflow_script(fail_on=None, delay=0.01, plan=None, subtasks=None, hold=None):
    """Mock behaviour for whole-workflow tests.

    Planning and subtask-generation runs (recognised by the requested
    output schema) return *plan* / *subtasks*. Subtask runs succeed unless
    their prompt contains *fail_on*; a prompt containing *hold* runs for
    ten seconds so a test can act while it is in progress.
    """

    def script(prompt, config):
        properties = (config.get("outputSchema") or {}).get("properties", {})
        if "plan" in properties:
            return MockScript(structured={"plan": plan or MOCK_PLAN}, delay=delay)
        if "subtasks" in properties:
            return MockScript(
                structured={"subtasks": subtasks or [dict(s) for s in MOCK_SUBTASKS]},
                delay=delay,
            )
        if fail_on and fail_on in prompt:
            return MockScript(fail=True, error=f"failed: {fail_on}", delay=delay)
        if hold and hold in prompt:
            return MockScript(delay=1.0, steps=10)
        return MockScript(delay=delay)

    return script
