"""
Mock Adapter
============

Deterministic stand-in for a coding agent. Emits a short scripted stream,
then a result or an error. Used for local development and by the test
suite to drive whole workflows without a real agent.

Behaviour is taken from the adapter config (``delay``, ``steps``, ``fail``,
``error``, ``output``, ``structured``) or, per prompt, from an optional
``script`` callable. When the engine requests structured output via
``outputSchema``, a canned plan or subtask list matching the schema is
returned.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from .base import (
    AdapterCapabilities,
    AgentAdapter,
    ConfigField,
    MessageType,
    StreamMessage,
)

MOCK_PLAN = """# Implementation Plan

## Overview
Implement the requested change in small, verifiable steps.

## Technical Approach
Extend the existing modules rather than introducing new layers.

## Implementation Steps
1. Add the data model changes.
2. Implement the behaviour behind the new model.
3. Wire the behaviour into the existing entry points.

## Files to Modify
- The modules touched by the change.

## Testing Strategy
Unit tests for the new behaviour plus one end-to-end check.

## Potential Issues
Existing callers may rely on the old behaviour.

## Success Criteria
All tests pass and the feature works end to end.
"""

MOCK_SUBTASKS = [
    {"id": "subtask-1", "content": "Add the data model changes", "label": "Model", "type": "dev"},
    {"id": "subtask-2", "content": "Implement the behaviour", "label": "Implement", "type": "dev"},
    {"id": "subtask-3", "content": "Verify the change with tests", "label": "Verify", "type": "qa"},
]


@dataclass
class MockScript:
    """What one mock run emits."""

    output: str = "Mock agent finished."
    structured: dict[str, Any] | None = None
    fail: bool = False
    error: str = "Mock agent failure"
    delay: float = 0.01
    steps: int = 2


class MockAdapter(AgentAdapter):
    """Scripted agent adapter.

    Args:
        script: Optional ``(prompt, config) -> MockScript`` hook deciding the
            outcome of each run
    """

    name = "mock"
    display_name = "Mock CLI"

    def __init__(
        self, script: Callable[[str, dict[str, Any]], MockScript] | None = None
    ) -> None:
        super().__init__()
        self._script = script
        self._stopped: set[str] = set()
        self.prompts: list[str] = []

    def script_for(self, prompt: str) -> MockScript:
        if self._script is not None:
            return self._script(prompt, self.config)
        return MockScript(
            output=self.config.get("output", MockScript.output),
            structured=self.config.get("structured") or _canned_output(self.config),
            fail=bool(self.config.get("fail", False)),
            error=self.config.get("error", MockScript.error),
            delay=float(self.config.get("delay", MockScript.delay)),
            steps=int(self.config.get("steps", MockScript.steps)),
        )

    async def execute(self, prompt: str, thread_id: str) -> AsyncIterator[StreamMessage]:
        self.prompts.append(prompt)
        script = self.script_for(prompt)
        yield StreamMessage(
            MessageType.SYSTEM,
            {"content": f"Mock agent started in {self.working_dir(thread_id)}"},
            thread_id,
        )
        for step in range(1, script.steps + 1):
            await asyncio.sleep(script.delay)
            if thread_id in self._stopped:
                return
            yield StreamMessage(
                MessageType.ASSISTANT,
                {"content": f"Working ({step}/{script.steps})"},
                thread_id,
            )

        if script.fail:
            yield StreamMessage(MessageType.ERROR, {"error": script.error}, thread_id)
            return
        yield StreamMessage(
            MessageType.RESULT,
            {"output": script.output, "structured": script.structured},
            thread_id,
        )

    async def stop_thread(self, thread_id: str) -> None:
        self._stopped.add(thread_id)

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(supports_structured_output=True, tools=["mock"])

    def get_config_schema(self) -> list[ConfigField]:
        return [
            ConfigField("delay", "number", "Seconds between emitted steps", 0.01),
            ConfigField("steps", "integer", "Number of progress messages", 2),
            ConfigField("fail", "boolean", "End with an error instead of a result", False),
            ConfigField("error", "string", "Error message when failing"),
            ConfigField("output", "string", "Final output text"),
        ]


def _canned_output(config: dict[str, Any]) -> dict[str, Any] | None:
    properties = (config.get("outputSchema") or {}).get("properties", {})
    if "plan" in properties:
        return {"plan": MOCK_PLAN}
    if "subtasks" in properties:
        return {"subtasks": [dict(s) for s in MOCK_SUBTASKS]}
    return None
