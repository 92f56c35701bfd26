"""
Capability Adapter Interface
============================

The boundary between the engine and a concrete coding agent. The engine
only needs "start something in a working directory that emits log events
and eventually succeeds or fails"; everything else about the agent stays
behind this interface.

An adapter run ends with exactly one ``result`` or ``error`` message. A
``result`` message carries ``{"output": str, "structured": dict | None}``,
where ``structured`` is the adapter's schema-conforming final payload.
"""

from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from tasks.models import now_ms


class MessageType(StrEnum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    TOOL = "tool"
    RESULT = "result"
    ERROR = "error"


@dataclass
class StreamMessage:
    """One event emitted by an adapter while a thread runs."""

    type: MessageType
    data: dict[str, Any]
    thread_id: str
    timestamp: int = field(default_factory=now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.type in (MessageType.RESULT, MessageType.ERROR)

    @property
    def content(self) -> str:
        """Human-readable text for the session log."""
        for key in ("content", "text", "error", "output"):
            value = self.data.get(key)
            if isinstance(value, str) and value:
                return value
        return json.dumps(self.data, default=str)


@dataclass
class AdapterCapabilities:
    supports_threads: bool = True
    supports_structured_output: bool = False
    supports_stop: bool = True
    tools: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConfigField:
    """One entry of an adapter's configuration schema."""

    name: str
    type: str
    description: str
    default: Any = None
    required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AgentAdapter(ABC):
    """A coding-agent capability.

    Lifecycle: ``initialize(config)`` once, ``create_thread(working_dir)``
    per run, then iterate ``execute(prompt, thread_id)`` to completion.
    ``stop_thread`` may be called at any time from another coroutine.
    """

    name: str = ""
    display_name: str = ""

    def __init__(self) -> None:
        self.config: dict[str, Any] = {}
        self._working_dirs: dict[str, str] = {}

    async def initialize(self, config: dict[str, Any]) -> None:
        self.config = dict(config)

    async def create_thread(self, working_dir: str) -> str:
        """Allocate a thread bound to *working_dir* and return its id."""
        thread_id = f"thread-{uuid.uuid4().hex[:12]}"
        self._working_dirs[thread_id] = working_dir
        return thread_id

    def working_dir(self, thread_id: str) -> str:
        return self._working_dirs[thread_id]

    @abstractmethod
    def execute(self, prompt: str, thread_id: str) -> AsyncIterator[StreamMessage]:
        """Run *prompt* in the thread, yielding events as they happen."""

    async def stop_thread(self, thread_id: str) -> None:
        """Terminate whatever is running for *thread_id*. Default: nothing to do."""

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities()

    def get_config_schema(self) -> list[ConfigField]:
        return []
