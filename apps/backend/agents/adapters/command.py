"""
Command-Line Adapters
=====================

Run an external agent CLI as a subprocess in the task's worktree and turn
its stdout into stream messages.

- Each stdout line that is a JSON object becomes one message; any other
  line becomes an ``assistant`` message with the raw text.
- Exit code 0 ends the run with a ``result``; anything else with an
  ``error`` carrying stderr.
- ``stop_thread`` terminates the process (then kills it after a grace
  period).

``ClaudeCodeAdapter`` is the preset for the ``claude`` CLI in
``--output-format stream-json`` mode.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shlex
from collections.abc import AsyncIterator
from typing import Any

from core.errors import ValidationError

from .base import (
    AdapterCapabilities,
    AgentAdapter,
    ConfigField,
    MessageType,
    StreamMessage,
)

logger = logging.getLogger(__name__)

_STOP_GRACE_SECONDS = 5.0

# stream-json lines carry whole tool results (file contents)
STREAM_LINE_LIMIT = 16 * 1024 * 1024


class CommandAdapter(AgentAdapter):
    """Generic subprocess adapter.

    The command comes from the constructor or from ``config["command"]``
    (list or shell-style string). A ``{prompt}`` placeholder in any argument
    is replaced with the prompt; without one the prompt is appended.
    """

    name = "command"
    display_name = "Command"

    def __init__(self, command: list[str] | None = None) -> None:
        super().__init__()
        self.command = list(command) if command else []
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        configured = config.get("command")
        if isinstance(configured, str):
            self.command = shlex.split(configured)
        elif configured:
            self.command = [str(arg) for arg in configured]
        if not self.command:
            raise ValidationError(f"{self.name} adapter requires a command")

    def build_args(self, prompt: str) -> list[str]:
        if any("{prompt}" in arg for arg in self.command):
            return [arg.replace("{prompt}", prompt) for arg in self.command]
        return [*self.command, prompt]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in (self.config.get("env") or {}).items()})
        return env

    async def execute(self, prompt: str, thread_id: str) -> AsyncIterator[StreamMessage]:
        args = self.build_args(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=self.working_dir(thread_id),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                limit=STREAM_LINE_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as e:
            yield StreamMessage(
                MessageType.ERROR, {"error": f"Cannot run {args[0]}: {e}"}, thread_id
            )
            return

        self._processes[thread_id] = process
        stderr_reader = asyncio.create_task(process.stderr.read(), name=f"stderr-{thread_id}")
        final: StreamMessage | None = None
        text_lines: list[str] = []
        try:
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                message = self.parse_line(line, thread_id)
                if message is None:
                    continue
                if message.is_terminal:
                    # Emitted after the exit code is known
                    final = message
                    continue
                if message.type == MessageType.ASSISTANT:
                    text_lines.append(message.content)
                yield message
            returncode = await process.wait()
            stderr = (await stderr_reader).decode("utf-8", errors="replace").strip()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_reader.done():
                stderr_reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stderr_reader
            self._processes.pop(thread_id, None)

        if returncode == 0 and (final is None or final.type == MessageType.RESULT):
            yield final or StreamMessage(
                MessageType.RESULT,
                {"output": "\n".join(text_lines), "structured": None},
                thread_id,
            )
            return

        error = (
            stderr
            or (final.content if final else "")
            or f"{args[0]} exited with code {returncode}"
        )
        yield StreamMessage(
            MessageType.ERROR, {"error": error, "exitCode": returncode}, thread_id
        )

    def parse_line(self, line: str, thread_id: str) -> StreamMessage | None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return StreamMessage(MessageType.ASSISTANT, {"content": line}, thread_id)
        if not isinstance(data, dict):
            return StreamMessage(MessageType.ASSISTANT, {"content": line}, thread_id)
        try:
            message_type = MessageType(data.get("type", "assistant"))
        except ValueError:
            message_type = MessageType.SYSTEM
        return StreamMessage(message_type, data, thread_id)

    async def stop_thread(self, thread_id: str) -> None:
        process = self._processes.get(thread_id)
        if process is None or process.returncode is not None:
            return
        logger.info("[CommandAdapter] Terminating process for %s", thread_id)
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_STOP_GRACE_SECONDS)
        except TimeoutError:
            process.kill()

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(tools=[self.command[0]] if self.command else [])

    def get_config_schema(self) -> list[ConfigField]:
        return [
            ConfigField("command", "array", "Executable and arguments", required=True),
            ConfigField("env", "object", "Extra environment variables"),
        ]


class ClaudeCodeAdapter(CommandAdapter):
    """Runs ``claude -p`` with stream-json output."""

    name = "claude-code"
    display_name = "Claude Code"

    def __init__(self) -> None:
        super().__init__(
            [
                "claude",
                "--dangerously-skip-permissions",
                "--output-format",
                "stream-json",
                "--verbose",
            ]
        )

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        if config.get("model"):
            self.command += ["--model", str(config["model"])]

    def build_args(self, prompt: str) -> list[str]:
        return [*self.command, "-p", prompt]

    def parse_line(self, line: str, thread_id: str) -> StreamMessage | None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return StreamMessage(MessageType.ASSISTANT, {"content": line}, thread_id)
        if not isinstance(data, dict):
            return None

        kind = data.get("type")
        if kind == "assistant":
            blocks = (data.get("message") or {}).get("content") or []
            texts = [b.get("text", "") for b in blocks if b.get("type") == "text"]
            tools = [b.get("name", "") for b in blocks if b.get("type") == "tool_use"]
            if tools and not any(texts):
                return StreamMessage(
                    MessageType.TOOL, {"content": f"Using tool: {', '.join(tools)}"}, thread_id
                )
            return StreamMessage(MessageType.ASSISTANT, {"content": "\n".join(texts)}, thread_id)
        if kind == "user":
            return StreamMessage(MessageType.TOOL, {"content": "Tool result received"}, thread_id)
        if kind == "result":
            if data.get("is_error"):
                return StreamMessage(
                    MessageType.ERROR,
                    {"error": str(data.get("result") or data.get("subtype") or "error")},
                    thread_id,
                )
            return StreamMessage(
                MessageType.RESULT,
                {
                    "output": data.get("result") or "",
                    "structured": data.get("structured_output"),
                },
                thread_id,
            )
        return StreamMessage(MessageType.SYSTEM, data, thread_id)

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            supports_structured_output=True,
            tools=["Read", "Write", "Edit", "Bash", "Glob", "Grep"],
        )

    def get_config_schema(self) -> list[ConfigField]:
        return [
            ConfigField("model", "string", "Model passed to --model"),
            ConfigField("env", "object", "Extra environment variables"),
        ]
