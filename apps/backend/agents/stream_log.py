"""
Agent Run Logs
==============

Durable record of every agent run, consumed by the live log relay.

- ``tasks/<task-id>/agent-stream-<thread-id>.ndjson``: one JSON object per
  line, either a log event ``{timestamp, type, content}`` or a terminal
  ``{type: "status", status, error?}`` line.
- ``thread-index.json``: thread id -> task id, so a relay that only knows a
  thread id can find its log file.
- ``tasks/<task-id>/<phase>-logs.txt``: human-readable per-phase history.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from core.file_lock import FileLock, read_json, write_json_atomic

logger = logging.getLogger(__name__)

PHASE_LOG_FILES = {
    "planning": "planning-logs.txt",
    "development": "development-logs.txt",
    "review": "review-logs.txt",
}


@dataclass
class StreamChunk:
    """Lines read from a run log plus the offset to resume from."""

    records: list[dict[str, Any]]
    offset: int


class StreamLog:
    """Reads and writes run logs under ``tasks_dir``.

    Writes are synchronous; the supervisor calls them from a background
    writer so producers never wait on disk.
    """

    def __init__(self, tasks_dir: str | Path, index_path: str | Path) -> None:
        self.tasks_dir = Path(tasks_dir)
        self.index_path = Path(index_path)

    def stream_path(self, task_id: str, thread_id: str) -> Path:
        return self.tasks_dir / task_id / f"agent-stream-{thread_id}.ndjson"

    # ------------------------------------------------------------------
    # NDJSON run streams
    # ------------------------------------------------------------------

    def append(self, task_id: str, thread_id: str, record: dict[str, Any]) -> None:
        path = self.stream_path(task_id, thread_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    def read(self, task_id: str, thread_id: str, offset: int = 0) -> StreamChunk:
        """Complete lines written after byte *offset*.

        A trailing partial line is left for the next call.
        """
        path = self.stream_path(task_id, thread_id)
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                data = f.read()
        except FileNotFoundError:
            return StreamChunk([], offset)

        end = data.rfind(b"\n")
        if end < 0:
            return StreamChunk([], offset)

        records = []
        for line in data[: end + 1].splitlines():
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("[StreamLog] Skipping corrupt line in %s", path)
        return StreamChunk(records, offset + end + 1)

    # ------------------------------------------------------------------
    # Thread index
    # ------------------------------------------------------------------

    def register_thread(self, thread_id: str, task_id: str) -> None:
        with FileLock(self.index_path):
            index = read_json(self.index_path) or {}
            index[thread_id] = task_id
            write_json_atomic(self.index_path, index)

    def task_for_thread(self, thread_id: str) -> str | None:
        index = read_json(self.index_path) or {}
        return index.get(thread_id)

    def forget_task(self, task_id: str) -> None:
        """Drop every thread of *task_id* from the index."""
        with FileLock(self.index_path):
            index = read_json(self.index_path) or {}
            remaining = {t: owner for t, owner in index.items() if owner != task_id}
            if len(remaining) != len(index):
                write_json_atomic(self.index_path, remaining)

    # ------------------------------------------------------------------
    # Phase logs
    # ------------------------------------------------------------------

    def append_phase_log(self, task_id: str, phase: str, message: str) -> None:
        filename = PHASE_LOG_FILES.get(phase, f"{phase}-logs.txt")
        path = self.tasks_dir / task_id / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().isoformat(timespec="seconds")
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"[{stamp}] {message}\n")

    def read_phase_log(self, task_id: str, phase: str) -> str:
        path = self.tasks_dir / task_id / PHASE_LOG_FILES.get(phase, f"{phase}-logs.txt")
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
