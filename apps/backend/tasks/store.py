"""
Task Store
==========

Persistence contract for task records plus the file-backed implementation
the engine ships with: one JSON file per task under ``.code-auto/tasks/``.

Concurrent writers (API handlers, sequencer flows, completion callbacks) are
kept from losing each other's updates in two ways:

- ``update_task`` serializes read-modify-write per task, in-process with an
  asyncio lock and across processes with a file lock.
- Every record carries a ``version``. A save based on an outdated version
  raises StaleWriteError instead of overwriting newer data.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import ValidationError as PydanticValidationError

from agents.events import TaskEventBus
from core.errors import NotFoundError, StaleWriteError, ValidationError
from core.file_lock import FileLock, read_json, write_json_atomic

from .models import Task, now_ms

logger = logging.getLogger(__name__)

R = TypeVar("R")


class TaskStore(Protocol):
    """Load/save/list/delete of task records keyed by id."""

    async def load_task(self, task_id: str) -> Task | None: ...

    async def save_task(self, task: Task) -> Task: ...

    async def list_tasks(self) -> list[Task]: ...

    async def delete_task(self, task_id: str) -> bool: ...

    async def update_task(
        self, task_id: str, mutate: Callable[[Task], R]
    ) -> tuple[Task, R]: ...


class JsonTaskStore:
    """Task store backed by ``<tasks_dir>/<task-id>.json`` files.

    Args:
        tasks_dir: Directory holding the task records
        events: Bus notified after every save and delete
        lock_timeout: Seconds to wait for the cross-process file lock
    """

    def __init__(
        self,
        tasks_dir: str | Path,
        events: TaskEventBus | None = None,
        lock_timeout: float = 5.0,
    ) -> None:
        self.tasks_dir = Path(tasks_dir)
        self.events = events
        self.lock_timeout = lock_timeout
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load_task(self, task_id: str) -> Task | None:
        """Return the task, or None when no record exists."""
        data = await asyncio.to_thread(read_json, self._path(task_id))
        if data is None:
            return None
        return Task.from_dict(data)

    async def get_task(self, task_id: str) -> Task:
        """Like load_task, but a missing record raises NotFoundError."""
        task = await self.load_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def save_task(self, task: Task) -> Task:
        """Persist *task* if its version matches the stored record.

        A new record (nothing stored yet) must have version 0. On success the
        version is incremented and ``updated_at`` refreshed on *task*.

        Raises:
            StaleWriteError: The stored record changed since *task* was loaded
            NotFoundError: The record was deleted since *task* was loaded
        """
        async with self._lock_for(task.id):
            await self._write(task)
        self._publish(task.id)
        return task

    async def update_task(
        self, task_id: str, mutate: Callable[[Task], R]
    ) -> tuple[Task, R]:
        """Load, mutate and save one task while holding its lock.

        *mutate* runs synchronously against the freshly loaded record. If it
        raises, nothing is saved.

        Returns:
            The saved task and whatever *mutate* returned
        """
        async with self._lock_for(task_id):
            task = await self.get_task(task_id)
            result = mutate(task)
            await self._write(task)
        self._publish(task_id)
        return task, result

    async def list_tasks(self) -> list[Task]:
        """All tasks, newest first. Unreadable records are skipped."""
        tasks = await asyncio.to_thread(self._read_all)
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    async def delete_task(self, task_id: str) -> bool:
        """Remove the record and its log directory.

        Returns:
            True if a record existed
        """
        path = self._path(task_id)
        async with self._lock_for(task_id):
            async with FileLock(path, timeout=self.lock_timeout):
                existed = path.exists()
                path.unlink(missing_ok=True)
                task_dir = self.tasks_dir / task_id
                if task_dir.is_dir():
                    await asyncio.to_thread(shutil.rmtree, task_dir, True)
        self._locks.pop(task_id, None)
        if existed:
            logger.info("[TaskStore] Deleted task %s", task_id)
        self._publish(task_id)
        return existed

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _path(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or "\\" in task_id or task_id.startswith("."):
            raise ValidationError(f"Invalid task id: {task_id!r}")
        return self.tasks_dir / f"{task_id}.json"

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    async def _write(self, task: Task) -> None:
        path = self._path(task.id)
        async with FileLock(path, timeout=self.lock_timeout):
            stored = await asyncio.to_thread(read_json, path)
            if stored is None:
                if task.version != 0:
                    raise NotFoundError(f"Task {task.id} was deleted")
            else:
                stored_version = int(stored.get("version", 0))
                if stored_version != task.version:
                    raise StaleWriteError(task.id, task.version, stored_version)

            data = task.to_dict()
            data["version"] = task.version + 1
            data["updatedAt"] = now_ms()
            await asyncio.to_thread(write_json_atomic, path, data)

        task.version = data["version"]
        task.updated_at = data["updatedAt"]
        logger.debug("[TaskStore] Saved task %s (version %d)", task.id, task.version)

    def _read_all(self) -> list[Task]:
        if not self.tasks_dir.exists():
            return []
        tasks = []
        for path in self.tasks_dir.glob("*.json"):
            try:
                tasks.append(Task.from_dict(read_json(path) or {}))
            except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
                logger.warning("[TaskStore] Skipping unreadable task file %s: %s", path, e)
        return tasks

    def _publish(self, task_id: str) -> None:
        if self.events is not None:
            self.events.publish(task_id)
