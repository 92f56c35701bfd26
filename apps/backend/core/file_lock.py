"""
File Locking for Task Records
=============================

Process-safe locking and atomic JSON writes for the files the engine shares
between the API process, the sequencer and external tools (task records,
the thread index). Uses fcntl.flock() on a sidecar ``.lock`` file.

Example Usage:
    # Serialize a read-modify-write across processes
    async with FileLock(task_file, timeout=5.0):
        data = read_json(task_file)
        data["status"] = "blocked"
        write_json_atomic(task_file, data)
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class FileLockError(Exception):
    """Raised when file locking operations fail."""

    pass


class FileLockTimeout(FileLockError):
    """Raised when lock acquisition times out."""

    pass


class FileLock:
    """
    Cross-process file lock using fcntl.flock().

    Supports both sync and async context managers. The lock file is kept
    after release; deleting it would let a second process lock a fresh
    inode while a third still holds the old one.

    Args:
        filepath: Path of the file being protected
        timeout: Maximum seconds to wait for lock (default: 5.0)
        exclusive: Whether to use exclusive lock (default: True)
    """

    def __init__(
        self,
        filepath: str | Path,
        timeout: float = 5.0,
        exclusive: bool = True,
    ):
        self.filepath = Path(filepath)
        self.timeout = timeout
        self.exclusive = exclusive
        self._fd: int | None = None

    @property
    def lock_file(self) -> Path:
        return self.filepath.parent / f"{self.filepath.name}.lock"

    def _acquire_lock(self) -> None:
        """Acquire the file lock (blocking with timeout)."""
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self._fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR)

        lock_mode = fcntl.LOCK_EX if self.exclusive else fcntl.LOCK_SH
        start_time = time.monotonic()

        while True:
            try:
                fcntl.flock(self._fd, lock_mode | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() - start_time >= self.timeout:
                    os.close(self._fd)
                    self._fd = None
                    raise FileLockTimeout(
                        f"Failed to acquire lock on {self.filepath} within {self.timeout}s"
                    )
                time.sleep(0.01)

    def _release_lock(self) -> None:
        """Release the file lock."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> FileLock:
        self._acquire_lock()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self._release_lock()
        return False

    async def __aenter__(self) -> FileLock:
        # Blocking acquisition runs in the default executor
        await asyncio.to_thread(self._acquire_lock)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self._release_lock()
        return False


@contextmanager
def atomic_write(filepath: str | Path, mode: str = "w"):
    """
    Atomic file write using temp file and rename.

    Writes to a temp file in the same directory, then replaces the target
    with os.replace(), which is atomic on POSIX systems.

    Example:
        with atomic_write("/path/to/file.json") as f:
            json.dump(data, f)
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=filepath.parent, prefix=f".{filepath.name}.tmp.", suffix=""
    )

    try:
        with os.fdopen(fd, mode, encoding="utf-8") as f:
            yield f
        os.replace(tmp_path, filepath)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def write_json_atomic(filepath: str | Path, data: Any, indent: int = 2) -> None:
    """Serialize *data* to *filepath* atomically."""
    with atomic_write(filepath) as f:
        json.dump(data, f, indent=indent)
        f.write("\n")


def read_json(filepath: str | Path) -> Any | None:
    """Read a JSON file, returning None when it does not exist.

    Raises:
        json.JSONDecodeError: If the file exists but is not valid JSON
    """
    try:
        with open(filepath, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
