"""
Git Worktree Manager
====================

Creates, deletes and inspects the isolated git worktrees tasks execute in.

Layout:
- One worktree per task at ``.code-auto/worktrees/{task-id}/``
- One branch per task: ``code-auto/{task-id}``
- All subtasks of a task work in the same worktree
- Worktrees of different tasks can be created and removed concurrently;
  the repository's own locking protects the shared ref namespace

Every operation is synchronous (subprocess based). Async callers wrap them
with ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .config import BRANCH_PREFIX, STATE_DIR_NAME
from .errors import ConflictError, ExternalToolError, ValidationError

logger = logging.getLogger(__name__)

_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# Files agents sometimes drop in the worktree while planning. They must not
# survive into the reviewed output.
PLANNING_ARTIFACTS = [
    "implementation-plan.json",
    "implementation_plan.json",
    "planning-questions.json",
    "planning_questions.json",
]


@dataclass
class WorktreeInfo:
    """A managed worktree and the branch checked out in it."""

    task_id: str
    path: str
    branch_name: str
    main_repo: str
    main_branch: str

    def to_dict(self) -> dict:
        return {
            "taskId": self.task_id,
            "path": self.path,
            "branchName": self.branch_name,
            "mainRepo": self.main_repo,
            "mainBranch": self.main_branch,
        }


@dataclass
class EnrichedWorktree(WorktreeInfo):
    """WorktreeInfo plus the details needed to spot orphans and disk hogs."""

    is_dirty: bool = False
    disk_usage_bytes: int = 0
    is_orphan: bool = False

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            {
                "isDirty": self.is_dirty,
                "diskUsageBytes": self.disk_usage_bytes,
                "isOrphan": self.is_orphan,
            }
        )
        return data


@dataclass
class WorktreeStatus:
    exists: bool
    path: str | None = None
    branch_name: str | None = None
    has_changes: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "exists": self.exists,
            "path": self.path,
            "branchName": self.branch_name,
            "hasChanges": self.has_changes,
            "isDirty": self.has_changes,
            "error": self.error,
        }


@dataclass
class _WorktreeEntry:
    """One record from ``git worktree list --porcelain``."""

    path: Path
    branch: str | None = None
    prunable: bool = False


def disk_usage(path: str | Path) -> int:
    """Best-effort recursive size of *path* in bytes.

    Files that vanish or become unreadable during the walk are skipped, so
    the result is not an atomic snapshot.
    """
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path, onerror=lambda _err: None):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total


def clean_planning_artifacts(worktree_path: str | Path | None) -> list[str]:
    """Remove planning artifact files from a worktree.

    Safe to call repeatedly; missing files are ignored.

    Returns:
        Names of the files that were removed
    """
    if not worktree_path:
        return []
    root = Path(worktree_path)
    removed = []
    for basename in PLANNING_ARTIFACTS:
        try:
            (root / basename).unlink()
            removed.append(basename)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("[Worktree] Failed to remove %s: %s", basename, e)
    return removed


class WorktreeManager:
    """Manages one git worktree and branch per task.

    Usage::

        manager = WorktreeManager(project_dir)
        info = manager.create_worktree("task-123")
        manager.get_worktree_status("task-123")
        manager.delete_worktree("task-123", force=True)
    """

    def __init__(
        self,
        project_dir: str | Path,
        worktrees_dir: str | Path | None = None,
        branch_prefix: str = BRANCH_PREFIX,
        timeout: int = 120,
    ) -> None:
        self.project_dir = Path(project_dir)
        self._worktrees_dir = Path(worktrees_dir) if worktrees_dir else None
        self.branch_prefix = branch_prefix
        self.timeout = timeout
        self._main_repo: Path | None = None
        self._main_branch: str | None = None
        # Serializes mutating git calls issued from this process
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Git plumbing
    # ------------------------------------------------------------------

    def _run(
        self,
        args: list[str],
        cwd: str | Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        cwd = cwd or self.get_main_repo_path()
        logger.debug("[Worktree] %s (cwd=%s)", " ".join(args), cwd)
        try:
            result = subprocess.run(
                args,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(f"git is not available: {e}", command=args) from e
        except subprocess.TimeoutExpired as e:
            raise ExternalToolError(
                f"git command timed out after {self.timeout}s: {' '.join(args)}",
                command=args,
            ) from e
        if check and result.returncode != 0:
            raise ExternalToolError(
                f"git command failed: {' '.join(args)}: {result.stderr.strip()}",
                command=args,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def get_main_repo_path(self) -> Path:
        """Root directory of the main repository (cached)."""
        if self._main_repo is None:
            result = self._run(
                ["git", "rev-parse", "--show-toplevel"], cwd=self.project_dir
            )
            self._main_repo = Path(result.stdout.strip()).resolve()
        return self._main_repo

    def get_main_branch(self) -> str:
        """Detect the default branch: origin/HEAD, then main/master, then HEAD."""
        if self._main_branch:
            return self._main_branch

        result = self._run(
            ["git", "symbolic-ref", "--quiet", "refs/remotes/origin/HEAD"], check=False
        )
        if result.returncode == 0 and result.stdout.strip():
            self._main_branch = result.stdout.strip().split("/")[-1]
            return self._main_branch

        for candidate in ("main", "master"):
            if self._branch_exists(candidate):
                self._main_branch = candidate
                return candidate

        result = self._run(["git", "branch", "--show-current"], check=False)
        self._main_branch = result.stdout.strip() or "main"
        return self._main_branch

    def verify_git_available(self) -> bool:
        """Check that git is installed and the project is inside a repository."""
        try:
            self._run(["git", "--version"], cwd=self.project_dir)
            self.get_main_repo_path()
            return True
        except ExternalToolError as e:
            logger.warning("[Worktree] git unavailable: %s", e)
            return False

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    @property
    def worktrees_dir(self) -> Path:
        if self._worktrees_dir is None:
            self._worktrees_dir = self.get_main_repo_path() / STATE_DIR_NAME / "worktrees"
        return self._worktrees_dir

    def get_worktree_path(self, task_id: str) -> Path:
        return self.worktrees_dir / task_id

    def get_branch_name(self, task_id: str) -> str:
        return f"{self.branch_prefix}{task_id}"

    @staticmethod
    def _validate_task_id(task_id: str) -> None:
        if (
            not task_id
            or not _TASK_ID_PATTERN.match(task_id)
            or ".." in task_id
            or task_id.endswith(".lock")
        ):
            raise ValidationError(f"Task id {task_id!r} cannot be used as a worktree name")

    # ------------------------------------------------------------------
    # Registration helpers
    # ------------------------------------------------------------------

    def _list_entries(self) -> list[_WorktreeEntry]:
        output = self._run(["git", "worktree", "list", "--porcelain"]).stdout
        entries: list[_WorktreeEntry] = []
        current: _WorktreeEntry | None = None
        for line in output.splitlines():
            if line.startswith("worktree "):
                current = _WorktreeEntry(path=Path(line[len("worktree ") :]))
                entries.append(current)
            elif current is None:
                continue
            elif line.startswith("branch "):
                current.branch = line[len("branch ") :].removeprefix("refs/heads/")
            elif line.startswith("prunable"):
                current.prunable = True
        return entries

    def _find_entry(self, path: Path) -> _WorktreeEntry | None:
        target = path.resolve()
        for entry in self._list_entries():
            if entry.path.resolve() == target:
                return entry
        return None

    def _branch_exists(self, branch: str) -> bool:
        result = self._run(
            ["git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return result.returncode == 0

    def _is_dirty(self, path: Path) -> bool:
        try:
            result = self._run(["git", "status", "--porcelain"], cwd=path)
        except ExternalToolError:
            return False
        return bool(result.stdout.strip())

    def _is_managed(self, path: Path) -> bool:
        return path.resolve().parent == self.worktrees_dir.resolve()

    def _info(self, task_id: str, path: Path, branch: str) -> WorktreeInfo:
        return WorktreeInfo(
            task_id=task_id,
            path=str(path),
            branch_name=branch,
            main_repo=str(self.get_main_repo_path()),
            main_branch=self.get_main_branch(),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_worktree(self, task_id: str) -> WorktreeInfo:
        """Create the worktree for *task_id*, or return the existing one.

        Re-invocation after a partial failure is safe: a registered worktree
        is returned unchanged, a registration whose directory vanished is
        pruned, and a branch left behind by an earlier delete is reused.

        Raises:
            ValidationError: Task id cannot form a branch/path name
            ConflictError: Branch is checked out elsewhere, or an unrelated
                directory occupies the worktree path
            ExternalToolError: git failed
        """
        self._validate_task_id(task_id)
        path = self.get_worktree_path(task_id)
        branch = self.get_branch_name(task_id)

        with self._lock:
            self.worktrees_dir.mkdir(parents=True, exist_ok=True)

            entry = self._find_entry(path)
            if entry is not None and path.exists() and not entry.prunable:
                logger.info("[Worktree] Reusing existing worktree %s", path)
                return self._info(task_id, path, entry.branch or branch)

            if entry is not None:
                logger.info("[Worktree] Pruning stale registration for %s", path)
                self._run(["git", "worktree", "prune"])

            if path.exists():
                if any(path.iterdir()):
                    raise ConflictError(
                        f"{path} exists but is not a registered worktree; remove it first"
                    )
                path.rmdir()

            if self._branch_exists(branch):
                for other in self._list_entries():
                    if other.branch == branch:
                        raise ConflictError(
                            f"Branch {branch} is already checked out at {other.path}"
                        )
                self._run(["git", "worktree", "add", str(path), branch])
            else:
                self._run(["git", "worktree", "add", "-b", branch, str(path)])

        if not path.exists():
            raise ExternalToolError(f"Failed to create worktree at {path}")

        logger.info("[Worktree] Created %s on branch %s", path, branch)
        return self._info(task_id, path, branch)

    def delete_worktree(
        self, task_id: str, force: bool = False, delete_branch: bool = False
    ) -> None:
        """Remove the worktree for *task_id*.

        The registration is removed even when the directory was deleted
        behind git's back. Nothing registered is a no-op. The branch is kept
        unless *delete_branch* is set.

        Args:
            task_id: Task whose worktree to delete
            force: Discard uncommitted changes (and remove unregistered leftovers)
            delete_branch: Also delete ``code-auto/{task_id}``

        Raises:
            ConflictError: Worktree has uncommitted changes and force is False
            ExternalToolError: git failed
        """
        self._validate_task_id(task_id)
        path = self.get_worktree_path(task_id)
        branch = self.get_branch_name(task_id)

        with self._lock:
            entry = self._find_entry(path)
            if entry is None:
                if path.exists() and force:
                    logger.warning("[Worktree] Removing unregistered directory %s", path)
                    shutil.rmtree(path, ignore_errors=True)
                else:
                    logger.info("[Worktree] No worktree registered for %s", task_id)
            elif not path.exists():
                logger.info("[Worktree] %s was removed externally, pruning", path)
                self._run(["git", "worktree", "prune"])
            else:
                if not force and self._is_dirty(path):
                    raise ConflictError(
                        "Worktree has uncommitted changes. Use force=True to delete "
                        "anyway, or commit changes first."
                    )
                args = ["git", "worktree", "remove"]
                if force:
                    args.append("--force")
                args.append(str(path))
                self._run(args)
                if path.exists():
                    shutil.rmtree(path, ignore_errors=True)
                logger.info("[Worktree] Deleted %s", path)

            if delete_branch and self._branch_exists(branch):
                self._run(["git", "branch", "-D" if force else "-d", branch])
                logger.info("[Worktree] Deleted branch %s", branch)

    def list_worktrees(self) -> list[WorktreeInfo]:
        """Worktrees registered under the managed root."""
        worktrees = []
        for entry in self._list_entries():
            if not self._is_managed(entry.path):
                continue
            task_id = entry.path.name
            worktrees.append(
                self._info(task_id, entry.path, entry.branch or self.get_branch_name(task_id))
            )
        return worktrees

    def list_worktrees_enriched(
        self, known_task_ids: Iterable[str] | None = None
    ) -> list[EnrichedWorktree]:
        """Worktrees with dirty flag, disk usage and orphan flag.

        Args:
            known_task_ids: Ids of tasks that still exist. When given, any
                worktree whose task is missing is flagged as an orphan.
        """
        known = set(known_task_ids) if known_task_ids is not None else None
        enriched = []
        for info in self.list_worktrees():
            path = Path(info.path)
            enriched.append(
                EnrichedWorktree(
                    task_id=info.task_id,
                    path=info.path,
                    branch_name=info.branch_name,
                    main_repo=info.main_repo,
                    main_branch=info.main_branch,
                    is_dirty=path.exists() and self._is_dirty(path),
                    disk_usage_bytes=disk_usage(path) if path.exists() else 0,
                    is_orphan=known is not None and info.task_id not in known,
                )
            )
        return enriched

    def get_worktree_status(self, task_id: str) -> WorktreeStatus:
        self._validate_task_id(task_id)
        path = self.get_worktree_path(task_id)
        if not path.exists():
            return WorktreeStatus(exists=False)

        try:
            status = self._run(["git", "status", "--porcelain"], cwd=path)
            head = self._run(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=path)
        except ExternalToolError:
            return WorktreeStatus(
                exists=True,
                path=str(path),
                error="Directory exists but is not a valid git worktree",
            )
        return WorktreeStatus(
            exists=True,
            path=str(path),
            branch_name=head.stdout.strip(),
            has_changes=bool(status.stdout.strip()),
        )

    def cleanup_all_worktrees(self, force: bool = False) -> int:
        """Delete every managed worktree.

        With *force*, uncommitted changes are discarded and unregistered
        directories under the root are removed as well.

        Returns:
            Number of worktrees removed

        Raises:
            ConflictError: Some worktrees could not be removed (all others are)
        """
        removed = 0
        failures: list[str] = []
        for info in self.list_worktrees():
            try:
                self.delete_worktree(info.task_id, force=force)
                removed += 1
            except (ConflictError, ExternalToolError) as e:
                logger.error("[Worktree] Failed to remove %s: %s", info.path, e)
                failures.append(f"{info.task_id}: {e}")

        if force and self.worktrees_dir.exists():
            for leftover in self.worktrees_dir.iterdir():
                if leftover.is_dir():
                    logger.warning("[Worktree] Removing leftover directory %s", leftover)
                    shutil.rmtree(leftover, ignore_errors=True)
                    removed += 1
            self._run(["git", "worktree", "prune"], check=False)

        logger.info("[Worktree] Cleaned up %d worktree(s)", removed)
        if failures:
            raise ConflictError(
                f"{len(failures)} worktree(s) could not be removed: " + "; ".join(failures)
            )
        return removed
