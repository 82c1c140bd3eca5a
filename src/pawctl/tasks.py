from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pawctl.codec import matches
from pawctl.constants import (
    AGENTS_DIR_NAME,
    PR_FILE_NAME,
    SESSION_MARKER_FILE_NAME,
    TAB_LOCK_DIR_NAME,
    TASK_FILE_NAME,
    VERIFY_JSON_FILE_NAME,
    VERIFY_LOG_FILE_NAME,
    WINDOW_ID_FILE_NAME,
)
from pawctl.git import GitClient, GitError


class TaskError(RuntimeError):
    """Raised when a task record is missing or cannot be updated."""


class CorruptionReason(str, Enum):
    MISSING_WORKTREE = "missing_worktree"
    NOT_IN_GIT = "not_in_git"
    INVALID_GIT = "invalid_git"
    MISSING_BRANCH = "missing_branch"


def write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


@dataclass(slots=True)
class Task:
    name: str
    agent_dir: Path
    worktree_dir: Path | None = None

    @property
    def branch_name(self) -> str:
        return self.name

    @property
    def content_path(self) -> Path:
        return self.agent_dir / TASK_FILE_NAME

    @property
    def tab_lock_dir(self) -> Path:
        return self.agent_dir / TAB_LOCK_DIR_NAME

    @property
    def window_id_path(self) -> Path:
        return self.tab_lock_dir / WINDOW_ID_FILE_NAME

    @property
    def pr_path(self) -> Path:
        return self.agent_dir / PR_FILE_NAME

    @property
    def session_marker_path(self) -> Path:
        return self.agent_dir / SESSION_MARKER_FILE_NAME

    @property
    def verify_meta_path(self) -> Path:
        return self.agent_dir / VERIFY_JSON_FILE_NAME

    @property
    def verify_output_path(self) -> Path:
        return self.agent_dir / VERIFY_LOG_FILE_NAME

    def hook_meta_path(self, hook: str) -> Path:
        return self.agent_dir / f".hook-{hook}.json"

    def hook_output_path(self, hook: str) -> Path:
        return self.agent_dir / f".hook-{hook}.log"

    def load_content(self) -> str:
        try:
            return self.content_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    # Window binding

    def has_tab_lock(self) -> bool:
        return self.tab_lock_dir.is_dir()

    def create_tab_lock(self) -> bool:
        """Claim the window binding; False when someone already holds it."""
        try:
            self.tab_lock_dir.mkdir()
        except FileExistsError:
            return False
        except FileNotFoundError as exc:
            raise TaskError(f"Task directory is missing: {self.agent_dir}") from exc
        return True

    def remove_tab_lock(self) -> None:
        shutil.rmtree(self.tab_lock_dir, ignore_errors=True)

    def tab_lock_age(self, now: float | None = None) -> float | None:
        try:
            modified = self.tab_lock_dir.stat().st_mtime
        except FileNotFoundError:
            return None
        return (time.time() if now is None else now) - modified

    def save_window_id(self, window_id: str) -> None:
        write_atomic(self.window_id_path, window_id)

    def load_window_id(self) -> str | None:
        try:
            value = self.window_id_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    # Pull request

    def save_pr_number(self, number: int) -> None:
        write_atomic(self.pr_path, str(number))

    def load_pr_number(self) -> int | None:
        try:
            raw = self.pr_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            number = int(raw)
        except ValueError:
            return None
        return number if number > 0 else None

    # Session marker

    def write_session_marker(self, at: datetime | None = None) -> None:
        stamp = (at or datetime.now(UTC)).replace(microsecond=0).isoformat()
        write_atomic(self.session_marker_path, stamp)

    def read_session_marker(self) -> datetime | None:
        try:
            raw = self.session_marker_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed


def _sanitize_worktree_base(base: str) -> str:
    if base in ("", ".", os.sep):
        return "worktree"
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "-", base)[:32]
    return cleaned or "worktree"


class TaskStore:
    """On-disk task records under ``<paw_dir>/agents``."""

    def __init__(
        self,
        project_dir: Path,
        paw_dir: Path,
        git: GitClient,
        logger: logging.Logger,
        *,
        worktree_mode: bool = True,
    ) -> None:
        self.project_dir = project_dir.resolve()
        self.paw_dir = paw_dir
        self.agents_dir = paw_dir / AGENTS_DIR_NAME
        self.git = git
        self.logger = logger
        self.is_git_repo = git.is_repo(self.project_dir)
        self.worktree_mode = worktree_mode and self.is_git_repo

    def _worktree_name(self) -> str:
        digest = hashlib.sha256(str(self.project_dir).encode("utf-8")).hexdigest()[:5]
        return f"{_sanitize_worktree_base(self.project_dir.name)}-{digest}"

    def _load(self, name: str) -> Task:
        agent_dir = self.agents_dir / name
        worktree_dir = agent_dir / self._worktree_name() if self.worktree_mode else None
        return Task(name=name, agent_dir=agent_dir, worktree_dir=worktree_dir)

    def get_task(self, name: str) -> Task:
        if not (self.agents_dir / name).is_dir():
            raise TaskError(f"Task not found: {name}")
        return self._load(name)

    def list_tasks(self) -> list[Task]:
        if not self.agents_dir.is_dir():
            return []
        return [
            self._load(entry.name)
            for entry in sorted(self.agents_dir.iterdir())
            if entry.is_dir() and not entry.name.startswith(".")
        ]

    def find_by_token(self, token: str) -> Task | None:
        for task in self.list_tasks():
            if matches(token, task.name):
                return task
        return None

    def work_dir(self, task: Task) -> Path:
        if task.worktree_dir is not None and task.worktree_dir.is_dir():
            return task.worktree_dir
        return self.project_dir

    def prune_worktrees(self) -> None:
        if not self.worktree_mode:
            return
        try:
            self.git.worktree_prune(self.project_dir)
        except GitError as exc:
            self.logger.debug("worktree prune failed: %s", exc)

    def cleanup_task(self, task: Task) -> None:
        """Remove worktree, branch and agent directory; git failures are logged."""
        if self.worktree_mode and task.worktree_dir is not None:
            if task.worktree_dir.exists():
                try:
                    self.git.worktree_remove(self.project_dir, task.worktree_dir, force=True)
                except GitError as exc:
                    self.logger.debug("worktree remove failed, removing directory: %s", exc)
                    shutil.rmtree(task.worktree_dir, ignore_errors=True)
            self.prune_worktrees()
            if self.git.branch_exists(self.project_dir, task.branch_name):
                try:
                    self.git.branch_delete(self.project_dir, task.branch_name, force=True)
                except GitError as exc:
                    self.logger.debug("branch delete failed task=%s: %s", task.name, exc)
        shutil.rmtree(task.agent_dir, ignore_errors=True)
        self.logger.info("cleaned up task %s", task.name)

    def diagnose(self, task: Task) -> CorruptionReason | None:
        if not self.worktree_mode or task.worktree_dir is None:
            return None
        worktree = task.worktree_dir
        if not worktree.exists():
            if self.git.branch_exists(self.project_dir, task.branch_name):
                return CorruptionReason.MISSING_WORKTREE
            return None
        if not worktree.is_dir() or not (worktree / ".git").exists():
            return CorruptionReason.INVALID_GIT
        try:
            registered = self.git.worktree_list(self.project_dir)
        except GitError as exc:
            self.logger.warning("worktree list failed task=%s: %s", task.name, exc)
            return CorruptionReason.NOT_IN_GIT
        resolved = worktree.resolve()
        if not any(Path(entry.path).resolve() == resolved for entry in registered):
            return CorruptionReason.NOT_IN_GIT
        if not self.git.branch_exists(self.project_dir, task.branch_name):
            return CorruptionReason.MISSING_BRANCH
        return None
