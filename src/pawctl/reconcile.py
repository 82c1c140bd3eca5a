from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from pawctl import locks
from pawctl.codec import decode, matches
from pawctl.constants import (
    AGENT_PANE_SUFFIX,
    LAUNCH_GRACE_SECONDS,
    RECONCILE_LOCK_NAME,
    RESUME_STAMP_OPTION,
    SHELL_COMMANDS,
)
from pawctl.git import GitClient, GitError
from pawctl.github import GitHubClient, GitHubError
from pawctl.spawn import Spawner
from pawctl.tasks import Task, TaskError, TaskStore
from pawctl.tmux import TmuxClient, TmuxError, Window

RECOVERABLE_ERRORS = (TmuxError, GitError, GitHubError, TaskError, OSError)


@dataclass(slots=True)
class ReconcileReport:
    killed_windows: list[str] = field(default_factory=list)
    cleaned_tasks: list[str] = field(default_factory=list)
    reopened_tasks: list[str] = field(default_factory=list)
    resumed_tasks: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def changed(self) -> bool:
        return bool(
            self.killed_windows or self.cleaned_tasks or self.reopened_tasks or self.resumed_tasks
        )


def is_shell_command(command: str) -> bool:
    """True when the pane's foreground process is an interactive shell."""
    name = command.strip().rsplit("/", 1)[-1].lstrip("-")
    return name in SHELL_COMMANDS


class Reconciler:
    """Aligns recorded tasks with the live windows of one session.

    Every step is independent: a failing step is logged and recorded in the
    report, and the next step still runs. Relaunches are fire-and-forget
    through the spawner and leave a claim behind, so running the whole
    sequence twice in a row relaunches nothing the second time.
    """

    def __init__(
        self,
        tmux: TmuxClient,
        store: TaskStore,
        git: GitClient,
        github: GitHubClient,
        spawner: Spawner,
        logger: logging.Logger,
        *,
        main_branch: str = "",
        remote: str = "origin",
        grace_seconds: float = LAUNCH_GRACE_SECONDS,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.tmux = tmux
        self.store = store
        self.git = git
        self.github = github
        self.spawner = spawner
        self.logger = logger
        self.remote = remote
        self.grace_seconds = grace_seconds
        self.now = now
        self._main_branch = main_branch

    @property
    def lock_path(self) -> Path:
        return self.store.paw_dir / RECONCILE_LOCK_NAME

    def run(self) -> ReconcileReport:
        report = ReconcileReport()
        try:
            handle = locks.acquire(self.lock_path, "reconcile", self.logger)
        except locks.LockHeldError as exc:
            self.logger.info("reconcile already running: %s", exc)
            report.skipped = True
            return report

        try:
            self._step("prune", self.prune, report)
            self._step("merged", self.clean_merged, report)
            self._step("orphaned", self.close_orphaned, report)
            self._step("incomplete", self.reopen_incomplete, report)
            self._step("stopped", self.resume_stopped, report)
        finally:
            locks.release(handle)

        self.logger.info(
            "reconcile done killed=%d cleaned=%d reopened=%d resumed=%d",
            len(report.killed_windows),
            len(report.cleaned_tasks),
            len(report.reopened_tasks),
            len(report.resumed_tasks),
        )
        return report

    def _step(
        self, name: str, step: Callable[[ReconcileReport], None], report: ReconcileReport
    ) -> None:
        try:
            step(report)
        except RECOVERABLE_ERRORS as exc:
            self.logger.warning("reconcile step %s failed: %s", name, exc)
            report.failed_steps.append(name)

    # Observation helpers

    def main_branch(self) -> str:
        if not self._main_branch:
            self._main_branch = self.git.main_branch(self.store.project_dir, self.remote)
        return self._main_branch

    def _windows(self) -> list[Window]:
        try:
            return self.tmux.list_windows()
        except TmuxError as exc:
            self.logger.debug("list windows failed: %s", exc)
            return []

    def _claimants(self, window: Window, tasks: list[Task]) -> list[Task]:
        """Tasks that may own ``window``; exactly one entry means the owner is known.

        Tokens are truncated, so sibling tasks can share one. Among several
        token matches the task bound to this window id wins, then a single
        task that has no window bound yet.
        """
        decoded = decode(window.name)
        if not decoded.is_task_window:
            return []
        candidates = [task for task in tasks if matches(decoded.token, task.name)]
        if len(candidates) <= 1:
            return candidates
        bound = [task for task in candidates if task.load_window_id() == window.id]
        if bound:
            return bound
        unbound = [task for task in candidates if task.load_window_id() is None]
        if len(unbound) != 1:
            self.logger.debug(
                "window %s (%s) matches tasks %s, owner unknown",
                window.id,
                window.name,
                ", ".join(task.name for task in candidates),
            )
        return unbound

    def _owner(self, window: Window, tasks: list[Task]) -> Task | None:
        claimants = self._claimants(window, tasks)
        return claimants[0] if len(claimants) == 1 else None

    def _window_for(self, task: Task, windows: list[Window], tasks: list[Task]) -> str | None:
        window_id = task.load_window_id()
        for window in windows:
            if window.id == window_id and task in self._claimants(window, tasks):
                return window_id
        for window in windows:
            owner = self._owner(window, tasks)
            if owner is not None and owner.name == task.name:
                return window.id
        return None

    def is_task_merged(self, task: Task) -> bool:
        project_dir = self.store.project_dir
        pr_number = task.load_pr_number()
        if pr_number is not None and self.github.is_installed():
            try:
                if self.github.is_merged(project_dir, pr_number):
                    return True
            except GitHubError as exc:
                self.logger.debug("PR check failed task=%s pr=%d: %s", task.name, pr_number, exc)

        if self.git.branch_merged(project_dir, task.branch_name, self.main_branch()):
            return True

        # Branch and worktree both gone means the task was finished by hand.
        if self.store.worktree_mode and task.worktree_dir is not None:
            branch_exists = self.git.branch_exists(project_dir, task.branch_name)
            return not branch_exists and not task.worktree_dir.exists()
        return False

    # Steps

    def prune(self, report: ReconcileReport) -> None:
        self.store.prune_worktrees()

    def clean_merged(self, report: ReconcileReport) -> None:
        if not self.store.is_git_repo:
            return
        windows = self._windows()
        tasks = self.store.list_tasks()
        for task in tasks:
            try:
                if not self.is_task_merged(task):
                    continue
                window_id = self._window_for(task, windows, tasks)
                if window_id is not None:
                    self.tmux.kill_window(window_id)
                    report.killed_windows.append(window_id)
                self.store.cleanup_task(task)
                report.cleaned_tasks.append(task.name)
                self.logger.info("cleaned merged task %s", task.name)
            except RECOVERABLE_ERRORS as exc:
                self.logger.warning("failed to clean merged task %s: %s", task.name, exc)

    def close_orphaned(self, report: ReconcileReport) -> None:
        for window in self._windows():
            decoded = decode(window.name)
            if not decoded.is_task_window:
                continue
            if self.store.find_by_token(decoded.token) is not None:
                continue
            try:
                self.tmux.kill_window(window.id)
            except TmuxError as exc:
                self.logger.warning("failed to close orphaned window %s: %s", window.id, exc)
                continue
            report.killed_windows.append(window.id)
            self.logger.info("closed orphaned window %s (%s)", window.id, window.name)

    def _needs_reopen(self, task: Task, live_ids: set[str]) -> bool:
        if task.has_tab_lock():
            window_id = task.load_window_id()
            if window_id is not None:
                return window_id not in live_ids
            age = task.tab_lock_age(self.now())
            if age is not None and age < self.grace_seconds:
                self.logger.debug("launch in progress for task %s, skipping", task.name)
                return False
            return True
        if self.store.worktree_mode and task.worktree_dir is not None:
            return task.worktree_dir.is_dir()
        return False

    def reopen_incomplete(self, report: ReconcileReport) -> None:
        windows = self._windows()
        live_ids = {window.id for window in windows}
        tasks = self.store.list_tasks()
        # A window whose owner is ambiguous keeps every claimant alive.
        live_tasks = {
            task.name for window in windows for task in self._claimants(window, tasks)
        }

        for task in tasks:
            if task.name in live_tasks:
                continue
            try:
                if self.store.is_git_repo and self.is_task_merged(task):
                    continue
                if not self._needs_reopen(task, live_ids):
                    continue
                task.remove_tab_lock()
                if not task.create_tab_lock():
                    self.logger.debug("task %s was claimed concurrently", task.name)
                    continue
                args = [
                    "internal", "handle-task", self.tmux.session, str(task.agent_dir), "--claimed"
                ]
                spawned = self.spawner.spawn(args, cwd=self.store.project_dir)
                if not spawned:
                    task.remove_tab_lock()
                    continue
                report.reopened_tasks.append(task.name)
                self.logger.info("reopening incomplete task %s", task.name)
            except RECOVERABLE_ERRORS as exc:
                self.logger.warning("failed to reopen task %s: %s", task.name, exc)

    def _is_stopped(self, window_id: str) -> bool:
        pane = f"{window_id}{AGENT_PANE_SUFFIX}"
        if not self.tmux.has_pane(pane):
            return True
        return is_shell_command(self.tmux.pane_command(pane))

    def _recently_resumed(self, window_id: str) -> bool:
        stamp = self.tmux.get_option(RESUME_STAMP_OPTION, window_id=window_id)
        if stamp is None:
            return False
        try:
            resumed_at = float(stamp)
        except ValueError:
            return False
        return self.now() - resumed_at < self.grace_seconds

    def resume_stopped(self, report: ReconcileReport) -> None:
        tasks = self.store.list_tasks()
        for window in self._windows():
            decoded = decode(window.name)
            if not decoded.is_task_window or decoded.status is None or decoded.status.is_final:
                continue
            task = self._owner(window, tasks)
            if task is None:
                continue
            try:
                if not self._is_stopped(window.id):
                    continue
                if self._recently_resumed(window.id):
                    self.logger.debug("window %s resumed recently, skipping", window.id)
                    continue
                spawned = self.spawner.spawn(
                    ["internal", "resume-agent", self.tmux.session, window.id, str(task.agent_dir)],
                    cwd=self.store.project_dir,
                )
                if not spawned:
                    continue
                self.tmux.set_option(RESUME_STAMP_OPTION, str(self.now()), window_id=window.id)
                report.resumed_tasks.append(task.name)
                self.logger.info("resuming stopped agent task=%s window=%s", task.name, window.id)
            except RECOVERABLE_ERRORS as exc:
                self.logger.warning("failed to resume task %s: %s", task.name, exc)
