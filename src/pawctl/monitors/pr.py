from __future__ import annotations

import logging

from pawctl.codec import Status, WindowRegister, decode, matches, transition
from pawctl.github import GitHubClient, GitHubError
from pawctl.notify import Notifier, Sound
from pawctl.scheduler import Scheduler
from pawctl.tasks import TaskError, TaskStore
from pawctl.tmux import TmuxClient, TmuxError, TmuxTimeoutError, TmuxWindowRegister

# Statuses the PR watcher leaves alone while the pull request is open.
_OPEN_UNTOUCHED = (Status.WORKING, Status.REVIEW, Status.WARNING)


class PRMonitor:
    """Tracks one pull request and drives its task window to Review, Warning or cleanup."""

    def __init__(
        self,
        tmux: TmuxClient,
        github: GitHubClient,
        store: TaskStore,
        window_id: str,
        task_name: str,
        pr_number: int,
        notifier: Notifier,
        logger: logging.Logger,
        *,
        register: WindowRegister | None = None,
    ) -> None:
        self.tmux = tmux
        self.github = github
        self.store = store
        self.window_id = window_id
        self.task_name = task_name
        self.pr_number = pr_number
        self.notifier = notifier
        self.logger = logger
        self.register = register or TmuxWindowRegister(tmux, window_id)

    def run(self, scheduler: Scheduler) -> int:
        if not self.github.is_installed():
            self.logger.warning("gh CLI not installed; PR watcher exiting")
            return 0
        self.logger.info("watching PR #%d for task %s", self.pr_number, self.task_name)
        return scheduler.run(self.tick)

    def tick(self) -> bool:
        try:
            window_name = self.register.read()
        except TmuxTimeoutError as exc:
            self.logger.warning("tmux did not answer for %s: %s", self.window_id, exc)
            return True
        if window_name is None:
            self.logger.debug("window %s is gone, stopping PR watcher", self.window_id)
            return False

        decoded = decode(window_name)
        if decoded.is_task_window and not matches(decoded.token, self.task_name):
            self.logger.debug(
                "window %s reassigned to %r, stopping PR watcher", self.window_id, decoded.token
            )
            return False

        try:
            status = self.github.pr_status(self.store.project_dir, self.pr_number)
        except GitHubError as exc:
            self.logger.warning("failed to check PR #%d: %s", self.pr_number, exc)
            return True

        if status.merged:
            self._on_merged()
            return False
        if status.closed_unmerged:
            self.logger.info("PR #%d closed without merge task=%s", self.pr_number, self.task_name)
            self._mark(Status.WARNING)
            return False
        if status.open and decoded.status not in _OPEN_UNTOUCHED:
            return self._mark(Status.REVIEW)
        return True

    def _mark(self, status: Status) -> bool:
        """Rename the window to ``status``; False only when the window vanished."""
        try:
            transition(self.register, self.task_name, status, self.logger, from_final=True)
        except TmuxError as exc:
            try:
                gone = self.register.read() is None
            except TmuxError:
                gone = False
            if gone:
                self.logger.debug("window %s vanished during rename, stopping", self.window_id)
                return False
            self.logger.warning("failed to mark window %s %s: %s", self.window_id, status.name, exc)
        return True

    def _on_merged(self) -> None:
        self.logger.info("PR #%d merged task=%s", self.pr_number, self.task_name)
        self.notifier.play_sound(Sound.TASK_COMPLETED)
        self.notifier.send("PR merged", f"✅ {self.task_name} merged and cleaned up")

        try:
            task = self.store.get_task(self.task_name)
        except TaskError as exc:
            self.logger.warning("failed to load task for cleanup: %s", exc)
        else:
            self.store.cleanup_task(task)

        try:
            self.tmux.kill_window(self.window_id)
        except TmuxError as exc:
            self.logger.warning("failed to kill window %s: %s", self.window_id, exc)
