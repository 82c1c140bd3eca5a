from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pawctl import locks
from pawctl.codec import Status, transition
from pawctl.constants import (
    CLAUDE_LINK,
    COMMIT_MESSAGE_AUTO_COMMIT_MERGE,
    COMMIT_MESSAGE_MERGE,
    COMMIT_MESSAGE_RESOLVED,
    DISPLAY_MESSAGE_MS,
    MERGE_LOCK_MAX_RETRIES,
    MERGE_LOCK_NAME,
    MERGE_LOCK_RETRY_INTERVAL_SECONDS,
    STASH_MESSAGE,
)
from pawctl.git import GitClient, GitError
from pawctl.notify import Notifier, NullNotifier, Sound
from pawctl.resolver import (
    ConflictResolver,
    ResolverError,
    build_conflict_prompt,
    build_merge_failure_prompt,
)
from pawctl.tasks import Task, TaskStore
from pawctl.tmux import TmuxClient, TmuxError, TmuxWindowRegister

_MARKER_PREFIXES = ("<<<<<<< ", ">>>>>>> ")


class SyncError(RuntimeError):
    """Raised when a sync or merge cannot start at all."""


class Outcome(str, Enum):
    UP_TO_DATE = "up_to_date"
    SYNCED = "synced"
    MERGED = "merged"
    ALREADY_MERGED = "already_merged"
    BLOCKED = "blocked"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(slots=True)
class SyncResult:
    outcome: Outcome
    messages: list[str] = field(default_factory=list)
    resolved_by_delegate: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome in (
            Outcome.UP_TO_DATE,
            Outcome.SYNCED,
            Outcome.MERGED,
            Outcome.ALREADY_MERGED,
        )


def files_with_conflict_markers(cwd: Path, paths: list[str]) -> list[str]:
    flagged: list[str] = []
    for relative in paths:
        try:
            text = (cwd / relative).read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if any(line.startswith(_MARKER_PREFIXES) for line in text.splitlines()):
            flagged.append(relative)
    return flagged


def rebase_remediation(work_dir: Path) -> list[str]:
    return [
        "Rebase conflict detected",
        "",
        "Please resolve the conflicts manually:",
        f"  cd {work_dir}",
        "  # Edit conflicting files",
        "  git add <resolved-files>",
        "  git rebase --continue",
        "",
        "Or abort the rebase:",
        "  git rebase --abort",
    ]


class SyncService:
    """Brings task branches up to date with main and squash-merges them back."""

    def __init__(
        self,
        git: GitClient,
        store: TaskStore,
        logger: logging.Logger,
        *,
        resolver: ConflictResolver | None = None,
        notifier: Notifier | None = None,
        tmux: TmuxClient | None = None,
        remote: str = "origin",
        main_branch: str = "",
        lock_retries: int = MERGE_LOCK_MAX_RETRIES,
        lock_interval: float = MERGE_LOCK_RETRY_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.git = git
        self.store = store
        self.logger = logger
        self.resolver = resolver
        self.notifier = notifier or NullNotifier()
        self.tmux = tmux
        self.remote = remote
        self.lock_retries = lock_retries
        self.lock_interval = lock_interval
        self.sleep = sleep
        self._main_branch = main_branch

    def main_branch(self) -> str:
        if not self._main_branch:
            self._main_branch = self.git.main_branch(self.store.project_dir, self.remote)
        return self._main_branch

    # Delegate

    def _run_delegate(self, prompt: str, cwd: Path, messages: list[str]) -> bool:
        if self.resolver is None:
            return False
        self.logger.info("delegating resolution in %s", cwd)
        try:
            asyncio.run(self.resolver.resolve(prompt, cwd))
        except ResolverError as exc:
            self.logger.warning("delegate resolver failed: %s", exc)
            messages.append(f"Delegate resolver failed: {exc}")
            return False
        return True

    def _is_clean(self, cwd: Path, touched: list[str]) -> bool:
        remaining = self.git.conflicted_files(cwd)
        if remaining:
            self.logger.warning("conflicts remain after delegate: %s", remaining)
            return False
        markers = files_with_conflict_markers(cwd, touched)
        if markers:
            self.logger.warning("conflict markers remain after delegate: %s", markers)
            return False
        if self.git.has_ongoing_merge(cwd) or self.git.has_ongoing_rebase(cwd):
            self.logger.warning("merge or rebase still in progress in %s", cwd)
            return False
        return True

    # Sync

    def _preconditions(self, work_dir: Path) -> list[str] | None:
        if self.git.has_changes(work_dir):
            return ["You have uncommitted changes", "Please commit or stash them before syncing"]
        if self.git.has_ongoing_rebase(work_dir):
            return [
                "There's an ongoing rebase operation",
                "Please complete or abort it first:",
                "  git rebase --continue  # to continue",
                "  git rebase --abort     # to abort",
            ]
        if self.git.has_ongoing_merge(work_dir):
            return [
                "There's an ongoing merge operation",
                "Please complete or abort it first:",
                "  git merge --continue  # to continue",
                "  git merge --abort     # to abort",
            ]
        return None

    def sync_with_main(self, task: Task) -> SyncResult:
        """Fetch and rebase the task branch onto the remote main branch.

        A failed rebase is handed to the delegate when one is configured; if
        the repository is still not clean afterwards, the rebase is left in
        place together with the exact commands to continue or abort it.
        """
        if not self.store.is_git_repo:
            raise SyncError("Not a git repository - sync not available")

        work_dir = self.store.work_dir(task)
        blocked = self._preconditions(work_dir)
        if blocked is not None:
            return SyncResult(Outcome.BLOCKED, blocked)

        main = self.main_branch()
        try:
            self.git.fetch(work_dir, self.remote)
        except GitError as exc:
            raise SyncError(f"Failed to fetch from {self.remote}: {exc}") from exc

        upstream = f"{self.remote}/{main}"
        try:
            behind: int | None = self.git.behind_count(work_dir, "HEAD", upstream)
        except (GitError, ValueError) as exc:
            self.logger.warning("failed to count commits behind %s: %s", upstream, exc)
            behind = None

        if behind == 0:
            return SyncResult(
                Outcome.UP_TO_DATE, [f"Already up to date with {main}", "No sync needed!"]
            )

        messages = [f"{'unknown' if behind is None else behind} new commit(s) on {main}"]
        try:
            self.git.rebase(work_dir, upstream)
        except GitError as exc:
            self.logger.warning("rebase failed task=%s: %s", task.name, exc)
            if self._resolve_rebase(task, work_dir, messages):
                messages.append(f"Successfully synced with {main}!")
                return SyncResult(Outcome.SYNCED, messages, resolved_by_delegate=True)
            messages.extend(rebase_remediation(work_dir))
            return SyncResult(Outcome.CONFLICT, messages)

        self.logger.info("synced task %s with %s", task.name, main)
        messages.append(f"Successfully synced with {main}!")
        return SyncResult(Outcome.SYNCED, messages)

    def _resolve_rebase(self, task: Task, work_dir: Path, messages: list[str]) -> bool:
        if self.resolver is None:
            return False
        files = self.git.conflicted_files(work_dir)
        if not files:
            return False
        prompt = build_conflict_prompt(task.name, task.load_content(), files)
        if not self._run_delegate(prompt, work_dir, messages):
            return False
        if self.git.conflicted_files(work_dir) or files_with_conflict_markers(work_dir, files):
            return False
        if self.git.has_ongoing_rebase(work_dir):
            try:
                self.git.add_all(work_dir)
                self.git.rebase_continue(work_dir)
            except GitError as exc:
                self.logger.warning("rebase --continue failed after delegate: %s", exc)
                return False
        return self._is_clean(work_dir, files)

    # Merge

    def _auto_commit(self, work_dir: Path) -> None:
        if not self.git.has_changes(work_dir):
            return
        self.git.add_all(work_dir)
        if self.git.is_staged(work_dir, CLAUDE_LINK):
            self.logger.warning("unstaging %s before commit", CLAUDE_LINK)
            self.git.unstage(work_dir, CLAUDE_LINK)
        if not self.git.has_staged_changes(work_dir):
            return
        stat = self.git.diff_stat(work_dir)
        self.git.commit(work_dir, COMMIT_MESSAGE_AUTO_COMMIT_MERGE.format(stat=stat))
        self.logger.info("auto-committed pending changes in %s", work_dir)

    def merge_task(self, task: Task) -> SyncResult:
        """Squash-merge the task branch into main from the project checkout."""
        if not self.store.is_git_repo:
            raise SyncError("Not a git repository - merge not available")
        if not self.store.worktree_mode:
            raise SyncError("Merge is only available in worktree mode")

        project = self.store.project_dir
        main = self.main_branch()
        if self.git.branch_merged(project, task.branch_name, main):
            return SyncResult(Outcome.ALREADY_MERGED, [f"Already merged to {main}"])

        work_dir = self.store.work_dir(task)
        try:
            self._auto_commit(work_dir)
        except GitError as exc:
            raise SyncError(f"Failed to commit pending changes: {exc}") from exc

        has_remote = self.git.has_remote(project, self.remote)
        if has_remote:
            try:
                self.git.push(work_dir, self.remote, task.branch_name, set_upstream=True)
            except GitError as exc:
                self.logger.warning("failed to push task branch %s: %s", task.branch_name, exc)

        lock_path = self.store.paw_dir / MERGE_LOCK_NAME
        try:
            handle = locks.acquire_with_retry(
                lock_path,
                f"merge {task.name}",
                self.logger,
                retries=self.lock_retries,
                interval=self.lock_interval,
                sleep=self.sleep,
            )
        except locks.LockHeldError as exc:
            self.logger.warning("could not acquire merge lock: %s", exc)
            return SyncResult(Outcome.BLOCKED, ["Failed to acquire merge lock"])

        try:
            result = self._merge_locked(task, project, main, has_remote)
        finally:
            locks.release(handle)
        self._report(task, main, result)
        return result

    def _merge_locked(self, task: Task, project: Path, main: str, has_remote: bool) -> SyncResult:
        conflicts = self.git.conflicted_files(project)
        if conflicts or self.git.has_ongoing_merge(project):
            messages = ["Project has unresolved conflicts or ongoing merge"]
            messages.extend(f"  - {name}" for name in conflicts)
            messages.append(f"Please resolve in: {project}")
            return SyncResult(Outcome.BLOCKED, messages)

        stash_message = STASH_MESSAGE.format(task=task.name)
        try:
            stashed = self.git.stash_push(project, stash_message)
        except GitError as exc:
            return SyncResult(
                Outcome.BLOCKED, [f"Cannot stash local changes in {project}: {exc}"]
            )

        messages: list[str] = []
        resolved = False
        ok = True
        try:
            original_branch = self.git.current_branch(project)
            if has_remote:
                try:
                    self.git.fetch(project, self.remote)
                except GitError as exc:
                    self.logger.warning("fetch failed: %s", exc)
            try:
                self.git.checkout(project, main)
            except GitError as exc:
                messages.append(f"Failed to check out {main}: {exc}")
                ok = False

            if ok:
                if has_remote:
                    try:
                        self.git.pull(project)
                    except GitError as exc:
                        self.logger.warning("pull failed: %s", exc)
                try:
                    self.git.merge_squash(
                        project, task.branch_name, COMMIT_MESSAGE_MERGE.format(task=task.name)
                    )
                except GitError as exc:
                    self.logger.warning("squash merge failed task=%s: %s", task.name, exc)
                    ok = resolved = self._recover_merge(task, project, main, messages)

                if ok and has_remote:
                    try:
                        self.git.push(project, self.remote, main)
                    except GitError as exc:
                        messages.append(f"Failed to push {main}: {exc}")
                        ok = False

                if original_branch and original_branch != main:
                    try:
                        self.git.checkout(project, original_branch)
                    except GitError as exc:
                        self.logger.warning("failed to restore branch %s: %s", original_branch, exc)
        finally:
            if stashed:
                try:
                    self.git.stash_pop(project, stash_message)
                except GitError as exc:
                    self.logger.warning("failed to restore stashed changes: %s", exc)
                    messages.append(f"Stashed changes kept as '{stash_message}'")

        if ok:
            messages.append(f"Merged to {main} (task window kept)")
            return SyncResult(Outcome.MERGED, messages, resolved_by_delegate=resolved)
        messages.extend(
            [
                "Merge failed - manual resolution needed",
                f"  cd {project}",
                f"  git checkout {main}",
                f"  git merge --squash {task.branch_name}",
                "  # resolve conflicts, then",
                "  git add -A",
                f'  git commit -m "{COMMIT_MESSAGE_MERGE.format(task=task.name)}"',
            ]
        )
        return SyncResult(Outcome.FAILED, messages)

    def _abort_merge(self, project: Path) -> None:
        try:
            self.git.merge_abort(project)
        except GitError:
            # A squash merge leaves no MERGE_HEAD for --abort to use.
            try:
                self.git.reset_merge(project)
            except GitError as exc:
                self.logger.warning("failed to abort merge in %s: %s", project, exc)

    def _recover_merge(self, task: Task, project: Path, main: str, messages: list[str]) -> bool:
        files = self.git.conflicted_files(project)
        if files:
            messages.append(f"Merge conflicts detected in {len(files)} file(s):")
            messages.extend(f"  - {name}" for name in files)
            prompt = build_conflict_prompt(task.name, task.load_content(), files)
        else:
            messages.append("Merge failed without obvious conflicts")
            prompt = build_merge_failure_prompt(
                project,
                task.name,
                task.load_content(),
                task.branch_name,
                main,
                self.git.status(project),
            )

        if not self._run_delegate(prompt, project, messages) or not self._is_clean(project, files):
            self._abort_merge(project)
            return False

        try:
            self.git.add_all(project)
            if self.git.is_staged(project, CLAUDE_LINK):
                self.git.unstage(project, CLAUDE_LINK)
            if self.git.has_staged_changes(project):
                self.git.commit(project, COMMIT_MESSAGE_RESOLVED.format(task=task.name))
        except GitError as exc:
            messages.append(f"Failed to commit resolved merge: {exc}")
            self._abort_merge(project)
            return False
        self.logger.info("merge of %s completed by delegate", task.name)
        return True

    def _report(self, task: Task, main: str, result: SyncResult) -> None:
        if result.outcome is Outcome.MERGED:
            self.notifier.play_sound(Sound.TASK_COMPLETED)
            self._display(f"✅ Merged: {task.name} → {main}")
            self._mark_window(task, Status.DONE, from_final=False)
        elif result.outcome is Outcome.FAILED:
            self.notifier.play_sound(Sound.ERROR)
            self._display(f"⚠️ Merge failed: {task.name}")
            self._mark_window(task, Status.WARNING, from_final=True)

    def _display(self, message: str) -> None:
        if self.tmux is None:
            return
        try:
            self.tmux.display_message(message, DISPLAY_MESSAGE_MS)
        except TmuxError as exc:
            self.logger.debug("display message failed: %s", exc)

    def _mark_window(self, task: Task, status: Status, *, from_final: bool) -> None:
        window_id = task.load_window_id()
        if self.tmux is None or window_id is None:
            return
        register = TmuxWindowRegister(self.tmux, window_id)
        try:
            transition(register, task.name, status, self.logger, from_final=from_final)
        except TmuxError as exc:
            self.logger.warning("failed to mark window %s: %s", window_id, exc)
