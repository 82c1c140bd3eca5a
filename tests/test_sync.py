import asyncio
import logging
import subprocess
from pathlib import Path

import pytest

from pawctl import locks
from pawctl.codec import Status, encode
from pawctl.git import GitClient
from pawctl.notify import Notifier, Sound
from pawctl.resolver import ConflictResolver, ResolverError
from pawctl.sync import (
    Outcome,
    SyncError,
    SyncService,
    files_with_conflict_markers,
    rebase_remediation,
)
from pawctl.tasks import Task, TaskStore
from pawctl.tmux import TmuxClient, TmuxError

LOGGER = logging.getLogger("pawctl.test.sync")


def _git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    _git(repo_path, "init", "-b", "main")
    _git(repo_path, "config", "user.email", "test@example.com")
    _git(repo_path, "config", "user.name", "Test User")
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _git(repo_path, "add", "README.md")
    _git(repo_path, "commit", "-m", "seed")


def _commit(cwd: Path, name: str, content: str, message: str) -> None:
    (cwd / name).write_text(content, encoding="utf-8")
    _git(cwd, "add", name)
    _git(cwd, "commit", "-m", message)


class FakeTmux(TmuxClient):
    def __init__(self) -> None:
        super().__init__("demo")
        self.names: dict[str, str] = {}
        self.messages: list[str] = []

    def window_name(self, window_id: str) -> str:
        if window_id not in self.names:
            raise TmuxError(f"can't find window: {window_id}")
        return self.names[window_id]

    def rename_window(self, window_id: str, name: str) -> None:
        self.names[window_id] = name

    def display_message(self, message: str, duration_ms: int) -> None:
        self.messages.append(message)


class SoundRecorder(Notifier):
    def __init__(self) -> None:
        self.sounds: list[Sound] = []

    def send(self, title: str, message: str) -> None:
        return None

    def send_with_actions(
        self, title: str, message: str, actions: list[str], timeout: int
    ) -> int | None:
        return None

    def play_sound(self, sound: Sound) -> None:
        self.sounds.append(sound)


class WritingResolver(ConflictResolver):
    """Resolves by overwriting README.md and staging everything."""

    def __init__(self, content: str = "resolved\n") -> None:
        self.content = content
        self.prompts: list[str] = []

    async def resolve(self, prompt: str, cwd: Path) -> None:
        self.prompts.append(prompt)
        (cwd / "README.md").write_text(self.content, encoding="utf-8")
        process = await asyncio.create_subprocess_exec("git", "add", "-A", cwd=str(cwd))
        await process.wait()


class FailingResolver(ConflictResolver):
    async def resolve(self, prompt: str, cwd: Path) -> None:
        raise ResolverError("delegate crashed", exit_code=2)


class Workspace:
    def __init__(self, tmp_path: Path) -> None:
        self.origin = tmp_path / "origin.git"
        _git(tmp_path, "init", "--bare", "-b", "main", str(self.origin))
        self.project = tmp_path / "project"
        _init_git_repo(self.project)
        _git(self.project, "remote", "add", "origin", str(self.origin))
        _git(self.project, "push", "-u", "origin", "main")

        self.git = GitClient()
        self.store = TaskStore(self.project, tmp_path / "paw", self.git, LOGGER)
        agent_dir = self.store.agents_dir / "feature"
        agent_dir.mkdir(parents=True)
        (agent_dir / "task").write_text("Add the feature\n", encoding="utf-8")
        self.task: Task = self.store.get_task("feature")
        assert self.task.worktree_dir is not None
        self.worktree = self.task.worktree_dir
        _git(self.project, "worktree", "add", "-b", "feature", str(self.worktree), "main")

    def advance_main(self, name: str, content: str) -> None:
        _commit(self.project, name, content, f"main: {name}")
        _git(self.project, "push", "origin", "main")

    def service(self, **kwargs: object) -> SyncService:
        return SyncService(self.git, self.store, LOGGER, **kwargs)


def test_up_to_date_branch_is_not_rebased(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "feature.txt", "feature\n", "feature work")
    head = _git(ws.worktree, "rev-parse", "HEAD")

    result = ws.service().sync_with_main(ws.task)

    assert result.outcome is Outcome.UP_TO_DATE
    assert result.messages == ["Already up to date with main", "No sync needed!"]
    assert _git(ws.worktree, "rev-parse", "HEAD") == head


def test_branch_behind_main_is_rebased(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "feature.txt", "feature\n", "feature work")
    ws.advance_main("upstream.txt", "upstream\n")

    result = ws.service().sync_with_main(ws.task)

    assert result.outcome is Outcome.SYNCED
    assert result.ok
    assert result.messages == ["1 new commit(s) on main", "Successfully synced with main!"]
    assert (ws.worktree / "upstream.txt").exists()
    assert _git(ws.worktree, "log", "-1", "--format=%s") == "feature work"


def test_rebase_conflict_is_left_in_place_with_instructions(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "README.md", "feature side\n", "feature readme")
    ws.advance_main("README.md", "main side\n")

    result = ws.service().sync_with_main(ws.task)

    assert result.outcome is Outcome.CONFLICT
    assert not result.ok
    assert result.messages == ["1 new commit(s) on main", *rebase_remediation(ws.worktree)]
    assert ws.git.has_ongoing_rebase(ws.worktree)


def test_rebase_conflict_resolved_by_delegate(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "README.md", "feature side\n", "feature readme")
    ws.advance_main("README.md", "main side\n")
    resolver = WritingResolver("feature and main\n")

    result = ws.service(resolver=resolver).sync_with_main(ws.task)

    assert result.outcome is Outcome.SYNCED
    assert result.resolved_by_delegate is True
    assert "README.md" in resolver.prompts[0]
    assert "Add the feature" in resolver.prompts[0]
    assert not ws.git.has_ongoing_rebase(ws.worktree)
    assert (ws.worktree / "README.md").read_text(encoding="utf-8") == "feature and main\n"


def test_sync_refuses_dirty_worktree(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    (ws.worktree / "scratch.txt").write_text("wip\n", encoding="utf-8")

    result = ws.service().sync_with_main(ws.task)

    assert result.outcome is Outcome.BLOCKED
    assert result.messages == [
        "You have uncommitted changes",
        "Please commit or stash them before syncing",
    ]


def test_sync_requires_git_repository(tmp_path: Path) -> None:
    store = TaskStore(tmp_path, tmp_path / ".paw", GitClient(), LOGGER)
    (store.agents_dir / "feature").mkdir(parents=True)

    with pytest.raises(SyncError):
        SyncService(GitClient(), store, LOGGER).sync_with_main(store.get_task("feature"))


def test_merge_squashes_task_into_main_and_marks_window_done(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "feature.txt", "feature\n", "feature work")
    (ws.worktree / "notes.txt").write_text("uncommitted\n", encoding="utf-8")
    ws.task.save_window_id("@1")
    tmux = FakeTmux()
    tmux.names["@1"] = encode("feature", Status.WORKING)
    notifier = SoundRecorder()

    result = ws.service(tmux=tmux, notifier=notifier).merge_task(ws.task)

    assert result.outcome is Outcome.MERGED
    assert result.messages == ["Merged to main (task window kept)"]
    assert (ws.project / "feature.txt").exists()
    assert (ws.project / "notes.txt").exists()
    assert _git(ws.project, "log", "-1", "--format=%s") == "feat: feature"
    assert _git(ws.project, "rev-parse", "main") == _git(ws.origin, "rev-parse", "main")
    assert not (ws.store.paw_dir / "merge.lock").exists()
    assert tmux.names["@1"] == encode("feature", Status.DONE)
    assert tmux.messages == ["✅ Merged: feature → main"]
    assert notifier.sounds == [Sound.TASK_COMPLETED]


def test_merge_of_already_merged_branch_is_a_no_op(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    head = _git(ws.project, "rev-parse", "main")

    result = ws.service().merge_task(ws.task)

    assert result.outcome is Outcome.ALREADY_MERGED
    assert result.messages == ["Already merged to main"]
    assert _git(ws.project, "rev-parse", "main") == head


def test_merge_conflict_resolved_by_delegate(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "README.md", "feature side\n", "feature readme")
    ws.advance_main("README.md", "main side\n")

    result = ws.service(resolver=WritingResolver("merged\n")).merge_task(ws.task)

    assert result.outcome is Outcome.MERGED
    assert result.resolved_by_delegate is True
    assert result.messages[0] == "Merge conflicts detected in 1 file(s):"
    assert _git(ws.project, "log", "-1", "--format=%s") == "feat: feature (conflicts resolved)"
    assert (ws.project / "README.md").read_text(encoding="utf-8") == "merged\n"


def test_failed_merge_is_aborted_and_window_warned(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "README.md", "feature side\n", "feature readme")
    ws.advance_main("README.md", "main side\n")
    ws.task.save_window_id("@1")
    tmux = FakeTmux()
    tmux.names["@1"] = encode("feature", Status.DONE)
    notifier = SoundRecorder()
    head = _git(ws.project, "rev-parse", "main")

    result = ws.service(resolver=FailingResolver(), tmux=tmux, notifier=notifier).merge_task(
        ws.task
    )

    assert result.outcome is Outcome.FAILED
    assert "Delegate resolver failed: delegate crashed" in result.messages
    assert "Merge failed - manual resolution needed" in result.messages
    assert ws.git.conflicted_files(ws.project) == []
    assert not ws.git.has_changes(ws.project)
    assert _git(ws.project, "rev-parse", "main") == head
    assert tmux.names["@1"] == encode("feature", Status.WARNING)
    assert notifier.sounds == [Sound.ERROR]


def test_merge_restores_stashed_project_changes(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "feature.txt", "feature\n", "feature work")
    (ws.project / "local.txt").write_text("keep me\n", encoding="utf-8")

    result = ws.service().merge_task(ws.task)

    assert result.outcome is Outcome.MERGED
    assert (ws.project / "local.txt").read_text(encoding="utf-8") == "keep me\n"
    assert _git(ws.project, "stash", "list") == ""


def test_merge_blocked_while_lock_is_held(tmp_path: Path) -> None:
    ws = Workspace(tmp_path)
    _commit(ws.worktree, "feature.txt", "feature\n", "feature work")
    sleeps: list[float] = []

    with locks.held(ws.store.paw_dir / "merge.lock", "merge other"):
        result = ws.service(lock_retries=3, lock_interval=0.5, sleep=sleeps.append).merge_task(
            ws.task
        )

    assert result.outcome is Outcome.BLOCKED
    assert result.messages == ["Failed to acquire merge lock"]
    assert sleeps == [0.5, 0.5]
    assert not (ws.project / "feature.txt").exists()


def test_merge_requires_worktree_mode(tmp_path: Path) -> None:
    project = tmp_path / "project"
    _init_git_repo(project)
    store = TaskStore(project, tmp_path / "paw", GitClient(), LOGGER, worktree_mode=False)
    (store.agents_dir / "feature").mkdir(parents=True)

    with pytest.raises(SyncError):
        SyncService(GitClient(), store, LOGGER).merge_task(store.get_task("feature"))


def test_files_with_conflict_markers(tmp_path: Path) -> None:
    (tmp_path / "clean.py").write_text("x = 1\n", encoding="utf-8")
    (tmp_path / "dirty.py").write_text(
        "<<<<<<< HEAD\nx = 1\n=======\nx = 2\n>>>>>>> feature\n", encoding="utf-8"
    )

    flagged = files_with_conflict_markers(tmp_path, ["clean.py", "dirty.py", "missing.py"])

    assert flagged == ["dirty.py"]
