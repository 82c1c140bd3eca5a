from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from pawctl.constants import GIT_COMMAND_TIMEOUT_SECONDS


class GitError(RuntimeError):
    """Raised when a git command fails."""


@dataclass(slots=True, frozen=True)
class Worktree:
    path: str
    head: str = ""
    branch: str = ""


class GitClient:
    """Thin wrapper over the git CLI; every method takes the directory to run in."""

    def __init__(self, binary: str = "git", timeout: float = GIT_COMMAND_TIMEOUT_SECONDS) -> None:
        self.binary = binary
        self.timeout = timeout

    def _run_git(
        self,
        cwd: Path,
        args: list[str],
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                [self.binary, "--no-pager", *args],
                cwd=cwd,
                text=True,
                capture_output=True,
                input=input_text,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git {args[0]} timed out after {self.timeout:.0f}s") from exc
        except FileNotFoundError as exc:
            raise GitError(f"git binary not found or missing directory: {cwd}") from exc
        if check and proc.returncode != 0:
            raise GitError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _output(self, cwd: Path, args: list[str]) -> str:
        return self._run_git(cwd, args).stdout.strip()

    def _ok(self, cwd: Path, args: list[str]) -> bool:
        try:
            return self._run_git(cwd, args, check=False).returncode == 0
        except GitError:
            return False

    # Repository

    def is_repo(self, cwd: Path) -> bool:
        return self._ok(cwd, ["rev-parse", "--git-dir"])

    def git_dir(self, cwd: Path) -> Path:
        git_dir = Path(self._output(cwd, ["rev-parse", "--git-dir"]))
        return git_dir if git_dir.is_absolute() else cwd / git_dir

    def main_branch(self, cwd: Path, remote: str = "origin") -> str:
        proc = self._run_git(
            cwd, ["symbolic-ref", f"refs/remotes/{remote}/HEAD", "--short"], check=False
        )
        if proc.returncode == 0 and proc.stdout.strip():
            return proc.stdout.strip().removeprefix(f"{remote}/")
        for candidate in ("main", "master"):
            if self.branch_exists(cwd, candidate):
                return candidate
        return "main"

    def has_remote(self, cwd: Path, remote: str) -> bool:
        proc = self._run_git(cwd, ["remote"], check=False)
        return proc.returncode == 0 and remote in proc.stdout.split()

    # Working tree state

    def has_changes(self, cwd: Path) -> bool:
        return bool(self._output(cwd, ["status", "--porcelain"]))

    def status(self, cwd: Path) -> str:
        return self._run_git(cwd, ["status"], check=False).stdout

    def has_ongoing_rebase(self, cwd: Path) -> bool:
        try:
            git_dir = self.git_dir(cwd)
        except GitError:
            return False
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def has_ongoing_merge(self, cwd: Path) -> bool:
        try:
            git_dir = self.git_dir(cwd)
        except GitError:
            return False
        return (git_dir / "MERGE_HEAD").exists()

    def conflicted_files(self, cwd: Path) -> list[str]:
        output = self._output(cwd, ["diff", "--name-only", "--diff-filter=U"])
        return [line for line in output.splitlines() if line.strip()]

    # Refs

    def current_branch(self, cwd: Path) -> str:
        return self._output(cwd, ["rev-parse", "--abbrev-ref", "HEAD"])

    def head_commit(self, cwd: Path) -> str:
        return self._output(cwd, ["rev-parse", "HEAD"])

    def branch_exists(self, cwd: Path, branch: str) -> bool:
        return self._ok(cwd, ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"])

    def branch_merged(self, cwd: Path, branch: str, into: str) -> bool:
        proc = self._run_git(cwd, ["branch", "--merged", into], check=False)
        if proc.returncode != 0:
            return False
        # "*" marks the current branch, "+" one checked out in another worktree.
        names = {line.strip().lstrip("*+").strip() for line in proc.stdout.splitlines()}
        return branch in names

    def branch_delete(self, cwd: Path, branch: str, force: bool = False) -> None:
        self._run_git(cwd, ["branch", "-D" if force else "-d", branch])

    def behind_count(self, cwd: Path, ref: str, upstream: str) -> int:
        return int(self._output(cwd, ["rev-list", "--count", f"{ref}..{upstream}"]) or "0")

    # Mutations

    def fetch(self, cwd: Path, remote: str) -> None:
        self._run_git(cwd, ["fetch", remote])

    def pull(self, cwd: Path) -> None:
        self._run_git(cwd, ["pull"])

    def push(self, cwd: Path, remote: str, branch: str, set_upstream: bool = False) -> None:
        args = ["push", *(["-u"] if set_upstream else []), remote, branch]
        self._run_git(cwd, args)

    def rebase(self, cwd: Path, onto: str) -> None:
        self._run_git(cwd, ["rebase", onto])

    def rebase_continue(self, cwd: Path) -> None:
        self._run_git(cwd, ["-c", "core.editor=true", "rebase", "--continue"])

    def checkout(self, cwd: Path, target: str) -> None:
        self._run_git(cwd, ["checkout", target])

    def add_all(self, cwd: Path) -> None:
        self._run_git(cwd, ["add", "-A"])

    def is_staged(self, cwd: Path, path: str) -> bool:
        return bool(self._output(cwd, ["diff", "--cached", "--name-only", "--", path]))

    def has_staged_changes(self, cwd: Path) -> bool:
        return self._run_git(cwd, ["diff", "--cached", "--quiet"], check=False).returncode == 1

    def unstage(self, cwd: Path, path: str) -> None:
        self._run_git(cwd, ["reset", "-q", "HEAD", "--", path])

    def commit(self, cwd: Path, message: str) -> None:
        self._run_git(cwd, ["commit", "-m", message])

    def diff_stat(self, cwd: Path) -> str:
        return self._output(cwd, ["diff", "--cached", "--stat"])

    def merge_squash(self, cwd: Path, branch: str, message: str) -> None:
        self._run_git(cwd, ["merge", "--squash", branch])
        if self.has_staged_changes(cwd):
            self.commit(cwd, message)

    def merge_abort(self, cwd: Path) -> None:
        self._run_git(cwd, ["merge", "--abort"])

    def reset_merge(self, cwd: Path) -> None:
        self._run_git(cwd, ["reset", "--merge"])

    def stash_push(self, cwd: Path, message: str) -> bool:
        """Stash tracked and untracked changes; False when there was nothing to stash."""
        if not self.has_changes(cwd):
            return False
        self._run_git(cwd, ["stash", "push", "--include-untracked", "-m", message])
        return True

    def stash_pop(self, cwd: Path, message: str) -> bool:
        output = self._output(cwd, ["stash", "list", "--format=%gd %s"])
        for line in output.splitlines():
            ref, _, subject = line.partition(" ")
            if subject.endswith(message):
                self._run_git(cwd, ["stash", "pop", ref])
                return True
        return False

    # Worktrees

    def worktree_prune(self, cwd: Path) -> None:
        self._run_git(cwd, ["worktree", "prune"])

    def worktree_remove(self, cwd: Path, worktree: Path, force: bool = False) -> None:
        self._run_git(cwd, ["worktree", "remove", *(["--force"] if force else []), str(worktree)])

    def worktree_list(self, cwd: Path) -> list[Worktree]:
        output = self._output(cwd, ["worktree", "list", "--porcelain"])
        worktrees: list[Worktree] = []
        current: dict[str, str] = {}
        for line in [*output.splitlines(), ""]:
            if not line:
                if current.get("path"):
                    worktrees.append(Worktree(**current))
                current = {}
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current["path"] = value
            elif key == "HEAD":
                current["head"] = value
            elif key == "branch":
                current["branch"] = value.removeprefix("refs/heads/")
        return worktrees
