from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitHubError(RuntimeError):
    """Raised when the gh CLI cannot report pull-request state."""


@dataclass(slots=True, frozen=True)
class PullRequestStatus:
    number: int
    state: str
    merged: bool

    @property
    def closed_unmerged(self) -> bool:
        return self.state == "closed" and not self.merged

    @property
    def open(self) -> bool:
        return self.state == "open"


class GitHubClient:
    def __init__(self, binary: str = "gh", timeout: float = 30.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    def pr_status(self, cwd: Path, number: int) -> PullRequestStatus:
        try:
            proc = subprocess.run(
                [self.binary, "pr", "view", str(number), "--json", "state,mergedAt"],
                cwd=cwd,
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitHubError(f"gh pr view {number} timed out") from exc
        except FileNotFoundError as exc:
            raise GitHubError(f"gh binary not found: {self.binary}") from exc
        if proc.returncode != 0:
            raise GitHubError(proc.stderr.strip() or f"gh pr view {number} failed")
        try:
            payload = json.loads(proc.stdout)
        except json.JSONDecodeError as exc:
            raise GitHubError(f"Unexpected gh output for PR {number}") from exc
        state = str(payload.get("state", "")).lower()
        merged = state == "merged" or bool(payload.get("mergedAt"))
        return PullRequestStatus(number=number, state=state, merged=merged)

    def is_merged(self, cwd: Path, number: int) -> bool:
        return self.pr_status(cwd, number).merged
