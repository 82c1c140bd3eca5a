from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from pawctl.constants import RESOLVER_TIMEOUT_SECONDS


class ResolverError(RuntimeError):
    """Raised when the delegate resolver cannot finish its run."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.retriable = retriable


class ResolverTimeoutError(ResolverError):
    """Raised when the delegate exceeds its deadline and is killed."""


class ResolverProcessError(ResolverError):
    """Raised when the delegate process cannot start or exits non-zero."""


class ConflictResolver(ABC):
    @abstractmethod
    async def resolve(self, prompt: str, cwd: Path) -> None:
        """Run the delegate against cwd; return only when it exited cleanly."""


class ClaudeResolver(ConflictResolver):
    def __init__(
        self,
        logger: logging.Logger,
        *,
        binary: str = "claude",
        model: str = "opus",
        timeout_seconds: float = RESOLVER_TIMEOUT_SECONDS,
    ) -> None:
        self.logger = logger
        self.binary = binary
        self.model = model
        self.timeout_seconds = timeout_seconds

    def build_command(self) -> list[str]:
        return [self.binary, "-p", "--model", self.model, "--dangerously-skip-permissions"]

    async def resolve(self, prompt: str, cwd: Path) -> None:
        command = self.build_command()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ResolverProcessError(f"Resolver binary not found: {self.binary}") from exc

        self.logger.info("delegate resolver started pid=%s cwd=%s", process.pid, cwd)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ResolverTimeoutError(
                f"Resolver timed out after {self.timeout_seconds:.0f}s", retriable=True
            ) from exc

        if stdout:
            self.logger.debug("resolver output:\n%s", stdout.decode("utf-8", errors="replace"))
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
            raise ResolverProcessError(
                f"Resolver failed with exit code {process.returncode}: {detail}",
                exit_code=process.returncode,
            )


def build_conflict_prompt(task_name: str, task_content: str, conflict_files: list[str]) -> str:
    files = "\n".join(f"  - {name}" for name in conflict_files)
    return f"""You are resolving merge conflicts in a git repository.

## Conflicting Files
{files}

## Task Context
Task name: {task_name}
Task description:
{task_content}

## Instructions
1. Read every conflicting file listed above.
2. Find the conflict markers (<<<<<<<, =======, >>>>>>>).
3. Resolve each conflict, keeping the code that serves the task.
4. Save every resolved file.
5. When all conflicts are resolved, run: git add -A

Do not abort, and do not skip any file. Prefer merging both sides when unsure.
"""


def build_merge_failure_prompt(
    project_dir: Path,
    task_name: str,
    task_content: str,
    branch: str,
    target: str,
    status: str,
) -> str:
    return f"""A git merge has failed and needs to be completed or cleanly aborted.

## Current Situation
- Project directory: {project_dir}
- Task branch: {branch}
- Target branch: {target}

## Task Context
Task name: {task_name}
Task description:
{task_content}

## Current Git Status
{status}

## Instructions
1. Work out from the status above what went wrong.
2. Look for conflict markers (<<<<<<<, =======, >>>>>>>) and resolve them.
3. Stage resolved files with: git add -A
4. Either commit the merge or abort it; never leave it half done.
5. Finish with a clean working tree.

Prefer completing the merge over aborting it.
"""
