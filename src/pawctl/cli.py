from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from pawctl import locks
from pawctl.codec import decode, owns
from pawctl.config import PawConfig, load_config, save_config
from pawctl.constants import (
    AGENT_PANE_SUFFIX,
    CAPTURE_LINES,
    HISTORY_DIR_NAME,
    MERGE_LOCK_MAX_RETRIES,
    MERGE_LOCK_NAME,
    PR_POLL_INTERVAL_SECONDS,
    WAIT_POLL_INTERVAL_SECONDS,
)
from pawctl.git import GitClient
from pawctl.github import GitHubClient
from pawctl.history import HistoryError, build_history_metadata, collect_hook_outputs, save_history
from pawctl.launcher import TaskLauncher
from pawctl.logs import build_logger, close_logger
from pawctl.monitors import PRMonitor, WaitMonitor
from pawctl.notify import DesktopNotifier, Notifier, NullNotifier
from pawctl.reconcile import Reconciler
from pawctl.resolver import ClaudeResolver
from pawctl.scheduler import IntervalScheduler
from pawctl.spawn import ProcessSpawner
from pawctl.sync import SyncError, SyncResult, SyncService
from pawctl.tasks import Task, TaskError, TaskStore
from pawctl.tmux import TmuxClient, TmuxError

DEFAULT_CONFIG = "pawctl.toml"


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: PawConfig
    logger: logging.Logger
    git: GitClient
    github: GitHubClient
    tmux: TmuxClient
    store: TaskStore
    notifier: Notifier
    spawner: ProcessSpawner


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


def _load_runtime(
    project_dir: Path,
    config_path: Path,
    command: str,
    *,
    session: str | None = None,
    task: str | None = None,
) -> Runtime:
    config = load_config(config_path)
    logger = build_logger(
        command, config.logging.level, config.log_path(project_dir), task=task
    )
    git = GitClient()
    store = TaskStore(
        project_dir,
        config.paw_dir(project_dir),
        git,
        logger,
        worktree_mode=config.workspace.worktree,
    )
    notifier: Notifier = NullNotifier()
    if config.notifications.desktop:
        notifier = DesktopNotifier(logger, sound=config.notifications.sound)
    return Runtime(
        project_dir=project_dir,
        config_path=config_path,
        config=config,
        logger=logger,
        git=git,
        github=GitHubClient(),
        tmux=TmuxClient(session or config.session_name(project_dir)),
        store=store,
        notifier=notifier,
        spawner=ProcessSpawner(logger, config_path=config_path),
    )


@contextmanager
def _runtime(
    config_value: str,
    command: str,
    *,
    session: str | None = None,
    task: str | None = None,
) -> Iterator[Runtime]:
    project_dir = Path.cwd().resolve()
    runtime = _load_runtime(
        project_dir,
        _resolve_config_path(project_dir, config_value),
        command,
        session=session,
        task=task,
    )
    try:
        yield runtime
    finally:
        close_logger(runtime.logger)


def _get_task(runtime: Runtime, name: str) -> Task:
    try:
        return runtime.store.get_task(name)
    except TaskError as exc:
        raise click.ClickException(str(exc)) from exc


def _live_window(runtime: Runtime, task: Task) -> str | None:
    """Window id bound to the task, when that window still carries its token."""
    window_id = task.load_window_id()
    if window_id is None:
        return None
    try:
        name = runtime.tmux.window_name(window_id)
    except TmuxError:
        return None
    return window_id if owns(name, task.name) else None


def _sync_service(runtime: Runtime) -> SyncService:
    resolver = None
    if runtime.config.resolver.enabled:
        resolver = ClaudeResolver(
            runtime.logger,
            binary=runtime.config.resolver.binary,
            model=runtime.config.resolver.model,
            timeout_seconds=runtime.config.resolver.timeout_seconds,
        )
    return SyncService(
        runtime.git,
        runtime.store,
        runtime.logger,
        resolver=resolver,
        notifier=runtime.notifier,
        tmux=runtime.tmux,
        remote=runtime.config.git.remote,
        main_branch=runtime.config.git.main_branch,
    )


def _echo_result(result: SyncResult) -> None:
    for line in result.messages:
        click.echo(f"  {line}" if line else "")
    if not result.ok:
        raise click.exceptions.Exit(1)


@click.group()
def cli() -> None:
    """pawctl: task-lifecycle orchestration for agent windows."""


@cli.command("init")
@click.option("--main-branch", default=None, help="Branch tasks are merged into.")
@click.option("--worktree/--no-worktree", default=None, help="Run each task in its own worktree.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(main_branch: str | None, worktree: bool | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    config = load_config(config_path)
    if main_branch is not None:
        config.git.main_branch = main_branch
    if worktree is not None:
        config.workspace.worktree = worktree
    save_config(config_path, config)
    config.paw_dir(project_dir).mkdir(parents=True, exist_ok=True)
    click.echo(f"Wrote {config_path}")


@cli.command("reconcile")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def reconcile_command(config_value: str) -> None:
    with _runtime(config_value, "reconcile") as runtime:
        reconciler = Reconciler(
            runtime.tmux,
            runtime.store,
            runtime.git,
            runtime.github,
            runtime.spawner,
            runtime.logger,
            main_branch=runtime.config.git.main_branch,
            remote=runtime.config.git.remote,
        )
        try:
            report = reconciler.run()
        except locks.LockError as exc:
            raise click.ClickException(str(exc)) from exc

    if report.skipped:
        click.echo("Reconcile already running; skipped.")
        return
    click.echo(f"Closed windows: {len(report.killed_windows)}")
    click.echo(f"Cleaned tasks: {', '.join(report.cleaned_tasks) or '-'}")
    click.echo(f"Reopened tasks: {', '.join(report.reopened_tasks) or '-'}")
    click.echo(f"Resumed tasks: {', '.join(report.resumed_tasks) or '-'}")
    if report.failed_steps:
        click.echo(f"Failed steps: {', '.join(report.failed_steps)}")


@cli.command("status")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(config_value: str) -> None:
    with _runtime(config_value, "status") as runtime:
        payload: list[dict[str, Any]] = []
        for task in runtime.store.list_tasks():
            window_id = _live_window(runtime, task)
            status = None
            if window_id is not None:
                try:
                    decoded = decode(runtime.tmux.window_name(window_id))
                except TmuxError:
                    window_id = None
                else:
                    status = decoded.status.value if decoded.status else None
            reason = runtime.store.diagnose(task)
            payload.append(
                {
                    "task": task.name,
                    "window": window_id,
                    "status": status,
                    "pr": task.load_pr_number(),
                    "health": reason.value if reason else "ok",
                }
            )
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("sync")
@click.argument("task_name")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def sync_command(task_name: str, config_value: str) -> None:
    with _runtime(config_value, "sync", task=task_name) as runtime:
        task = _get_task(runtime, task_name)
        click.echo(f"Syncing task with main: {task.name}")
        try:
            result = _sync_service(runtime).sync_with_main(task)
        except SyncError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@cli.command("merge")
@click.argument("task_name")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def merge_command(task_name: str, config_value: str) -> None:
    with _runtime(config_value, "merge", task=task_name) as runtime:
        task = _get_task(runtime, task_name)
        click.echo(f"Merging task: {task.name}")
        try:
            result = _sync_service(runtime).merge_task(task)
        except (SyncError, locks.LockError) as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_result(result)


@cli.command("cleanup")
@click.argument("task_name")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def cleanup_command(task_name: str, config_value: str) -> None:
    with _runtime(config_value, "cleanup", task=task_name) as runtime:
        task = _get_task(runtime, task_name)
        lock_path = runtime.store.paw_dir / MERGE_LOCK_NAME
        try:
            with locks.held(
                lock_path, f"cleanup {task.name}", runtime.logger, retries=MERGE_LOCK_MAX_RETRIES
            ):
                window_id = _live_window(runtime, task)
                if window_id is not None:
                    runtime.tmux.kill_window(window_id)
                runtime.store.cleanup_task(task)
        except (locks.LockError, TmuxError) as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"Cleaned up task: {task_name}")


@cli.command("history")
@click.argument("task_name")
@click.option("--cancelled", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def history_command(task_name: str, cancelled: bool, config_value: str) -> None:
    with _runtime(config_value, "history", task=task_name) as runtime:
        task = _get_task(runtime, task_name)
        capture = ""
        window_id = _live_window(runtime, task)
        if window_id is not None:
            try:
                capture = runtime.tmux.capture_pane(
                    f"{window_id}{AGENT_PANE_SUFFIX}", CAPTURE_LINES
                )
            except TmuxError as exc:
                runtime.logger.warning("capture failed for %s: %s", window_id, exc)
        meta = build_history_metadata(
            task,
            session_name=runtime.tmux.session,
            project_dir=runtime.project_dir,
            git=runtime.git,
            work_dir=runtime.store.work_dir(task),
            logger=runtime.logger,
        )
        try:
            path = save_history(
                runtime.store.paw_dir / HISTORY_DIR_NAME,
                task.name,
                task.load_content(),
                capture,
                meta,
                collect_hook_outputs(task),
                cancelled=cancelled,
            )
        except HistoryError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"History saved: {path}")


@cli.group("internal")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.pass_context
def internal_group(ctx: click.Context, config_value: str) -> None:
    """Commands run by detached pawctl processes."""
    ctx.obj = config_value


@internal_group.command("watch-wait")
@click.argument("session")
@click.argument("window_id")
@click.argument("task_name")
@click.pass_obj
def watch_wait_command(config_value: str, session: str, window_id: str, task_name: str) -> None:
    with _runtime(config_value, "watch-wait", session=session, task=task_name) as runtime:
        monitor = WaitMonitor(
            runtime.tmux, window_id, task_name, runtime.notifier, runtime.logger
        )
        monitor.run(IntervalScheduler(WAIT_POLL_INTERVAL_SECONDS))


@internal_group.command("watch-pr")
@click.argument("session")
@click.argument("window_id")
@click.argument("task_name")
@click.argument("pr_number", type=int)
@click.pass_obj
def watch_pr_command(
    config_value: str, session: str, window_id: str, task_name: str, pr_number: int
) -> None:
    with _runtime(config_value, "watch-pr", session=session, task=task_name) as runtime:
        monitor = PRMonitor(
            runtime.tmux,
            runtime.github,
            runtime.store,
            window_id,
            task_name,
            pr_number,
            runtime.notifier,
            runtime.logger,
        )
        monitor.run(IntervalScheduler(PR_POLL_INTERVAL_SECONDS))


def _launcher(runtime: Runtime) -> TaskLauncher:
    return TaskLauncher(
        runtime.tmux, runtime.store, runtime.spawner, runtime.notifier, runtime.logger
    )


@internal_group.command("handle-task")
@click.argument("session")
@click.argument("agent_dir", type=click.Path(path_type=Path))
@click.option("--claimed", is_flag=True, default=False)
@click.pass_obj
def handle_task_command(config_value: str, session: str, agent_dir: Path, claimed: bool) -> None:
    with _runtime(config_value, "handle-task", session=session, task=agent_dir.name) as runtime:
        task = _get_task(runtime, agent_dir.name)
        try:
            window_id = _launcher(runtime).open_task_window(task, claimed=claimed)
        except (TmuxError, OSError) as exc:
            # Drop the claim so the next reconcile can retry the launch.
            task.remove_tab_lock()
            runtime.logger.warning("failed to open window for %s: %s", task.name, exc)
            raise click.ClickException(str(exc)) from exc
    if window_id is not None:
        click.echo(window_id)


@internal_group.command("resume-agent")
@click.argument("session")
@click.argument("window_id")
@click.argument("agent_dir", type=click.Path(path_type=Path))
@click.pass_obj
def resume_agent_command(config_value: str, session: str, window_id: str, agent_dir: Path) -> None:
    with _runtime(config_value, "resume-agent", session=session, task=agent_dir.name) as runtime:
        task = _get_task(runtime, agent_dir.name)
        try:
            _launcher(runtime).resume_agent(task, window_id)
        except (TmuxError, OSError) as exc:
            runtime.logger.warning("failed to resume %s: %s", task.name, exc)
            raise click.ClickException(str(exc)) from exc
