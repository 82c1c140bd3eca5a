from __future__ import annotations

import logging
import shlex
from pathlib import Path

from pawctl.codec import Status, encode
from pawctl.constants import AGENT_PANE_SUFFIX, DISPLAY_MESSAGE_MS, START_SCRIPT_NAME
from pawctl.notify import Notifier, Sound
from pawctl.spawn import Spawner
from pawctl.tasks import Task, TaskStore
from pawctl.tmux import TmuxClient, TmuxError

START_SCRIPT = """#!/bin/sh
# Generated by pawctl for task {task}
export TASK_NAME={task_q}
export PAW_DIR={paw_dir_q}
export PROJECT_DIR={project_dir_q}
export WINDOW_ID={window_q}
export SESSION_NAME={session_q}
exec {agent}
"""

AGENT_FRESH = "claude --dangerously-skip-permissions"
AGENT_RESUME = "claude --continue --dangerously-skip-permissions"


class TaskLauncher:
    """Opens task windows and restarts stopped agents inside their existing window."""

    def __init__(
        self,
        tmux: TmuxClient,
        store: TaskStore,
        spawner: Spawner,
        notifier: Notifier,
        logger: logging.Logger,
    ) -> None:
        self.tmux = tmux
        self.store = store
        self.spawner = spawner
        self.notifier = notifier
        self.logger = logger

    def write_start_script(self, task: Task, window_id: str, *, resume: bool) -> Path:
        script = task.agent_dir / START_SCRIPT_NAME
        prompt_arg = ""
        if not resume and task.content_path.exists():
            prompt_arg = f' "$(cat {shlex.quote(str(task.content_path))})"'
        script.write_text(
            START_SCRIPT.format(
                task=task.name,
                task_q=shlex.quote(task.name),
                paw_dir_q=shlex.quote(str(self.store.paw_dir)),
                project_dir_q=shlex.quote(str(self.store.project_dir)),
                window_q=shlex.quote(window_id),
                session_q=shlex.quote(self.tmux.session),
                agent=(AGENT_RESUME if resume else AGENT_FRESH) + prompt_arg,
            ),
            encoding="utf-8",
        )
        script.chmod(0o755)
        return script

    def _start_watchers(self, task: Task, window_id: str) -> None:
        cwd = self.store.project_dir
        self.spawner.spawn(
            ["internal", "watch-wait", self.tmux.session, window_id, task.name], cwd=cwd
        )
        pr_number = task.load_pr_number()
        if pr_number is not None:
            self.spawner.spawn(
                ["internal", "watch-pr", self.tmux.session, window_id, task.name, str(pr_number)],
                cwd=cwd,
            )

    def open_task_window(self, task: Task, *, claimed: bool = False) -> str | None:
        """Create the task's window; None when another process already owns the binding."""
        if not claimed and not task.create_tab_lock():
            self.logger.info("task %s already has a window binding", task.name)
            return None

        work_dir = self.store.work_dir(task)
        window_id = self.tmux.new_window(
            encode(task.name, Status.WORKING), start_dir=str(work_dir)
        )
        task.save_window_id(window_id)
        script = self.write_start_script(task, window_id, resume=False)
        self.tmux.respawn_pane(
            f"{window_id}{AGENT_PANE_SUFFIX}", start_dir=str(work_dir), command=str(script)
        )
        task.write_session_marker()
        self._start_watchers(task, window_id)

        self.notifier.play_sound(Sound.TASK_CREATED)
        self.logger.info("opened window %s for task %s", window_id, task.name)
        return window_id

    def resume_agent(self, task: Task, window_id: str) -> None:
        work_dir = self.store.work_dir(task)
        script = self.write_start_script(task, window_id, resume=True)
        self.tmux.respawn_pane(
            f"{window_id}{AGENT_PANE_SUFFIX}", start_dir=str(work_dir), command=str(script)
        )
        task.write_session_marker()
        self._start_watchers(task, window_id)

        self.notifier.play_sound(Sound.TASK_CREATED)
        self.notifier.send("Session resumed", f"{task.name} resumed")
        try:
            self.tmux.display_message(f"Session resumed: {task.name}", DISPLAY_MESSAGE_MS)
        except TmuxError as exc:
            self.logger.debug("display message failed: %s", exc)
        self.logger.info("resumed agent for task %s in window %s", task.name, window_id)
