from __future__ import annotations

import logging
from dataclasses import dataclass

from pawctl.codec import Status, WindowRegister, decode, matches, transition
from pawctl.constants import (
    AGENT_PANE_SUFFIX,
    CAPTURE_LINES,
    DISPLAY_MESSAGE_MS,
    NOTIFY_MAX_ACTIONS,
    NOTIFY_MIN_ACTIONS,
    NOTIFY_TIMEOUT_SECONDS,
)
from pawctl.notify import Notifier, Sound
from pawctl.prompts import (
    REASON_MARKER,
    Prompt,
    detect_done,
    detect_wait,
    parse_prompt,
    split_lines,
)
from pawctl.scheduler import Scheduler
from pawctl.tmux import TmuxClient, TmuxError, TmuxTimeoutError, TmuxWindowRegister


@dataclass(slots=True)
class WaitState:
    last_content: str | None = None
    last_prompt_key: str = ""
    notified: bool = False


class WaitMonitor:
    """Polls one worker window and alerts once per distinct prompt."""

    def __init__(
        self,
        tmux: TmuxClient,
        window_id: str,
        task_name: str,
        notifier: Notifier,
        logger: logging.Logger,
        *,
        register: WindowRegister | None = None,
    ) -> None:
        self.tmux = tmux
        self.window_id = window_id
        self.pane_id = f"{window_id}{AGENT_PANE_SUFFIX}"
        self.task_name = task_name
        self.notifier = notifier
        self.logger = logger
        self.register = register or TmuxWindowRegister(tmux, window_id)
        self.state = WaitState()

    def run(self, scheduler: Scheduler) -> int:
        self.logger.info("watching window %s for task %s", self.window_id, self.task_name)
        return scheduler.run(self.tick)

    def tick(self) -> bool:
        """Run one poll; False means the monitor should terminate."""
        try:
            if not self.tmux.has_pane(self.pane_id):
                self.logger.debug("pane %s is gone, stopping", self.pane_id)
                return False
            window_name = self.register.read()
        except TmuxTimeoutError as exc:
            self.logger.warning("tmux did not answer for %s: %s", self.window_id, exc)
            return True
        if window_name is None:
            self.logger.debug("window %s is gone, stopping", self.window_id)
            return False

        decoded = decode(window_name)
        if decoded.is_task_window and not matches(decoded.token, self.task_name):
            self.logger.debug(
                "window %s reassigned to %r, stopping", self.window_id, decoded.token
            )
            return False

        is_final = decoded.status is not None and decoded.status.is_final
        if decoded.status is Status.WAITING:
            if not self.state.notified:
                self._alert("window")
                self.state.notified = True
        else:
            self.state.notified = False
            self.state.last_prompt_key = ""

        try:
            content = self.tmux.capture_pane(self.pane_id, CAPTURE_LINES)
        except TmuxError as exc:
            self.logger.warning("capture failed for %s: %s", self.pane_id, exc)
            return True

        if content == self.state.last_content:
            return True
        self.state.last_content = content

        lines = split_lines(content)
        if is_final:
            return True
        detection = detect_wait(lines)
        if not detection.waiting:
            if detect_done(lines):
                return self._mark(Status.DONE)
            return True

        if not self._mark(Status.WAITING):
            return False

        prompt = parse_prompt(lines)
        if prompt is not None:
            if prompt.key and prompt.key != self.state.last_prompt_key:
                self.state.last_prompt_key = prompt.key
                self.state.notified = True
                choice = self._offer(prompt)
                if choice is not None:
                    self._respond(choice)
        elif not self.state.notified:
            self.logger.debug("wait detected: %s", detection.reason)
            self._alert(detection.reason)
            self.state.notified = True
        return True

    def _mark(self, status: Status) -> bool:
        """Rename the window to ``status``; False only when the window vanished."""
        try:
            transition(self.register, self.task_name, status, self.logger)
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

    def _alert(self, reason: str) -> None:
        self.notifier.send(self.task_name, "Waiting for your response")
        self.notifier.play_sound(Sound.NEED_INPUT)
        message = f"\U0001f4ac {self.task_name} needs input"
        if reason and reason not in ("window", REASON_MARKER):
            message = f"\U0001f4ac {self.task_name}: {reason}"
        try:
            self.tmux.display_message(message, DISPLAY_MESSAGE_MS)
        except TmuxError as exc:
            self.logger.debug("display message failed: %s", exc)

    def _offer(self, prompt: Prompt) -> str | None:
        if not NOTIFY_MIN_ACTIONS <= len(prompt.options) <= NOTIFY_MAX_ACTIONS:
            self.logger.debug("prompt has %d options, sending plain alert", len(prompt.options))
            self._alert("")
            return None
        self.notifier.play_sound(Sound.NEED_INPUT)
        index = self.notifier.send_with_actions(
            self.task_name, prompt.question, list(prompt.options), NOTIFY_TIMEOUT_SECONDS
        )
        if index is None or not 0 <= index < len(prompt.options):
            return None
        return prompt.options[index]

    def _respond(self, choice: str) -> None:
        try:
            self.tmux.send_literal(self.pane_id, choice)
            self.tmux.send_keys(self.pane_id, "Escape")
            self.tmux.send_keys(self.pane_id, "Enter")
        except TmuxError as exc:
            self.logger.warning("failed to send response to %s: %s", self.pane_id, exc)
            return
        self.logger.info("sent prompt response %r", choice)
