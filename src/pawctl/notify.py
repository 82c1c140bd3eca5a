from __future__ import annotations

import logging
import platform
import shutil
import subprocess
from abc import ABC, abstractmethod
from enum import Enum


class Sound(str, Enum):
    TASK_CREATED = "Glass"
    TASK_COMPLETED = "Hero"
    NEED_INPUT = "Funk"
    ERROR = "Basso"


class Notifier(ABC):
    @abstractmethod
    def send(self, title: str, message: str) -> None:
        """Deliver a plain titled message to every configured channel."""

    @abstractmethod
    def send_with_actions(
        self, title: str, message: str, actions: list[str], timeout: int
    ) -> int | None:
        """Offer up to five actions; return the chosen index or None."""

    @abstractmethod
    def play_sound(self, sound: Sound) -> None:
        """Play a named alert sound."""


class NullNotifier(Notifier):
    def send(self, title: str, message: str) -> None:
        return None

    def send_with_actions(
        self, title: str, message: str, actions: list[str], timeout: int
    ) -> int | None:
        return None

    def play_sound(self, sound: Sound) -> None:
        return None


class DesktopNotifier(Notifier):
    """Best-effort desktop notifications; delivery failures are logged, never raised."""

    def __init__(self, logger: logging.Logger, *, sound: bool = True) -> None:
        self.logger = logger
        self.sound_enabled = sound
        self.system = platform.system()

    def _spawn(self, command: list[str]) -> None:
        try:
            subprocess.Popen(
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            self.logger.debug("notification command failed: %s (%s)", command[0], exc)

    def send(self, title: str, message: str) -> None:
        if self.system == "Darwin" and shutil.which("osascript"):
            script = f"display notification {_quote(message)} with title {_quote(title)}"
            self._spawn(["osascript", "-e", script])
        elif shutil.which("notify-send"):
            self._spawn(["notify-send", title, message])
        else:
            self.logger.debug("no desktop notifier available for %r", title)

    def send_with_actions(
        self, title: str, message: str, actions: list[str], timeout: int
    ) -> int | None:
        # Plain desktop channels cannot return a choice.
        self.send(title, message)
        return None

    def play_sound(self, sound: Sound) -> None:
        if not self.sound_enabled:
            return
        if self.system == "Darwin" and shutil.which("afplay"):
            self._spawn(["afplay", f"/System/Library/Sounds/{sound.value}.aiff"])
        elif shutil.which("paplay"):
            self._spawn(["paplay", "/usr/share/sounds/freedesktop/stereo/complete.oga"])


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
