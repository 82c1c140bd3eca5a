from __future__ import annotations

import logging
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path


class Spawner(ABC):
    """Launches a detached pawctl subcommand with no return channel."""

    @abstractmethod
    def spawn(self, args: list[str], *, cwd: Path | None = None) -> bool:
        """Start ``pawctl <args>``; return False when the process could not start."""


class ProcessSpawner(Spawner):
    def __init__(
        self,
        logger: logging.Logger,
        *,
        executable: list[str] | None = None,
        config_path: Path | None = None,
    ) -> None:
        self.logger = logger
        self.executable = executable or [sys.executable, "-m", "pawctl"]
        self.config_path = config_path

    def command(self, args: list[str]) -> list[str]:
        command = list(self.executable)
        if self.config_path is not None and args and args[0] == "internal":
            return [*command, "internal", "--config", str(self.config_path), *args[1:]]
        return [*command, *args]

    def spawn(self, args: list[str], *, cwd: Path | None = None) -> bool:
        command = self.command(args)
        try:
            subprocess.Popen(
                command,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            self.logger.warning("failed to spawn %s: %s", " ".join(args), exc)
            return False
        self.logger.debug("spawned %s", " ".join(command))
        return True
