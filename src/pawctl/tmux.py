from __future__ import annotations

import subprocess
from dataclasses import dataclass

from pawctl.codec import WindowRegister
from pawctl.constants import TMUX_COMMAND_TIMEOUT_SECONDS, TMUX_SOCKET_PREFIX


class TmuxError(RuntimeError):
    """Raised when a tmux command fails or times out."""


class TmuxTimeoutError(TmuxError):
    """The tmux server did not answer in time; the target may still exist."""


@dataclass(slots=True, frozen=True)
class Window:
    id: str
    index: int
    name: str
    active: bool


_WINDOW_FORMAT = "#{window_id}|#{window_index}|#{window_name}|#{window_active}"


class TmuxClient:
    def __init__(
        self,
        session: str,
        *,
        binary: str = "tmux",
        timeout: float = TMUX_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.session = session
        self.socket = f"{TMUX_SOCKET_PREFIX}{session}"
        self.binary = binary
        self.timeout = timeout

    def _run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                [self.binary, "-L", self.socket, *args],
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TmuxTimeoutError(f"tmux {args[0]} timed out after {self.timeout:.0f}s") from exc
        except FileNotFoundError as exc:
            raise TmuxError(f"tmux binary not found: {self.binary}") from exc
        if check and proc.returncode != 0:
            raise TmuxError(proc.stderr.strip() or proc.stdout.strip() or f"tmux {args[0]} failed")
        return proc

    def _output(self, args: list[str]) -> str:
        return self._run(args).stdout.strip()

    def has_pane(self, target: str) -> bool:
        try:
            self._output(["display-message", "-t", target, "-p", "#{pane_id}"])
        except TmuxTimeoutError:
            raise
        except TmuxError:
            return False
        return True

    def window_name(self, window_id: str) -> str:
        return self._output(["display-message", "-t", window_id, "-p", "#{window_name}"])

    def list_windows(self) -> list[Window]:
        output = self._output(["list-windows", "-t", self.session, "-F", _WINDOW_FORMAT])
        windows: list[Window] = []
        for line in output.splitlines():
            parts = line.split("|", 3)
            if len(parts) != 4:
                continue
            window_id, index, name, active = parts
            try:
                position = int(index)
            except ValueError:
                continue
            windows.append(Window(id=window_id, index=position, name=name, active=active == "1"))
        return windows

    def new_window(
        self,
        name: str,
        *,
        start_dir: str | None = None,
        command: str | None = None,
        detached: bool = True,
    ) -> str:
        args = ["new-window", "-P", "-F", "#{window_id}", "-t", f"{self.session}:", "-n", name]
        if start_dir:
            args += ["-c", start_dir]
        if detached:
            args.append("-d")
        if command:
            args.append(command)
        return self._output(args)

    def kill_window(self, window_id: str) -> None:
        self._run(["kill-window", "-t", window_id])

    def rename_window(self, window_id: str, name: str) -> None:
        self._run(["rename-window", "-t", window_id, name])

    def capture_pane(self, target: str, lines: int) -> str:
        args = ["capture-pane", "-t", target, "-p"]
        if lines > 0:
            args += ["-S", f"-{lines}"]
        return self._output(args)

    def send_keys(self, target: str, *keys: str) -> None:
        self._run(["send-keys", "-t", target, *keys])

    def send_literal(self, target: str, text: str) -> None:
        self._run(["send-keys", "-t", target, "-l", text])

    def pane_command(self, target: str) -> str:
        return self._output(["display-message", "-t", target, "-p", "#{pane_current_command}"])

    def respawn_pane(
        self, target: str, *, start_dir: str | None = None, command: str | None = None
    ) -> None:
        args = ["respawn-pane", "-k", "-t", target]
        if start_dir:
            args += ["-c", start_dir]
        if command:
            args.append(command)
        self._run(args)

    def display_message(self, message: str, duration_ms: int) -> None:
        self._run(["display-message", "-d", str(duration_ms), message])

    def get_option(self, key: str, *, window_id: str | None = None) -> str | None:
        args = ["show-option", "-qv"]
        args += ["-w", "-t", window_id] if window_id else ["-g"]
        value = self._run([*args, key], check=False)
        if value.returncode != 0:
            return None
        return value.stdout.strip() or None

    def set_option(self, key: str, value: str, *, window_id: str | None = None) -> None:
        args = ["set-option"]
        args += ["-w", "-t", window_id] if window_id else ["-g"]
        self._run([*args, key, value])


class TmuxWindowRegister(WindowRegister):
    def __init__(self, client: TmuxClient, window_id: str) -> None:
        self.client = client
        self.window_id = window_id

    def read(self) -> str | None:
        try:
            return self.client.window_name(self.window_id)
        except TmuxTimeoutError:
            raise
        except TmuxError:
            return None

    def write(self, display_name: str) -> None:
        self.client.rename_window(self.window_id, display_name)
