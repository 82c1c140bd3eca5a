import logging
import subprocess

import pytest

from pawctl import notify
from pawctl.notify import DesktopNotifier, Sound

LOGGER = logging.getLogger("pawctl.test.notify")


@pytest.fixture()
def spawned(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    commands: list[list[str]] = []

    def fake_popen(command: list[str], **kwargs: object) -> None:
        commands.append(command)

    monkeypatch.setattr(subprocess, "Popen", fake_popen)
    return commands


def _linux_notifier(monkeypatch: pytest.MonkeyPatch, available: set[str], **kwargs: bool):
    monkeypatch.setattr(notify.shutil, "which", lambda name: name if name in available else None)
    notifier = DesktopNotifier(LOGGER, **kwargs)
    notifier.system = "Linux"
    return notifier


def test_send_uses_notify_send(monkeypatch: pytest.MonkeyPatch, spawned: list[list[str]]) -> None:
    notifier = _linux_notifier(monkeypatch, {"notify-send"})

    notifier.send("login", "Waiting for your response")

    assert spawned == [["notify-send", "login", "Waiting for your response"]]


def test_actions_degrade_to_plain_message(
    monkeypatch: pytest.MonkeyPatch, spawned: list[list[str]]
) -> None:
    notifier = _linux_notifier(monkeypatch, {"notify-send"})

    choice = notifier.send_with_actions("login", "Pick one", ["Yes", "No"], 30)

    assert choice is None
    assert spawned == [["notify-send", "login", "Pick one"]]


def test_missing_tools_are_silent(
    monkeypatch: pytest.MonkeyPatch, spawned: list[list[str]]
) -> None:
    notifier = _linux_notifier(monkeypatch, set())

    notifier.send("login", "hello")
    notifier.play_sound(Sound.NEED_INPUT)

    assert spawned == []


def test_sound_can_be_disabled(monkeypatch: pytest.MonkeyPatch, spawned: list[list[str]]) -> None:
    notifier = _linux_notifier(monkeypatch, {"paplay"}, sound=False)

    notifier.play_sound(Sound.TASK_COMPLETED)

    assert spawned == []


def test_popen_failure_is_logged_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_popen(command: list[str], **kwargs: object) -> None:
        raise OSError("exec format error")

    monkeypatch.setattr(subprocess, "Popen", broken_popen)
    notifier = _linux_notifier(monkeypatch, {"notify-send"})

    notifier.send("login", "hello")
