from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from pawctl.constants import TOKEN_LENGTH


class Precedence(int, Enum):
    IDLE = 0
    ACTIVE = 1
    WAITING = 2
    FINAL = 3


class Status(str, Enum):
    NEW = "new"
    WORKING = "working"
    WAITING = "waiting"
    REVIEW = "review"
    DONE = "done"
    WARNING = "warning"

    @property
    def glyph(self) -> str:
        return GLYPHS[self]

    @property
    def precedence(self) -> Precedence:
        return PRECEDENCE[self]

    @property
    def is_final(self) -> bool:
        return self.precedence is Precedence.FINAL


GLYPHS: dict[Status, str] = {
    Status.NEW: "\u2b50\ufe0f",
    Status.WORKING: "\U0001f916",
    Status.WAITING: "\U0001f4ac",
    Status.REVIEW: "\U0001f440",
    Status.DONE: "\u2705",
    Status.WARNING: "\u26a0\ufe0f",
}

PRECEDENCE: dict[Status, Precedence] = {
    Status.NEW: Precedence.IDLE,
    Status.WORKING: Precedence.ACTIVE,
    Status.REVIEW: Precedence.ACTIVE,
    Status.WAITING: Precedence.WAITING,
    Status.DONE: Precedence.FINAL,
    Status.WARNING: Precedence.FINAL,
}

# Prefixes tried longest first. Terminals that drop the variation selector on
# rename still decode to the same status.
_PREFIXES = list(GLYPHS.items()) + [
    (status, glyph.removesuffix("\ufe0f"))
    for status, glyph in GLYPHS.items()
    if glyph.endswith("\ufe0f")
]
_DECODE_ORDER = sorted(_PREFIXES, key=lambda item: len(item[1]), reverse=True)


@dataclass(slots=True, frozen=True)
class DecodedName:
    status: Status | None
    token: str
    is_task_window: bool


def truncate(task_name: str, limit: int = TOKEN_LENGTH) -> str:
    return task_name[:limit]


def encode(task_name: str, status: Status) -> str:
    return f"{status.glyph}{truncate(task_name)}"


def decode(display_name: str) -> DecodedName:
    for status, glyph in _DECODE_ORDER:
        if display_name.startswith(glyph):
            token = display_name[len(glyph) :]
            return DecodedName(status=status, token=token, is_task_window=status is not Status.NEW)
    return DecodedName(status=None, token="", is_task_window=False)


def matches(token: str, task_name: str) -> bool:
    """Single authorization check for acting on a window believed to belong to a task."""
    return token == truncate(task_name)


def owns(display_name: str, task_name: str) -> bool:
    decoded = decode(display_name)
    return decoded.is_task_window and matches(decoded.token, task_name)


class WindowRegister(ABC):
    """A window display name used as a cross-process register."""

    @abstractmethod
    def read(self) -> str | None:
        """Return the current display name, or None when the window no longer exists."""

    @abstractmethod
    def write(self, display_name: str) -> None:
        """Overwrite the display name."""


def transition(
    register: WindowRegister,
    task_name: str,
    status: Status,
    logger: logging.Logger,
    *,
    from_final: bool = False,
) -> bool:
    """Rename a task window under the ownership guards.

    Returns True when the register was written. A guard that does not hold is
    reported as False, never raised: another process already owns the change.
    """
    current = register.read()
    if current is None:
        logger.debug("transition skipped: window gone task=%s target=%s", task_name, status.value)
        return False

    decoded = decode(current)
    if not decoded.is_task_window:
        logger.debug("transition skipped: %r is not a task window", current)
        return False
    if not matches(decoded.token, task_name):
        logger.debug(
            "transition skipped: token %r does not match task %s", decoded.token, task_name
        )
        return False
    if decoded.status is not None and decoded.status.is_final and not from_final:
        logger.debug(
            "transition skipped: task %s already %s", task_name, decoded.status.value
        )
        return False

    target = encode(task_name, status)
    if current == target:
        return False
    register.write(target)
    logger.debug("window renamed task=%s from=%r to=%r", task_name, current, target)
    return True
