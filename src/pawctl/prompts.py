"""Pure detection of worker state from captured terminal lines.

Nothing here touches the terminal: callers capture content and split it into
lines, these functions classify it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from pawctl.constants import (
    ASK_USER_MAX_DISTANCE,
    ASK_USER_QUESTION,
    DONE_MARKER,
    DONE_MARKER_MAX_DISTANCE,
    QUESTION_LOOKBACK_LINES,
    SEGMENT_MARKER,
    UI_HEADER_PREFIXES,
    UI_HINTS,
    UI_MARKERS,
    UI_OPTION_SELECTORS,
    WAIT_MARKER,
    WAIT_MARKER_MAX_DISTANCE,
)

REASON_MARKER = "marker"
REASON_ASK_USER = "AskUserQuestion"
REASON_ASK_USER_UI = "AskUserQuestionUI"
REASON_PROMPT = "prompt"


@dataclass(slots=True, frozen=True)
class WaitDetection:
    waiting: bool
    reason: str = ""


@dataclass(slots=True, frozen=True)
class Prompt:
    question: str
    options: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        if not self.question or not self.options:
            return ""
        return "\n".join([self.question, *self.options])


def split_lines(content: str) -> list[str]:
    return content.split("\n")


def trim_trailing_empty(lines: Sequence[str]) -> list[str]:
    end = len(lines)
    while end > 0 and not lines[end - 1].strip():
        end -= 1
    return list(lines[:end])


def last_segment_start(lines: Sequence[str]) -> int:
    """Index of the last line opening an output segment, or 0 when there is none."""
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip().startswith(SEGMENT_MARKER):
            return index
    return 0


def _matches_marker(line: str, marker: str) -> bool:
    trimmed = line.strip()
    return trimmed == marker or trimmed.endswith(f" {marker}")


def _find_wait_marker(lines: Sequence[str], start: int) -> tuple[int, str]:
    index, reason = -1, ""
    for position in range(start, len(lines)):
        trimmed = lines[position].strip()
        if _matches_marker(trimmed, WAIT_MARKER):
            index, reason = position, REASON_MARKER
        elif trimmed.startswith(ASK_USER_QUESTION):
            index, reason = position, REASON_ASK_USER
    return index, reason


def _find_ui_marker(lines: Sequence[str], start: int) -> int:
    for index in range(len(lines) - 1, start - 1, -1):
        trimmed = lines[index].strip()
        if any(marker in trimmed for marker in UI_MARKERS):
            return index
    return -1


def detect_wait(lines: Sequence[str]) -> WaitDetection:
    lines = trim_trailing_empty(lines)
    if not lines:
        return WaitDetection(False)

    start = last_segment_start(lines)
    last = len(lines) - 1

    index, reason = _find_wait_marker(lines, start)
    if index != -1:
        limit = ASK_USER_MAX_DISTANCE if reason == REASON_ASK_USER else WAIT_MARKER_MAX_DISTANCE
        if last - index <= limit:
            return WaitDetection(True, reason)

    index = _find_ui_marker(lines, start)
    if index != -1 and last - index <= ASK_USER_MAX_DISTANCE:
        return WaitDetection(True, REASON_ASK_USER_UI)

    if lines[last].strip().startswith(">"):
        return WaitDetection(True, REASON_PROMPT)

    return WaitDetection(False)


def detect_done(lines: Sequence[str]) -> bool:
    lines = trim_trailing_empty(lines)
    if not lines:
        return False
    start = max(len(lines) - DONE_MARKER_MAX_DISTANCE, last_segment_start(lines))
    return any(_matches_marker(line, DONE_MARKER) for line in lines[start:])


def _parse_field(line: str, name: str) -> str | None:
    trimmed = line.strip()
    for prefix in (f"{name}:", f"- {name}:"):
        if trimmed.startswith(prefix):
            value = trimmed[len(prefix) :].strip().strip("\"'")
            return value or None
    return None


def parse_tagged_prompt(lines: Sequence[str]) -> Prompt | None:
    """Parse the key-value block printed after the last AskUserQuestion line."""
    start = -1
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip().startswith(ASK_USER_QUESTION):
            start = index
            break
    if start == -1:
        return None

    question = ""
    options: list[str] = []
    for line in lines[start + 1 :]:
        value = _parse_field(line, "question")
        if value is not None:
            if question:
                break
            question = value
            continue
        if not question:
            continue
        label = _parse_field(line, "label")
        if label is not None:
            options.append(label)

    if not question or not options:
        return None
    return Prompt(question=question, options=options)


def parse_option_line(line: str) -> str | None:
    """Return the text of a numbered option line such as ``> 1. Orange``."""
    trimmed = line.strip()
    for selector in UI_OPTION_SELECTORS:
        trimmed = trimmed.removeprefix(selector)
    trimmed = trimmed.strip()
    if len(trimmed) < 3:
        return None
    dot = trimmed.find(".")
    if dot not in (1, 2) or not trimmed[:dot].isdigit():
        return None
    option = trimmed[dot + 1 :].strip()
    return option or None


def _is_header(line: str) -> bool:
    return line.startswith(UI_HEADER_PREFIXES)


def _is_hint(line: str) -> bool:
    lowered = line.lower()
    return any(hint in lowered for hint in UI_HINTS)


def _is_free_text_option(option: str) -> bool:
    lowered = option.lower()
    return "type something" in lowered or "other" in lowered


def parse_rendered_prompt(lines: Sequence[str]) -> Prompt | None:
    """Recover a question and its options from a rendered selection menu."""
    lines = trim_trailing_empty(lines)
    options: list[str] = []
    first_option = -1
    for index, line in enumerate(lines):
        option = parse_option_line(line)
        if option is None or _is_free_text_option(option):
            continue
        options.append(option)
        if first_option == -1:
            first_option = index

    if len(options) < 2 or first_option < 1:
        return None

    question = ""
    floor = max(first_option - QUESTION_LOOKBACK_LINES, 0)
    for index in range(first_option - 1, floor - 1, -1):
        candidate = lines[index].strip()
        if not candidate or _is_header(candidate) or _is_hint(candidate):
            continue
        question = candidate
        break

    if not question:
        return None
    return Prompt(question=question, options=options)


def parse_prompt(lines: Sequence[str]) -> Prompt | None:
    return parse_tagged_prompt(lines) or parse_rendered_prompt(lines)
