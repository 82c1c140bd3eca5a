from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pawctl.constants import HOOK_NAMES
from pawctl.git import GitClient, GitError
from pawctl.tasks import Task, write_atomic

HISTORY_TIMESTAMP_FORMAT = "%y%m%d_%H%M%S"


class HistoryError(RuntimeError):
    """Raised when a history record cannot be written."""


@dataclass(slots=True)
class CommitMetadata:
    hash: str = ""
    branch: str = ""


@dataclass(slots=True)
class VerificationMetadata:
    command: str = ""
    success: bool = False
    exit_code: int = 0
    duration_ms: int = 0
    output_file: str = ""


@dataclass(slots=True)
class HookMetadata:
    name: str = ""
    command: str = ""
    status: str = ""
    exit_code: int = 0
    duration_ms: int = 0
    output_file: str = ""


@dataclass(slots=True)
class HistoryMetadata:
    task_name: str = ""
    session_name: str = ""
    project_dir: str = ""
    commit: CommitMetadata | None = None
    verification: VerificationMetadata | None = None
    hooks: list[HookMetadata] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""
    duration_seconds: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # Empty fields are left out of the record; "success" always stays.
        return _prune(data)


def _prune(value: Any) -> Any:
    if isinstance(value, dict):
        pruned = {key: _prune(item) for key, item in value.items()}
        return {
            key: item
            for key, item in pruned.items()
            if key == "success" or item not in ("", 0, None, [], {})
        }
    if isinstance(value, list):
        return [_prune(item) for item in value]
    return value


def _load_record(path: Path, cls: type, logger: logging.Logger) -> Any | None:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("skipping malformed metadata %s: %s", path, exc)
        return None
    if not isinstance(raw, dict):
        logger.debug("skipping metadata %s: not a JSON object", path)
        return None
    known = {item.name for item in fields(cls)}
    try:
        return cls(**{key: value for key, value in raw.items() if key in known})
    except TypeError as exc:
        logger.debug("skipping metadata %s: %s", path, exc)
        return None


def load_hook_metadata(task: Task, logger: logging.Logger) -> list[HookMetadata]:
    hooks: list[HookMetadata] = []
    for name in HOOK_NAMES:
        record = _load_record(task.hook_meta_path(name), HookMetadata, logger)
        if record is not None:
            if not record.name:
                record.name = name
            hooks.append(record)
    return hooks


def load_verification(task: Task, logger: logging.Logger) -> VerificationMetadata | None:
    return _load_record(task.verify_meta_path, VerificationMetadata, logger)


def collect_hook_outputs(task: Task) -> dict[str, str]:
    outputs: dict[str, str] = {}
    for name in HOOK_NAMES:
        try:
            text = task.hook_output_path(name).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            continue
        if text.strip():
            outputs[name] = text
    if task.verify_output_path.exists():
        text = task.verify_output_path.read_text(encoding="utf-8", errors="replace")
        if text.strip():
            outputs["verify"] = text
    return outputs


def build_history_metadata(
    task: Task,
    *,
    session_name: str,
    project_dir: Path,
    git: GitClient,
    work_dir: Path,
    logger: logging.Logger,
    finished_at: datetime | None = None,
) -> HistoryMetadata:
    finished = (finished_at or datetime.now(UTC)).replace(microsecond=0)
    meta = HistoryMetadata(
        task_name=task.name,
        session_name=session_name,
        project_dir=str(project_dir),
        hooks=load_hook_metadata(task, logger),
        verification=load_verification(task, logger),
        finished_at=finished.isoformat(),
    )

    started = task.read_session_marker()
    if started is not None:
        meta.started_at = started.isoformat()
        meta.duration_seconds = max(0, int((finished - started).total_seconds()))

    if git.is_repo(work_dir):
        try:
            meta.commit = CommitMetadata(
                hash=git.head_commit(work_dir), branch=git.current_branch(work_dir)
            )
        except GitError as exc:
            logger.debug("commit metadata unavailable for %s: %s", task.name, exc)
    return meta


def history_file_name(task_name: str, at: datetime, cancelled: bool = False) -> str:
    name = f"{at.strftime(HISTORY_TIMESTAMP_FORMAT)}_{task_name}"
    return f"{name}.cancelled" if cancelled else name


def render_history(
    content: str,
    capture: str,
    meta: HistoryMetadata | None = None,
    hook_outputs: dict[str, str] | None = None,
) -> str:
    parts: list[str] = []
    if meta is not None:
        parts.append("---meta---\n")
        parts.append(json.dumps(meta.to_dict(), indent=2, ensure_ascii=False) + "\n")
        parts.append("---task---\n")
    if content:
        parts.append(content.rstrip("\n") + "\n")
    parts.append("---capture---\n")
    parts.append(capture)
    if hook_outputs:
        parts.append("\n---hooks---\n")
        for name in sorted(hook_outputs):
            output = hook_outputs[name]
            parts.append(f"## {name}\n")
            parts.append(output if output.endswith("\n") else f"{output}\n")
    return "".join(parts)


def save_history(
    history_dir: Path,
    task_name: str,
    content: str,
    capture: str,
    meta: HistoryMetadata | None = None,
    hook_outputs: dict[str, str] | None = None,
    *,
    cancelled: bool = False,
    now: datetime | None = None,
) -> Path:
    if not capture.strip():
        raise HistoryError(f"Nothing captured for task {task_name}")
    at = now or datetime.now()
    path = history_dir / history_file_name(task_name, at, cancelled)
    write_atomic(path, render_history(content, capture, meta, hook_outputs))
    return path
