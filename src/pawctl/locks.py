from __future__ import annotations

import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from pawctl.constants import MERGE_LOCK_MAX_RETRIES, MERGE_LOCK_RETRY_INTERVAL_SECONDS


class LockError(RuntimeError):
    """Raised when a lock file cannot be created or inspected."""


class LockHeldError(LockError):
    """Raised when a live process already holds the lock."""

    def __init__(self, path: Path, label: str | None = None, pid: int | None = None) -> None:
        holder = f" by {label!r} (pid {pid})" if label or pid else ""
        super().__init__(f"Lock {path} is held{holder}.")
        self.path = path
        self.label = label
        self.pid = pid


@dataclass(slots=True, frozen=True)
class LockHandle:
    path: Path
    label: str
    pid: int


def _read_lock(path: Path) -> tuple[str, int | None] | None:
    """Return (label, pid) or None when the file is unreadable."""
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return None
    lines = content.splitlines()
    label = lines[0] if lines else ""
    if len(lines) < 2:
        return label, None
    try:
        return label, int(lines[1].strip())
    except ValueError:
        return label, None


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


def is_stale(path: Path) -> bool:
    """A lock is stale when malformed, its PID is unparsable, or its holder is dead.

    An unreadable or missing file is not stale: there is nothing to reclaim.
    """
    if not path.exists():
        return False
    parsed = _read_lock(path)
    if parsed is None:
        return False
    _, pid = parsed
    if pid is None:
        return True
    return not process_alive(pid)


def _create(path: Path, label: str) -> LockHandle:
    """Publish a fully written lock file; FileExistsError when one is already there."""
    pid = os.getpid()
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{label}\n{pid}\n")
        os.link(temp_name, path)
    finally:
        Path(temp_name).unlink(missing_ok=True)
    return LockHandle(path=path, label=label, pid=pid)


def reclaim(path: Path, logger: logging.Logger | None = None) -> bool:
    """Remove a stale lock; True when it was removed.

    The file is renamed aside before it is judged, so a lock another process
    published after our staleness check is never deleted.
    """
    if not is_stale(path):
        return False
    aside = path.with_name(f".{path.name}.stale.{os.getpid()}.{time.monotonic_ns()}")
    try:
        os.rename(path, aside)
    except FileNotFoundError:
        return False
    try:
        if is_stale(aside):
            if logger is not None:
                logger.info("reclaimed stale lock %s (holder=%r)", path, _read_lock(aside))
            return True
        try:
            os.link(aside, path)
        except FileExistsError:
            if logger is not None:
                logger.warning("lock %s was replaced while being reclaimed", path)
        return False
    finally:
        aside.unlink(missing_ok=True)


def acquire(path: Path, label: str, logger: logging.Logger | None = None) -> LockHandle:
    """Take the lock once, reclaiming it first when stale.

    Raises LockHeldError when a live holder owns it; never blocks.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        reclaim(path, logger)
        return _create(path, label)
    except FileExistsError as exc:
        parsed = _read_lock(path)
        holder_label, holder_pid = parsed if parsed else (None, None)
        raise LockHeldError(path, holder_label, holder_pid) from exc
    except OSError as exc:
        raise LockError(f"Failed to create lock {path}: {exc}") from exc


def acquire_with_retry(
    path: Path,
    label: str,
    logger: logging.Logger | None = None,
    *,
    retries: int = MERGE_LOCK_MAX_RETRIES,
    interval: float = MERGE_LOCK_RETRY_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> LockHandle:
    attempt = 0
    while True:
        try:
            return acquire(path, label, logger)
        except LockHeldError as exc:
            attempt += 1
            if attempt >= retries:
                raise
            if logger is not None:
                logger.debug(
                    "lock %s busy (holder=%r pid=%s), retry %d/%d",
                    path,
                    exc.label,
                    exc.pid,
                    attempt,
                    retries,
                )
            sleep(interval)


def release(handle: LockHandle) -> None:
    """Remove the lock only while it still records this holder."""
    parsed = _read_lock(handle.path)
    if parsed is None:
        return
    _, pid = parsed
    if pid is not None and pid != handle.pid:
        return
    try:
        handle.path.unlink()
    except FileNotFoundError:
        pass


@contextmanager
def held(
    path: Path,
    label: str,
    logger: logging.Logger | None = None,
    *,
    retries: int = 1,
    interval: float = MERGE_LOCK_RETRY_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[LockHandle]:
    handle = acquire_with_retry(
        path, label, logger, retries=retries, interval=interval, sleep=sleep
    )
    try:
        yield handle
    finally:
        release(handle)
