import logging
import os
import subprocess
import sys
from pathlib import Path

import pytest

from pawctl import locks
from pawctl.locks import LockHandle, LockHeldError

LOGGER = logging.getLogger("pawctl.test.locks")


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _write_lock(path: Path, label: str, pid: object) -> None:
    path.write_text(f"{label}\n{pid}\n", encoding="utf-8")


def test_missing_lock_is_not_stale(tmp_path: Path) -> None:
    assert locks.is_stale(tmp_path / "merge.lock") is False


def test_lock_held_by_live_process_is_not_stale(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:other", os.getpid())

    assert locks.is_stale(path) is False


def test_lock_held_by_dead_process_is_stale(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:other", _dead_pid())

    assert locks.is_stale(path) is True


@pytest.mark.parametrize("content", ["", "merge:other\n", "merge:other\nnot-a-pid\n"])
def test_malformed_lock_is_stale(tmp_path: Path, content: str) -> None:
    path = tmp_path / "merge.lock"
    path.write_text(content, encoding="utf-8")

    assert locks.is_stale(path) is True


def test_acquire_writes_label_and_pid(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "merge.lock"

    handle = locks.acquire(path, "merge:login", LOGGER)

    assert handle == LockHandle(path=path, label="merge:login", pid=os.getpid())
    assert path.read_text(encoding="utf-8") == f"merge:login\n{os.getpid()}\n"


def test_acquire_refuses_live_holder(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:other", os.getpid())

    with pytest.raises(LockHeldError) as excinfo:
        locks.acquire(path, "merge:login", LOGGER)

    assert excinfo.value.label == "merge:other"
    assert excinfo.value.pid == os.getpid()
    assert path.read_text(encoding="utf-8").startswith("merge:other\n")


def test_acquire_reclaims_stale_lock(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:crashed", _dead_pid())

    handle = locks.acquire(path, "merge:login", LOGGER)

    assert handle.label == "merge:login"
    assert path.read_text(encoding="utf-8").startswith("merge:login\n")


def test_release_only_removes_own_lock(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    handle = locks.acquire(path, "merge:login")

    foreign = LockHandle(path=path, label="merge:login", pid=os.getpid() + 100000)
    locks.release(foreign)
    assert path.exists()

    locks.release(handle)
    assert not path.exists()

    locks.release(handle)


def test_acquire_with_retry_waits_between_attempts(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:other", os.getpid())
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            path.unlink()

    handle = locks.acquire_with_retry(
        path, "merge:login", LOGGER, retries=5, interval=0.25, sleep=fake_sleep
    )

    assert handle.label == "merge:login"
    assert sleeps == [0.25, 0.25]


def test_acquire_with_retry_gives_up_after_retries(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:other", os.getpid())
    sleeps: list[float] = []

    with pytest.raises(LockHeldError):
        locks.acquire_with_retry(path, "merge:login", retries=3, interval=1.0, sleep=sleeps.append)

    assert sleeps == [1.0, 1.0]


def test_held_releases_on_exit(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"

    with locks.held(path, "cleanup:login") as handle:
        assert handle.path == path
        assert path.exists()

    assert not path.exists()


def test_acquire_publishes_complete_file_and_leaves_no_temp_files(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "merge.lock"
    published: list[str] = []
    real_link = os.link

    def recording_link(src: str, dst: Path) -> None:
        published.append(Path(src).read_text(encoding="utf-8"))
        real_link(src, dst)

    monkeypatch.setattr(os, "link", recording_link)

    locks.acquire(path, "merge:login", LOGGER)
    with pytest.raises(LockHeldError):
        locks.acquire(path, "merge:other", LOGGER)

    assert published[0] == f"merge:login\n{os.getpid()}\n"
    assert [entry.name for entry in tmp_path.iterdir()] == ["merge.lock"]


def test_reclaim_keeps_lock_that_was_replaced_by_a_live_holder(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:fresh", os.getpid())
    real_is_stale = locks.is_stale
    checks: list[Path] = []

    def stale_at_first_look(candidate: Path) -> bool:
        checks.append(candidate)
        return True if len(checks) == 1 else real_is_stale(candidate)

    monkeypatch.setattr(locks, "is_stale", stale_at_first_look)

    assert locks.reclaim(path, LOGGER) is False
    assert path.read_text(encoding="utf-8") == f"merge:fresh\n{os.getpid()}\n"
    assert [entry.name for entry in tmp_path.iterdir()] == ["merge.lock"]


def test_reclaim_removes_lock_of_dead_holder(tmp_path: Path) -> None:
    path = tmp_path / "merge.lock"
    _write_lock(path, "merge:crashed", _dead_pid())

    assert locks.reclaim(path, LOGGER) is True
    assert list(tmp_path.iterdir()) == []
    assert locks.reclaim(path, LOGGER) is False
