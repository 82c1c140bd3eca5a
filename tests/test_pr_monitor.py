import logging
from pathlib import Path

from pawctl.codec import Status, encode
from pawctl.git import GitClient
from pawctl.github import GitHubClient, GitHubError, PullRequestStatus
from pawctl.monitors import PRMonitor
from pawctl.notify import Notifier, Sound
from pawctl.scheduler import BoundedScheduler
from pawctl.tasks import TaskStore
from pawctl.tmux import TmuxClient, TmuxError, TmuxTimeoutError

LOGGER = logging.getLogger("pawctl.test.pr")


class FakeTmux(TmuxClient):
    def __init__(self) -> None:
        super().__init__("demo")
        self.names: dict[str, str] = {}
        self.killed: list[str] = []

    def window_name(self, window_id: str) -> str:
        if window_id not in self.names:
            raise TmuxError(f"can't find window: {window_id}")
        return self.names[window_id]

    def rename_window(self, window_id: str, name: str) -> None:
        self.names[window_id] = name

    def kill_window(self, window_id: str) -> None:
        self.killed.append(window_id)
        self.names.pop(window_id, None)


class FakeGitHub(GitHubClient):
    def __init__(self, *results: PullRequestStatus | Exception, installed: bool = True) -> None:
        super().__init__()
        self.results = list(results)
        self.installed = installed
        self.calls = 0

    def is_installed(self) -> bool:
        return self.installed

    def pr_status(self, cwd: Path, number: int) -> PullRequestStatus:
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.sounds: list[Sound] = []

    def send(self, title: str, message: str) -> None:
        self.sent.append((title, message))

    def send_with_actions(
        self, title: str, message: str, actions: list[str], timeout: int
    ) -> int | None:
        return None

    def play_sound(self, sound: Sound) -> None:
        self.sounds.append(sound)


def _store(tmp_path: Path, *task_names: str) -> TaskStore:
    store = TaskStore(tmp_path, tmp_path / ".paw", GitClient(), LOGGER)
    for name in task_names:
        (store.agents_dir / name).mkdir(parents=True)
    return store


def _monitor(
    tmp_path: Path, github: FakeGitHub, status: Status = Status.WORKING
) -> tuple[PRMonitor, FakeTmux, TaskStore, RecordingNotifier]:
    tmux = FakeTmux()
    tmux.names["@3"] = encode("add-metrics", status)
    store = _store(tmp_path, "add-metrics")
    notifier = RecordingNotifier()
    monitor = PRMonitor(tmux, github, store, "@3", "add-metrics", 42, notifier, LOGGER)
    return monitor, tmux, store, notifier


def test_merged_pr_cleans_up_task_and_window(tmp_path: Path) -> None:
    github = FakeGitHub(PullRequestStatus(42, "merged", True))
    monitor, tmux, store, notifier = _monitor(tmp_path, github)

    assert monitor.run(BoundedScheduler(5)) == 1

    assert tmux.killed == ["@3"]
    assert not (store.agents_dir / "add-metrics").exists()
    assert notifier.sounds == [Sound.TASK_COMPLETED]
    assert notifier.sent == [("PR merged", "✅ add-metrics merged and cleaned up")]


def test_closed_pr_marks_warning_even_from_done(tmp_path: Path) -> None:
    github = FakeGitHub(PullRequestStatus(42, "closed", False))
    monitor, tmux, store, _ = _monitor(tmp_path, github, Status.DONE)

    assert monitor.tick() is False

    assert tmux.names["@3"] == encode("add-metrics", Status.WARNING)
    assert (store.agents_dir / "add-metrics").exists()


def test_open_pr_moves_waiting_or_done_window_to_review(tmp_path: Path) -> None:
    github = FakeGitHub(PullRequestStatus(42, "open", False))
    monitor, tmux, _, _ = _monitor(tmp_path, github, Status.DONE)

    assert monitor.tick() is True
    assert tmux.names["@3"] == encode("add-metrics", Status.REVIEW)


def test_open_pr_leaves_working_window_alone(tmp_path: Path) -> None:
    github = FakeGitHub(PullRequestStatus(42, "open", False))
    monitor, tmux, _, _ = _monitor(tmp_path, github, Status.WORKING)

    assert monitor.tick() is True
    assert tmux.names["@3"] == encode("add-metrics", Status.WORKING)


def test_lookup_failure_keeps_polling(tmp_path: Path) -> None:
    github = FakeGitHub(
        GitHubError("rate limited"),
        PullRequestStatus(42, "open", False),
        PullRequestStatus(42, "merged", True),
    )
    monitor, tmux, _, _ = _monitor(tmp_path, github)

    assert monitor.run(BoundedScheduler(10)) == 3
    assert tmux.killed == ["@3"]


def test_monitor_stops_when_window_belongs_to_another_task(tmp_path: Path) -> None:
    github = FakeGitHub(PullRequestStatus(42, "merged", True))
    monitor, tmux, store, _ = _monitor(tmp_path, github)
    tmux.names["@3"] = encode("fix-typo", Status.WORKING)

    assert monitor.tick() is False
    assert github.calls == 0
    assert tmux.killed == []
    assert (store.agents_dir / "add-metrics").exists()


def test_monitor_exits_without_gh(tmp_path: Path) -> None:
    github = FakeGitHub(installed=False)
    monitor, _, _, _ = _monitor(tmp_path, github)

    assert monitor.run(BoundedScheduler(5)) == 0


class RenameFailingTmux(FakeTmux):
    def __init__(self, *, vanish: bool) -> None:
        super().__init__()
        self.vanish = vanish

    def rename_window(self, window_id: str, name: str) -> None:
        if self.vanish:
            self.names.pop(window_id, None)
        raise TmuxError(f"can't find window: {window_id}")


def _failing_monitor(
    tmp_path: Path, github: FakeGitHub, *, vanish: bool
) -> tuple[PRMonitor, RenameFailingTmux]:
    tmux = RenameFailingTmux(vanish=vanish)
    tmux.names["@3"] = encode("add-metrics", Status.DONE)
    store = _store(tmp_path, "add-metrics")
    monitor = PRMonitor(
        tmux, github, store, "@3", "add-metrics", 42, RecordingNotifier(), LOGGER
    )
    return monitor, tmux


def test_review_rename_failure_keeps_polling_live_window(tmp_path: Path) -> None:
    github = FakeGitHub(PullRequestStatus(42, "open", False), PullRequestStatus(42, "open", False))
    monitor, tmux = _failing_monitor(tmp_path, github, vanish=False)

    assert monitor.run(BoundedScheduler(2)) == 2
    assert tmux.names["@3"] == encode("add-metrics", Status.DONE)


def test_review_rename_failure_on_vanished_window_stops(tmp_path: Path) -> None:
    github = FakeGitHub(PullRequestStatus(42, "open", False))
    monitor, tmux = _failing_monitor(tmp_path, github, vanish=True)

    assert monitor.tick() is False
    assert "@3" not in tmux.names


def test_window_lookup_timeout_keeps_polling(tmp_path: Path) -> None:
    class SlowTmux(FakeTmux):
        def window_name(self, window_id: str) -> str:
            raise TmuxTimeoutError("tmux display-message timed out after 10s")

    github = FakeGitHub()
    store = _store(tmp_path, "add-metrics")
    monitor = PRMonitor(
        SlowTmux(), github, store, "@3", "add-metrics", 42, RecordingNotifier(), LOGGER
    )

    assert monitor.tick() is True
    assert github.calls == 0
