import logging
import tomllib
from pathlib import Path

from pawctl import __version__
from pawctl.config import PawConfig, dumps_toml, load_config, save_config
from pawctl.logs import build_logger, close_logger


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "pawctl.toml"
    config = PawConfig.default()
    config.workspace.session = "demo"
    config.workspace.worktree = False
    config.git.main_branch = "trunk"
    config.git.remote = "upstream"
    config.resolver.enabled = False
    config.resolver.model = "sonnet"
    config.resolver.timeout_seconds = 90.5
    config.notifications.sound = False
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.workspace.session == "demo"
    assert loaded.workspace.worktree is False
    assert loaded.workspace.paw_dir == ".paw"
    assert loaded.git.main_branch == "trunk"
    assert loaded.git.remote == "upstream"
    assert loaded.resolver.enabled is False
    assert loaded.resolver.model == "sonnet"
    assert loaded.resolver.timeout_seconds == 90.5
    assert loaded.notifications.sound is False
    assert loaded.notifications.desktop is True
    assert loaded.logging.level == "DEBUG"


def test_toml_dump_keeps_float_timeouts() -> None:
    rendered = dumps_toml(PawConfig.default())

    assert "[workspace]" in rendered
    assert "[resolver]" in rendered
    assert "timeout_seconds = 600.0" in rendered
    assert 'binary = "claude"' in rendered
    assert isinstance(tomllib.loads(rendered)["resolver"]["timeout_seconds"], float)


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config == PawConfig.default()


def test_paths_resolve_against_project(tmp_path: Path) -> None:
    config = PawConfig.default()
    project = tmp_path / "my-project"
    project.mkdir()

    assert config.paw_dir(project) == project / ".paw"
    assert config.log_path(project) == project / ".paw" / "log"
    assert config.session_name(project) == "my-project"

    config.workspace.paw_dir = str(tmp_path / "state")
    config.workspace.session = "custom"
    assert config.paw_dir(project) == tmp_path / "state"
    assert config.session_name(project) == "custom"


def test_logger_writes_to_file_without_propagating(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "pawctl.log"
    logger = build_logger("watch-wait", "DEBUG", log_file, task="login")

    logger.debug("polling %s", "@1")
    close_logger(logger)

    assert logger.name == "pawctl.watch-wait.login"
    assert logger.propagate is False
    assert logger.level == logging.DEBUG
    assert "[DEBUG] pawctl.watch-wait.login: polling @1" in log_file.read_text(encoding="utf-8")


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
