from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class WorkspaceConfig:
    paw_dir: str = ".paw"
    session: str = ""
    worktree: bool = True


@dataclass(slots=True)
class GitConfig:
    main_branch: str = ""
    remote: str = "origin"


@dataclass(slots=True)
class ResolverConfig:
    enabled: bool = True
    binary: str = "claude"
    model: str = "opus"
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class NotificationsConfig:
    desktop: bool = True
    sound: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"
    file: str = "log"


@dataclass(slots=True)
class PawConfig:
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    git: GitConfig = field(default_factory=GitConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PawConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PawConfig:
        return cls(
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            git=GitConfig(**data.get("git", {})),
            resolver=ResolverConfig(**data.get("resolver", {})),
            notifications=NotificationsConfig(**data.get("notifications", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "workspace": {
                "paw_dir": self.workspace.paw_dir,
                "session": self.workspace.session,
                "worktree": self.workspace.worktree,
            },
            "git": {
                "main_branch": self.git.main_branch,
                "remote": self.git.remote,
            },
            "resolver": {
                "enabled": self.resolver.enabled,
                "binary": self.resolver.binary,
                "model": self.resolver.model,
                "timeout_seconds": self.resolver.timeout_seconds,
            },
            "notifications": {
                "desktop": self.notifications.desktop,
                "sound": self.notifications.sound,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }

    def paw_dir(self, project_dir: Path) -> Path:
        path = Path(self.workspace.paw_dir)
        return path if path.is_absolute() else project_dir / path

    def session_name(self, project_dir: Path) -> str:
        return self.workspace.session or project_dir.resolve().name

    def log_path(self, project_dir: Path) -> Path:
        path = Path(self.logging.file)
        return path if path.is_absolute() else self.paw_dir(project_dir) / path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        # Keep floats as floats on reload.
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PawConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["workspace", "git", "resolver", "notifications", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PawConfig:
    if not path.exists():
        return PawConfig.default()
    return PawConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PawConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
