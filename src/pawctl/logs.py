from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def build_logger(
    name: str,
    level: str | int = logging.INFO,
    log_file: Path | None = None,
    *,
    task: str | None = None,
) -> logging.Logger:
    """Create the logger owned by one command invocation.

    The logger does not propagate to the root logger, so detached monitors
    never write into a terminal they do not own.
    """
    logger_name = f"pawctl.{name}" if task is None else f"pawctl.{name}.{task}"
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    close_logger(logger)

    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.NullHandler()
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def close_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
