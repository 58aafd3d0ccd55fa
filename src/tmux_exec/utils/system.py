"""Process-level setup helpers."""

from __future__ import annotations

import logging
from pathlib import Path

from tmux_exec.config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: LoggingConfig, console: bool = True) -> None:
    """Configure root logging from the ``[logging]`` config section."""
    handlers: list[logging.Handler] = []
    if config.file:
        log_path = Path(config.file).expanduser().resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_path)))
    if console:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
