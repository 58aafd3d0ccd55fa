"""Configuration management using TOML + environment variables."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

import tomli_w

CONFIG_DIR = Path.home() / ".tmux-exec"
CONFIG_FILE = CONFIG_DIR / "config.toml"
LOG_FILE = CONFIG_DIR / "tmux-exec.log"


@dataclass
class TmuxConfig:
    socket_name: str = ""
    capture_lines: int = 1000


@dataclass
class EngineConfig:
    # Seconds unless noted otherwise.
    poll_interval: float = 0.3
    detect_interval: float = 0.15
    detect_attempts: int = 50
    settle_delay: float = 0.1
    line_delay: float = 0.05
    capture_backoff: float = 0.5
    default_timeout: float = 300.0
    max_retries: int = 3
    fallback_lines: int = 250
    stale_pending_minutes: int = 5
    fallback_shell: str = "bash"


@dataclass
class StorageConfig:
    db_path: str = "~/.tmux-exec/commands.db"


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    file: str = "~/.tmux-exec/tmux-exec.log"


@dataclass
class AppConfig:
    tmux: TmuxConfig = field(default_factory=TmuxConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def ensure_config_dir() -> None:
    """Create config directory with secure permissions."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    os.chmod(CONFIG_DIR, 0o700)


def _apply_section(target: object, values: dict) -> None:
    for key, value in values.items():
        if hasattr(target, key):
            setattr(target, key, type(getattr(target, key))(value))


def load_config() -> AppConfig:
    """Load configuration from TOML file with env var overrides."""
    config = AppConfig()

    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, "rb") as f:
            data = tomllib.load(f)

        _apply_section(config.tmux, data.get("tmux", {}))
        _apply_section(config.engine, data.get("engine", {}))
        _apply_section(config.storage, data.get("storage", {}))
        _apply_section(config.logging, data.get("logging", {}))

    # Environment variable overrides
    if env_socket := os.environ.get("TMUX_EXEC_SOCKET_NAME"):
        config.tmux.socket_name = env_socket
    if env_lines := os.environ.get("TMUX_EXEC_CAPTURE_LINES"):
        config.tmux.capture_lines = int(env_lines)
    if env_timeout := os.environ.get("TMUX_EXEC_TIMEOUT"):
        config.engine.default_timeout = float(env_timeout)
    if env_poll := os.environ.get("TMUX_EXEC_POLL_INTERVAL"):
        config.engine.poll_interval = float(env_poll)
    if env_retries := os.environ.get("TMUX_EXEC_MAX_RETRIES"):
        config.engine.max_retries = int(env_retries)
    if env_db := os.environ.get("TMUX_EXEC_DB_PATH"):
        config.storage.db_path = env_db
    if env_log_level := os.environ.get("TMUX_EXEC_LOG_LEVEL"):
        config.logging.level = env_log_level

    return config


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML file."""
    ensure_config_dir()

    data = {
        "tmux": {
            "socket_name": config.tmux.socket_name,
            "capture_lines": config.tmux.capture_lines,
        },
        "engine": {
            "poll_interval": config.engine.poll_interval,
            "detect_interval": config.engine.detect_interval,
            "detect_attempts": config.engine.detect_attempts,
            "settle_delay": config.engine.settle_delay,
            "line_delay": config.engine.line_delay,
            "capture_backoff": config.engine.capture_backoff,
            "default_timeout": config.engine.default_timeout,
            "max_retries": config.engine.max_retries,
            "fallback_lines": config.engine.fallback_lines,
            "stale_pending_minutes": config.engine.stale_pending_minutes,
            "fallback_shell": config.engine.fallback_shell,
        },
        "storage": {
            "db_path": config.storage.db_path,
        },
        "logging": {
            "level": config.logging.level,
            "file": config.logging.file,
        },
    }

    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(data, f)

    os.chmod(CONFIG_FILE, 0o600)
