"""Wiring of config, tmux, store and executor."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from tmux_exec.config import AppConfig, load_config
from tmux_exec.services.executor import CommandExecutor
from tmux_exec.services.terminal import TerminalPort, TmuxTerminal
from tmux_exec.storage.database import CommandStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_executor(
    config: AppConfig | None = None,
    terminal: TerminalPort | None = None,
) -> AsyncIterator[CommandExecutor]:
    """Yield a ready executor; on exit, stop background commands and close the store."""
    if config is None:
        config = load_config()
    if terminal is None:
        terminal = TmuxTerminal(config.tmux)

    store = CommandStore(config.storage.db_path)
    await store.init()
    executor = CommandExecutor(config, terminal, store)
    logger.info("Executor ready (store: %s)", config.storage.db_path)
    try:
        yield executor
    finally:
        logger.info("Shutting down executor...")
        await executor.shutdown()
        await store.close()
