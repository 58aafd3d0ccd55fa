"""Exceptions raised by tmux-exec."""

from __future__ import annotations


class TmuxExecError(Exception):
    """Base exception for all tmux-exec errors."""


class TerminalError(TmuxExecError):
    """Raised when the terminal multiplexer rejects a send or capture."""

    def __init__(self, pane_id: str, message: str) -> None:
        self.pane_id = pane_id
        super().__init__(f"{pane_id}: {message}")


class StoreError(TmuxExecError):
    """Raised when the command store is used before it is initialized."""
