"""Terminal session port and its tmux implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol, TypeVar

import libtmux
from libtmux import exc as tmux_exc

from tmux_exec.config import TmuxConfig
from tmux_exec.exceptions import TerminalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PaneInfo:
    pane_id: str
    session_name: str = ""
    window_name: str = ""
    window_index: str = ""
    active: bool = False
    current_command: str = ""


class TerminalPort(Protocol):
    """What the executor needs from a terminal multiplexer.

    Calls are synchronous; the executor runs them in worker threads.
    """

    def send_text(self, pane_id: str, text: str) -> None: ...

    def send_enter(self, pane_id: str) -> None: ...

    def send_interrupt(self, pane_id: str) -> None: ...

    def capture_buffer(self, pane_id: str, max_lines: int) -> str: ...

    def list_panes(self) -> list[PaneInfo]: ...


class TmuxTerminal:
    """TerminalPort backed by a tmux server through libtmux."""

    def __init__(self, config: TmuxConfig, server: libtmux.Server | None = None) -> None:
        self.config = config
        if server is None:
            server = libtmux.Server(socket_name=config.socket_name or None)
        self.server = server
        self._panes: dict[str, libtmux.Pane] = {}

    def _pane(self, pane_id: str) -> libtmux.Pane:
        pane = self._panes.get(pane_id)
        if pane is None:
            try:
                pane = libtmux.Pane.from_pane_id(server=self.server, pane_id=pane_id)
            except (tmux_exc.LibTmuxException, tmux_exc.TmuxObjectDoesNotExist) as e:
                raise TerminalError(pane_id, f"pane not found ({e})") from e
            self._panes[pane_id] = pane
        return pane

    def _run(self, pane_id: str, action: str, call: Callable[[libtmux.Pane], T]) -> T:
        pane = self._pane(pane_id)
        try:
            return call(pane)
        except (tmux_exc.LibTmuxException, tmux_exc.TmuxObjectDoesNotExist) as e:
            # Drop the cached handle; the pane may have been respawned.
            self._panes.pop(pane_id, None)
            raise TerminalError(pane_id, f"{action} failed ({e})") from e

    def send_text(self, pane_id: str, text: str) -> None:
        logger.debug("send_text %s: %r", pane_id, text[:200])
        self._run(pane_id, "send-keys", lambda p: p.send_keys(text, enter=False, literal=True))

    def send_enter(self, pane_id: str) -> None:
        self._run(pane_id, "send-keys", lambda p: p.enter())

    def send_interrupt(self, pane_id: str) -> None:
        logger.debug("send_interrupt %s", pane_id)
        self._run(pane_id, "send-keys", lambda p: p.send_keys("C-c", enter=False))

    def capture_buffer(self, pane_id: str, max_lines: int) -> str:
        # Joined so a marker split across wrapped rows stays on one line.
        lines = self._run(
            pane_id, "capture-pane", lambda p: p.capture_pane(start=-max_lines, join_wrapped=True)
        )
        return "\n".join(lines)

    def list_panes(self) -> list[PaneInfo]:
        try:
            panes = list(self.server.panes)
        except tmux_exc.LibTmuxException as e:
            raise TerminalError("*", f"cannot list panes ({e})") from e
        return [
            PaneInfo(
                pane_id=pane.pane_id or "",
                session_name=pane.session_name or "",
                window_name=pane.window_name or "",
                window_index=pane.window_index or "",
                active=pane.pane_active == "1",
                current_command=pane.pane_current_command or "",
            )
            for pane in panes
        ]
