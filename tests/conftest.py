"""Shared test fixtures."""

from __future__ import annotations

import os
import re

import pytest
import pytest_asyncio

from tmux_exec.config import AppConfig, EngineConfig, LoggingConfig, StorageConfig, TmuxConfig
from tmux_exec.exceptions import TerminalError
from tmux_exec.services.terminal import PaneInfo
from tmux_exec.storage.database import CommandStore

MARKER_RE = re.compile(r"TMX[SE]_\d+_[0-9a-f]{8}")
PROBE_RE = re.compile(r"PROBE_ID=([0-9a-f]+)")


class FakeTerminal:
    """Scripted stand-in for a tmux pane running an interactive shell.

    Typed lines are echoed to the screen as ``$ <line>``. Marker halves
    written with ``split_literal`` are joined back together the way a shell
    would, and the shell's reaction is appended below the echo.
    """

    def __init__(
        self,
        shell: str | None = "bash",
        cwd: str = "/home/user",
        output: str = "hello",
        exit_code: int = 0,
        finish: bool = True,
    ) -> None:
        self.shell = shell
        self.cwd = cwd
        self.output = output
        self.exit_code = exit_code
        self.finish = finish
        self.screen: list[str] = []
        self.sent: list[str] = []
        self.interrupts = 0
        self.fail_sends = 0
        self.fail_capture = False
        self._block_start: str | None = None
        self._block_end: str | None = None

    def send_text(self, pane_id: str, text: str) -> None:
        if self.fail_sends:
            self.fail_sends -= 1
            raise TerminalError(pane_id, "send-keys failed")
        self.sent.append(text)
        self.screen.append(f"$ {text}")
        self._react(text.replace('""', ""))

    def send_enter(self, pane_id: str) -> None:
        pass

    def send_interrupt(self, pane_id: str) -> None:
        self.interrupts += 1
        self.screen.append("^C")

    def capture_buffer(self, pane_id: str, max_lines: int) -> str:
        if self.fail_capture:
            raise TerminalError(pane_id, "capture-pane failed")
        return "\n".join(self.screen[-max_lines:])

    def list_panes(self) -> list[PaneInfo]:
        return [PaneInfo(pane_id="%1", session_name="main", active=True, current_command=self.shell or "")]

    def _react(self, line: str) -> None:
        probe = PROBE_RE.search(line)
        if probe:
            self._answer_probe(line, probe.group(1))
            return

        markers = MARKER_RE.findall(line)
        if "__tx_hook()" in line:
            self._block_end = next(m for m in markers if m.startswith("TMXE"))
            return
        if line.startswith('echo "TMXS') and len(markers) == 1:
            self._block_start = markers[0]
            return
        if line == "}" and self._block_start and self._block_end:
            self._emit(self._block_start, self._block_end, on_next_line=True)
            self._block_start = self._block_end = None
            return
        if len(markers) == 2:
            start, end = sorted(markers, key=lambda m: not m.startswith("TMXS"))
            self._emit(start, end, on_next_line=False)

    def _answer_probe(self, line: str, nonce: str) -> None:
        is_fish_probe = line.startswith("if set -q FISH_VERSION")
        if self.shell is None:
            return
        if (self.shell == "fish") != is_fish_probe:
            if not is_fish_probe:
                self.screen.append("fish: Unsupported use of '='.")
            return
        self.screen.extend(
            [
                f"PROBE_ID={nonce}",
                f"SHELL_TYPE={self.shell}",
                f"PWD_PATH={self.cwd}",
                "SYSTEM_INFO=Linux testhost 6.1.0 x86_64",
            ]
        )

    def _emit(self, start: str, end: str, on_next_line: bool) -> None:
        self.screen.append(start)
        if self.output:
            self.screen.extend(self.output.split("\n"))
        if not self.finish:
            return
        if on_next_line:
            exit_line = f"exit_code: {self.exit_code}"
            if self.shell == "sh":
                # The PS1 hook output loses its last newline, so the prompt follows it.
                exit_line += "$ "
            self.screen.extend([end, exit_line])
        else:
            self.screen.append(f"{end} {self.exit_code}")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep TMUX_EXEC_* variables from the developer shell out of the tests."""
    for name in [n for n in os.environ if n.startswith("TMUX_EXEC_")]:
        monkeypatch.delenv(name)


@pytest.fixture
def app_config(tmp_path):
    """Create a test configuration with short engine delays."""
    return AppConfig(
        tmux=TmuxConfig(socket_name="tmux-exec-test", capture_lines=500),
        engine=EngineConfig(
            poll_interval=0.01,
            detect_interval=0.01,
            detect_attempts=3,
            settle_delay=0,
            line_delay=0,
            capture_backoff=0.01,
            default_timeout=2.0,
            max_retries=2,
        ),
        storage=StorageConfig(db_path=str(tmp_path / "test.db")),
        logging=LoggingConfig(level="DEBUG", file=str(tmp_path / "test.log")),
    )


@pytest.fixture
def terminal():
    return FakeTerminal()


@pytest_asyncio.fixture
async def store(app_config):
    command_store = CommandStore(app_config.storage.db_path)
    await command_store.init()
    yield command_store
    await command_store.close()
