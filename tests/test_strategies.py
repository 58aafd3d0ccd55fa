"""Tests for shell strategies."""

from __future__ import annotations

import pytest

from tmux_exec.services.markers import Markers
from tmux_exec.services.scanner import parse_detection, scan_completion
from tmux_exec.services.strategies import (
    PROBE_ORDER,
    BashStrategy,
    FishStrategy,
    ShStrategy,
    ZshStrategy,
    get_strategy,
    is_multiline,
)
from tmux_exec.storage.models import ShellType

MARKERS = Markers(start="TMXS_1700000000000_0a1b2c3d", end="TMXE_1700000000000_0a1b2c3d")


def _joined(line: str) -> str:
    """What the shell makes of adjacent quoted halves."""
    return line.replace('""', "")


class TestGetStrategy:
    @pytest.mark.parametrize(
        "shell, expected",
        [
            (ShellType.BASH, BashStrategy),
            (ShellType.ZSH, ZshStrategy),
            (ShellType.FISH, FishStrategy),
            (ShellType.SH, ShStrategy),
            (ShellType.UNKNOWN, ShStrategy),
            ("zsh", ZshStrategy),
            (None, ShStrategy),
        ],
    )
    def test_lookup(self, shell, expected):
        assert isinstance(get_strategy(shell), expected)

    def test_probe_order(self):
        assert [s.shell_type for s in PROBE_ORDER] == [ShellType.BASH, ShellType.FISH]


class TestIsMultiline:
    def test_single(self):
        assert not is_multiline("ls -la")

    def test_trailing_newline_is_single(self):
        assert not is_multiline("ls -la\n")

    def test_block(self):
        assert is_multiline("cd /tmp\nls")


class TestWrapSingle:
    def test_markers_not_verbatim(self):
        line = get_strategy(ShellType.BASH).wrap_single("ls -la", MARKERS)
        assert MARKERS.start not in line
        assert MARKERS.end not in line
        assert _joined(line) == f'echo "{MARKERS.start}"; ls -la; echo "{MARKERS.end} $?"'

    def test_trailing_semicolon(self):
        line = get_strategy(ShellType.ZSH).wrap_single("make build;  ", MARKERS)
        assert "make build; echo" in line
        assert ";;" not in line

    def test_trailing_background_operator(self):
        line = _joined(get_strategy(ShellType.BASH).wrap_single("sleep 10 &", MARKERS))
        assert "&;" not in line
        assert f'sleep 10 & echo "{MARKERS.end} $?"' in line

    def test_trailing_and_list_keeps_separator(self):
        line = _joined(get_strategy(ShellType.BASH).wrap_single("make && make test", MARKERS))
        assert f'make && make test; echo "{MARKERS.end} $?"' in line

    def test_fish_status_variable(self):
        line = get_strategy(ShellType.FISH).wrap_single("ls", MARKERS)
        assert _joined(line).endswith(f'echo "{MARKERS.end} $status"')

    def test_echo_of_typed_line_does_not_complete(self):
        line = get_strategy(ShellType.BASH).wrap_single("sleep 10", MARKERS)
        buffer = f"$ {line}\n"
        assert not scan_completion(buffer, MARKERS.start, MARKERS.end).complete


class TestSubmission:
    def test_single_line_has_no_trap(self):
        for shell in (ShellType.BASH, ShellType.ZSH, ShellType.SH, ShellType.FISH):
            lines = get_strategy(shell).submission("pwd", MARKERS)
            assert len(lines) == 1

    def test_bash_block(self):
        lines = get_strategy(ShellType.BASH).submission("cd /tmp\nls", MARKERS)
        trap, *block = lines
        assert "PROMPT_COMMAND" in trap
        assert "history 1" in trap
        assert MARKERS.end not in trap
        assert MARKERS.end in _joined(trap)
        assert block == ["{", f'echo "{MARKERS.start}"', "cd /tmp", "ls", "}"]

    def test_zsh_block(self):
        trap, *block = get_strategy(ShellType.ZSH).submission("a\nb", MARKERS)
        assert "precmd_functions" in trap
        assert "fc -ln -1" in trap
        assert block[0] == "{"
        assert block[-1] == "}"

    def test_sh_block_touches_sentinel(self):
        strategy = get_strategy(ShellType.SH)
        trap, *block = strategy.submission("a\nb", MARKERS)
        assert "trap '" in trap and "EXIT" in trap
        assert "PS1=" in trap
        assert block[0] == 'touch "$__tx_file"; {'
        assert strategy.needs_cleanup_after

    def test_fish_block_echoes_end_inline(self):
        trap, *block = get_strategy(ShellType.FISH).submission("a\nb", MARKERS)
        assert "--on-event fish_exit" in trap
        assert block[0] == "begin"
        assert block[2:4] == ["a", "b"]
        assert _joined(block[-1]).startswith(f'end; echo "{MARKERS.end} $status"')
        assert block[-1].endswith("functions -e __tx_exit")


class TestCleanup:
    def test_bash_removes_only_own_hook(self):
        script = get_strategy(ShellType.BASH).cleanup_script()
        assert "${PROMPT_COMMAND//__tx_hook;/}" in script
        assert "unset -f __tx_hook" in script

    def test_zsh_removes_only_own_hook(self):
        script = get_strategy(ShellType.ZSH).cleanup_script()
        assert "${precmd_functions:#__tx_hook}" in script

    def test_sh_restores_prompt(self):
        script = get_strategy(ShellType.SH).cleanup_script()
        assert 'PS1="$__tx_ps1"' in script
        assert "trap - EXIT" in script

    def test_trap_starts_clean(self):
        for shell in (ShellType.BASH, ShellType.ZSH, ShellType.SH, ShellType.FISH):
            strategy = get_strategy(shell)
            trap = strategy.trap_script(MARKERS.start, MARKERS.end)
            assert trap.startswith(strategy.cleanup_script())


class TestDetectionProbe:
    def test_probe_tags_are_split(self):
        probe = get_strategy(ShellType.BASH).detection_probe("abc123")
        assert "SHELL_TYPE=" not in probe
        assert "PROBE_ID=abc123" not in probe
        assert "PROBE_ID=abc123" in _joined(probe)

    def test_echo_of_probe_is_not_a_detection(self):
        probe = get_strategy(ShellType.BASH).detection_probe("abc123")
        assert parse_detection(f"$ {probe}\n", nonce="abc123") is None
        assert parse_detection(f"$ {probe}\n") is None

    def test_probe_guards_each_shell_once(self):
        probe = _joined(get_strategy(ShellType.BASH).detection_probe("n"))
        for name in ("bash", "zsh", "sh", "unknown"):
            assert probe.count(f'SHELL_TYPE={name}"') == 1
        assert probe.count("elif") == 2

    def test_fish_probe(self):
        probe = get_strategy(ShellType.FISH).detection_probe("n")
        assert probe.startswith("if set -q FISH_VERSION;")
        assert probe.endswith("end")
        assert 'SHELL_TYPE=fish"' in _joined(probe)
