"""Shell strategies: detection probes, completion traps and command wrapping.

Every script here is typed into a live interactive shell, so each one is a
single line and refers to markers through ``split_literal``. That keeps the
echo of the typed line on screen from looking like the script's output.
The one exception is the start marker inside a multi-line block for hook
shells: the prompt hook recognizes the block by finding that marker in the
shell history, so it has to appear verbatim there.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from tmux_exec.services.markers import Markers, split_literal
from tmux_exec.storage.models import ShellType

HOOK = "__tx_hook"
CLEANUP = "__tx_cleanup"
DONE = "__tx_done"
SENTINEL = "__tx_file"
SAVED_PS1 = "__tx_ps1"
EXIT_HANDLER = "__tx_exit"

PROBE_TAG = "PROBE_ID"
SHELL_TAG = "SHELL_TYPE"
PWD_TAG = "PWD_PATH"
SYSTEM_TAG = "SYSTEM_INFO"


def _tag(tag: str, value: str = "") -> str:
    return split_literal(f"{tag}={value}")


def is_multiline(command: str) -> bool:
    return "\n" in command.strip("\n")


class ShellStrategy(ABC):
    """How to probe, trap and wrap commands for one shell family."""

    shell_type: ShellType
    status_variable = "$?"
    # Prompt-hook shells emit the end marker from the trap after a block.
    uses_prompt_hook = True
    # Whether the engine sends ``cleanup_script`` once a block completes.
    needs_cleanup_after = False

    def detection_probe(self, nonce: str) -> str:
        """POSIX probe; prints each tag once thanks to the if/elif/else guard."""
        return (
            f"echo {_tag(PROBE_TAG, nonce)}; "
            f'if [ -n "$BASH_VERSION" ]; then echo {_tag(SHELL_TAG, "bash")}; '
            f'elif [ -n "$ZSH_VERSION" ]; then echo {_tag(SHELL_TAG, "zsh")}; '
            f'elif [ -n "$PS1" ] || [ "${{0##*/}}" = "sh" ] || [ "$0" = "-sh" ]; '
            f'then echo {_tag(SHELL_TAG, "sh")}; '
            f'else echo {_tag(SHELL_TAG, "unknown")}; fi; '
            f'echo {_tag(PWD_TAG)}"$(pwd)"; '
            "if command -v uname >/dev/null 2>&1; "
            f'then echo {_tag(SYSTEM_TAG)}"$(uname -a 2>/dev/null)"; '
            f'else echo {_tag(SYSTEM_TAG, "unavailable")}; fi'
        )

    @abstractmethod
    def trap_script(self, start_marker: str, end_marker: str) -> str:
        """Install a one-shot hook printing the end marker and exit code."""

    @abstractmethod
    def cleanup_script(self) -> str:
        """Remove everything ``trap_script`` installed. Safe to run twice."""

    def command_prefix(self) -> str:
        return ""

    def wrap_single(self, command: str, markers: Markers) -> str:
        body = command.strip().rstrip(";").rstrip()
        # "cmd &; next" is a syntax error; a trailing "&" already ends the statement.
        separator = " " if body.endswith("&") and not body.endswith("&&") else "; "
        return (
            f"echo {split_literal(markers.start)}; {body}{separator}"
            f'echo {split_literal(markers.end)}" {self.status_variable}"'
        )

    def wrap_block(self, command: str, markers: Markers) -> list[str]:
        body = command.strip("\n").splitlines()
        return [
            f"{self.command_prefix()}{{",
            f'echo "{markers.start}"',
            *body,
            "}",
        ]

    def submission(self, command: str, markers: Markers) -> list[str]:
        """Lines to type into the pane, in order, each followed by Enter."""
        if not is_multiline(command):
            return [self.wrap_single(command, markers)]
        return [self.trap_script(markers.start, markers.end), *self.wrap_block(command, markers)]


class BashStrategy(ShellStrategy):
    shell_type = ShellType.BASH

    def cleanup_script(self) -> str:
        return (
            f'PROMPT_COMMAND="${{PROMPT_COMMAND//{HOOK};/}}"; '
            f"unset -f {HOOK} {CLEANUP} 2>/dev/null; unset {DONE}"
        )

    def trap_script(self, start_marker: str, end_marker: str) -> str:
        return (
            f"{self.cleanup_script()}; "
            f"{DONE}=0; "
            f"{CLEANUP}() {{ {self.cleanup_script()}; }}; "
            f"{HOOK}() {{ local e=$?; "
            f'if [ "${DONE}" = 0 ]; then local c; c=$(HISTTIMEFORMAT= history 1); '
            f'case "$c" in *{split_literal(start_marker)}*) {DONE}=1; '
            f'echo {split_literal(end_marker)}; echo "exit_code: $e"; {CLEANUP};; esac; fi; '
            "return $e; }; "
            f'PROMPT_COMMAND="{HOOK};${{PROMPT_COMMAND}}"'
        )


class ZshStrategy(ShellStrategy):
    shell_type = ShellType.ZSH

    def cleanup_script(self) -> str:
        return (
            f"precmd_functions=(${{precmd_functions:#{HOOK}}}); "
            f"unfunction {HOOK} {CLEANUP} 2>/dev/null; unset {DONE}"
        )

    def trap_script(self, start_marker: str, end_marker: str) -> str:
        return (
            f"{self.cleanup_script()}; "
            f"{DONE}=0; "
            f"{CLEANUP}() {{ {self.cleanup_script()}; }}; "
            f"{HOOK}() {{ local e=$?; "
            f"if [[ ${DONE} -eq 0 ]]; then local c=$(fc -ln -1); "
            f'if [[ "$c" == *{split_literal(start_marker)}* ]]; then {DONE}=1; '
            f'echo {split_literal(end_marker)}; echo "exit_code: $e"; {CLEANUP}; fi; fi; }}; '
            f"precmd_functions=({HOOK} $precmd_functions)"
        )


class ShStrategy(ShellStrategy):
    """POSIX sh has no prompt hook; a command substitution in PS1 stands in.

    The block prefix touches a sentinel file; the PS1 hook prints the end
    marker only while that file exists. The EXIT trap covers a block that
    ends the shell.
    """

    shell_type = ShellType.SH
    needs_cleanup_after = True

    def cleanup_script(self) -> str:
        return (
            f'if [ -n "${{{SAVED_PS1}+x}}" ]; then PS1="${SAVED_PS1}"; unset {SAVED_PS1}; fi; '
            f'rm -f "${{{SENTINEL}:-/nonexistent}}" 2>/dev/null; trap - EXIT; '
            f"unset -f {HOOK} 2>/dev/null; unset {SENTINEL}"
        )

    def command_prefix(self) -> str:
        return f'touch "${SENTINEL}"; '

    def trap_script(self, start_marker: str, end_marker: str) -> str:
        emit = (
            f'if [ -f "${SENTINEL}" ]; then rm -f "${SENTINEL}"; '
            f'echo {split_literal(end_marker)}; echo "exit_code: $e"; fi'
        )
        return (
            f"{self.cleanup_script()}; "
            f'{SENTINEL}="/tmp/tmux_exec_$$"; '
            f"{HOOK}() {{ e=$?; {emit}; return $e; }}; "
            f"trap 'e=$?; {emit}' EXIT; "
            f'{SAVED_PS1}="$PS1"; '
            f"PS1='$({HOOK})'\"$PS1\""
        )


class FishStrategy(ShellStrategy):
    """fish only offers an exit event, so the end marker is echoed inline."""

    shell_type = ShellType.FISH
    status_variable = "$status"
    uses_prompt_hook = False

    def detection_probe(self, nonce: str) -> str:
        # Other shells reject the fish-only ``if ...; end`` form outright.
        return (
            f"if set -q FISH_VERSION; echo {_tag(PROBE_TAG, nonce)}; "
            f"echo {_tag(SHELL_TAG, 'fish')}; "
            f"echo {_tag(PWD_TAG)}(pwd); "
            f"echo {_tag(SYSTEM_TAG)}(uname -a 2>/dev/null; or echo unavailable); end"
        )

    def cleanup_script(self) -> str:
        return f"functions -e {EXIT_HANDLER}"

    def trap_script(self, start_marker: str, end_marker: str) -> str:
        return (
            f"{self.cleanup_script()}; "
            f"function {EXIT_HANDLER} --on-event fish_exit; "
            f'echo {split_literal(end_marker)}; echo "exit_code: $status"; end'
        )

    def wrap_block(self, command: str, markers: Markers) -> list[str]:
        body = command.strip("\n").splitlines()
        return [
            "begin",
            f"echo {split_literal(markers.start)}",
            *body,
            f'end; echo {split_literal(markers.end)}" $status"; {self.cleanup_script()}',
        ]


_STRATEGIES: dict[ShellType, ShellStrategy] = {
    ShellType.BASH: BashStrategy(),
    ShellType.ZSH: ZshStrategy(),
    ShellType.SH: ShStrategy(),
    ShellType.FISH: FishStrategy(),
}

# Distinct probes tried, in order, across detection retries.
PROBE_ORDER: tuple[ShellStrategy, ...] = (_STRATEGIES[ShellType.BASH], _STRATEGIES[ShellType.FISH])


def get_strategy(shell_type: ShellType | str | None) -> ShellStrategy:
    """Return the strategy for a shell; unknown shells get the POSIX one."""
    if not isinstance(shell_type, ShellType):
        shell_type = ShellType.parse(shell_type or "")
    return _STRATEGIES.get(shell_type, _STRATEGIES[ShellType.SH])
