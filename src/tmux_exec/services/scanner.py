"""Completion scanning over captured pane text.

Everything here is pure: a captured buffer goes in, a verdict comes out.
The executor calls these on every poll tick.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from tmux_exec.storage.models import ShellType

NO_OUTPUT = "(no output)"
DEFAULT_FALLBACK_LINES = 250
EXIT_CODE_LOOKAHEAD = 5
DETECTION_LOOKBACK = 10

ANSI_RE = re.compile(
    r"\x1b\[[0-9;?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[PX^_][^\x1b]*\x1b\\"
    r"|\x1b[()][0-9A-Za-z]"
    r"|\x1b[@-Z\\-_]"
)
EXIT_CODE_RE = re.compile(r"^\s*exit_code:\s*(-?\d+)\b")
TAG_RE = re.compile(r"^\s*(PROBE_ID|SHELL_TYPE|PWD_PATH|SYSTEM_INFO)=(.*)$")


@dataclass(frozen=True)
class ScanResult:
    complete: bool
    output: str = ""
    exit_code: int | None = None
    start_found: bool = False


@dataclass(frozen=True)
class DetectionResult:
    shell_type: ShellType
    current_working_directory: str
    system_info: str | None = None


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences and carriage returns."""
    return ANSI_RE.sub("", text).replace("\r", "")


def _end_marker_re(end_marker: str) -> re.Pattern[str]:
    return re.compile(re.escape(end_marker) + r"(?:[ \t]+(-?\d+))?[ \t]*$")


def _lookahead_exit_code(lines: list[str], index: int) -> int | None:
    for line in lines[index + 1 : index + 1 + EXIT_CODE_LOOKAHEAD]:
        match = EXIT_CODE_RE.match(line)
        if match:
            return int(match.group(1))
    return None


def _find_end(lines: list[str], end_marker: str) -> tuple[int, int | None, str] | None:
    """Locate the bottom-most well-formed end marker line.

    Returns ``(index, exit_code, text_before_marker)``. A line that merely
    contains the marker, such as the typed command echoing
    ``echo MARKER $?``, is skipped.
    """
    pattern = _end_marker_re(end_marker)
    for index in range(len(lines) - 1, -1, -1):
        line = lines[index]
        if end_marker not in line:
            continue
        match = pattern.search(line)
        if match is None:
            continue
        if match.group(1) is not None:
            exit_code: int | None = int(match.group(1))
        else:
            exit_code = _lookahead_exit_code(lines, index)
            if exit_code is None:
                # The exit code line may not have been printed yet.
                continue
        return index, exit_code, line[: match.start()].strip()
    return None


def _tail(lines: list[str], count: int) -> str:
    return "\n".join(lines[-count:] if count > 0 else []).strip()


def scan_completion(
    buffer: str,
    start_marker: str,
    end_marker: str,
    fallback_lines: int = DEFAULT_FALLBACK_LINES,
) -> ScanResult:
    """Decide whether the command bracketed by the markers has finished."""
    lines = strip_ansi(buffer).split("\n")

    found = _find_end(lines, end_marker)
    if found is None:
        return ScanResult(complete=False)
    end_index, exit_code, before_marker = found

    start_index = -1
    for index in range(end_index - 1, -1, -1):
        if start_marker in lines[index]:
            start_index = index
            break

    if start_index == -1:
        # Scrollback lost the start marker; the end marker still proves
        # completion, so hand back a bounded tail.
        output = _tail(lines[:end_index], fallback_lines)
        return ScanResult(
            complete=True,
            output=output or NO_OUTPUT,
            exit_code=exit_code,
            start_found=False,
        )

    body = [
        line
        for line in lines[start_index + 1 : end_index]
        if start_marker not in line and end_marker not in line
    ]
    if before_marker and start_marker not in before_marker:
        body.append(before_marker)
    output = "\n".join(body).strip()
    return ScanResult(
        complete=True,
        output=output or NO_OUTPUT,
        exit_code=exit_code,
        start_found=True,
    )


def salvage_partial(
    buffer: str,
    start_marker: str,
    fallback_lines: int = DEFAULT_FALLBACK_LINES,
) -> str:
    """Best-effort output of a command that has not finished."""
    lines = strip_ansi(buffer).split("\n")
    for index in range(len(lines) - 1, -1, -1):
        if start_marker in lines[index]:
            return "\n".join(
                line for line in lines[index + 1 :] if start_marker not in line
            ).strip()
    return _tail(lines, fallback_lines)


def parse_detection(
    buffer: str,
    nonce: str | None = None,
    lookback: int = DETECTION_LOOKBACK,
) -> DetectionResult | None:
    """Parse the tagged lines printed by a detection probe.

    With a ``nonce``, only lines after the latest ``PROBE_ID=<nonce>`` line
    count, so probe output left over from an earlier invocation is ignored.
    The last occurrence of each tag wins, which tolerates probes that print
    ``SHELL_TYPE=`` more than once.
    """
    lines = [line.rstrip() for line in strip_ansi(buffer).split("\n")]
    while lines and not lines[-1]:
        lines.pop()

    window = lines[-lookback:]
    if nonce is not None:
        probe_line = f"PROBE_ID={nonce}"
        for index in range(len(lines) - 1, -1, -1):
            if lines[index].strip() == probe_line:
                window = lines[index + 1 : index + 1 + lookback]
                break
        else:
            return None

    tags: dict[str, str] = {}
    for line in window:
        match = TAG_RE.match(line)
        if match:
            tags[match.group(1)] = match.group(2).strip()

    shell_name = tags.get("SHELL_TYPE")
    cwd = tags.get("PWD_PATH")
    if not shell_name or not cwd:
        return None
    return DetectionResult(
        shell_type=ShellType.parse(shell_name),
        current_working_directory=cwd,
        system_info=tags.get("SYSTEM_INFO") or None,
    )
