"""Plain-text summaries of command records."""

from __future__ import annotations

from tmux_exec.storage.models import CommandExecution, CommandStatus

STATUS_TAGS: dict[CommandStatus, str] = {
    CommandStatus.PENDING: "WAIT",
    CommandStatus.RUNNING: "RUN",
    CommandStatus.COMPLETED: "OK",
    CommandStatus.ERROR: "ERR",
    CommandStatus.CANCELLED: "CANCEL",
    CommandStatus.TIMEOUT: "TIMEOUT",
}


def format_duration(ms: int) -> str:
    """Format milliseconds to human-readable duration."""
    if ms < 1000:
        return f"{ms}ms"
    elif ms < 60000:
        return f"{ms / 1000:.1f}s"
    elif ms < 3600000:
        minutes = ms // 60000
        seconds = (ms % 60000) // 1000
        return f"{minutes}m {seconds}s"
    else:
        hours = ms // 3600000
        minutes = (ms % 3600000) // 60000
        return f"{hours}h {minutes}m"


def format_execution(record: CommandExecution) -> str:
    """Format one record as an indented block."""
    lines = [
        f"[{record.id[:8]}] [{STATUS_TAGS[record.status]}] {record.status.value.upper()}",
        f"  Command: {record.command}",
        f"  Pane: {record.pane_id}",
        f"  Duration: {format_duration(record.duration_ms)}",
    ]
    if record.exit_code is not None:
        lines.append(f"  Exit Code: {record.exit_code}")
    if record.shell_type is not None:
        lines.append(f"  Shell: {record.shell_type.value}")
    if record.current_working_directory:
        lines.append(f"  Dir: {record.current_working_directory}")
    lines.append(f"  Started: {record.start_time:%Y-%m-%d %H:%M:%S}")
    if record.end_time is not None:
        lines.append(f"  Ended: {record.end_time:%Y-%m-%d %H:%M:%S}")
    return "\n".join(lines)


def format_execution_list(records: list[CommandExecution], title: str = "COMMANDS") -> str:
    """Format records under a title, or a short notice when there are none."""
    if not records:
        return f"No {title.lower()} found."
    header = f"{title}\n{'=' * len(title)}"
    return "\n\n".join([header, *(format_execution(r) for r in records)])
