"""Data models for tmux-exec."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = -1
INTERRUPTED_EXIT_CODE = 130
FAILED_EXIT_CODE = 1


class CommandStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({CommandStatus.PENDING, CommandStatus.RUNNING})
TERMINAL_STATUSES = frozenset(
    {
        CommandStatus.COMPLETED,
        CommandStatus.ERROR,
        CommandStatus.CANCELLED,
        CommandStatus.TIMEOUT,
    }
)


class ShellType(str, Enum):
    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"
    SH = "sh"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> ShellType:
        """Map a reported shell name to a known type, ``unknown`` otherwise."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecuteOptions:
    """Per-invocation knobs accepted by ``CommandExecutor.execute``."""

    timeout: float | None = None
    max_retries: int = 3
    detect_shell: bool = True


@dataclass
class CommandExecution:
    """One command submitted to one pane, tracked from submission to exit."""

    id: str
    pane_id: str
    command: str
    status: CommandStatus = CommandStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    shell_type: ShellType | None = None
    current_working_directory: str | None = None
    system_info: str | None = None
    result: str | None = None
    exit_code: int | None = None
    aborted: bool = False
    retry_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> int:
        end = self.end_time or utcnow()
        return max(0, int((end - self.start_time).total_seconds() * 1000))

    def mark_running(self) -> bool:
        """Promote a pending record. Returns False if it already moved on."""
        if self.status is not CommandStatus.PENDING:
            return False
        self.status = CommandStatus.RUNNING
        return True

    def finish(
        self,
        status: CommandStatus,
        result: str | None = None,
        exit_code: int | None = None,
    ) -> bool:
        """Move to a terminal status.

        Returns False without touching the record when it is already
        terminal, so a late poll result can never overwrite a cancellation.
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.is_terminal:
            return False
        self.status = status
        self.result = result
        self.exit_code = exit_code
        self.end_time = utcnow()
        return True

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pane_id": self.pane_id,
            "command": self.command,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(timespec="microseconds"),
            "end_time": self.end_time.isoformat(timespec="microseconds") if self.end_time else None,
            "shell_type": self.shell_type.value if self.shell_type else None,
            "cwd": self.current_working_directory,
            "system_info": self.system_info,
            "result": self.result,
            "exit_code": self.exit_code,
            "aborted": int(self.aborted),
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_row(cls, row: Any) -> CommandExecution:
        data = dict(row)
        return cls(
            id=data["id"],
            pane_id=data["pane_id"],
            command=data["command"],
            status=CommandStatus(data["status"]),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"]) if data["end_time"] else None,
            shell_type=ShellType.parse(data["shell_type"]) if data["shell_type"] else None,
            current_working_directory=data["cwd"],
            system_info=data["system_info"],
            result=data["result"],
            exit_code=data["exit_code"],
            aborted=bool(data["aborted"]),
            retry_count=data["retry_count"] or 0,
        )
