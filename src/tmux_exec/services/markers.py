"""Start/end marker generation for command boundary detection."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

START_PREFIX = "TMXS"
END_PREFIX = "TMXE"


@dataclass(frozen=True)
class Markers:
    start: str
    end: str


def new_invocation_id() -> str:
    return str(uuid.uuid4())


def new_markers(invocation_id: str, now: float | None = None) -> Markers:
    """Build the marker pair for one invocation.

    The millisecond timestamp separates invocations over time, the id
    prefix separates invocations created in the same millisecond.
    """
    millis = int((time.time() if now is None else now) * 1000)
    suffix = invocation_id.replace("-", "")[:8]
    return Markers(
        start=f"{START_PREFIX}_{millis}_{suffix}",
        end=f"{END_PREFIX}_{millis}_{suffix}",
    )


def split_literal(text: str) -> str:
    """Render ``text`` as two adjacent double-quoted halves.

    The shell joins them back into ``text`` but the typed line never
    contains it verbatim, so a screen capture of the typed script cannot
    be mistaken for the script's output.
    """
    if len(text) < 2:
        return f'"{text}"'
    middle = len(text) // 2
    return f'"{text[:middle]}""{text[middle:]}"'
