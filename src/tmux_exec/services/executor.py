"""Command executor: runs one command in one pane and tracks it to completion.

Lifecycle of an invocation:

1. Interrupt whatever is running in the pane and let it settle.
2. Probe the shell family and working directory (optional).
3. Type the command, wrapped with markers and, for blocks, a trap.
4. Poll the pane and scan captures until the end marker shows up, the
   command is cancelled or preempted, or the timeout elapses.
5. Persist the final record.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from tmux_exec.config import AppConfig
from tmux_exec.services.markers import Markers, new_invocation_id, new_markers
from tmux_exec.services.scanner import parse_detection, salvage_partial, scan_completion
from tmux_exec.services.strategies import PROBE_ORDER, ShellStrategy, get_strategy, is_multiline
from tmux_exec.services.terminal import TerminalPort
from tmux_exec.storage.database import CommandStore
from tmux_exec.storage.models import (
    CANCELLED_EXIT_CODE,
    FAILED_EXIT_CODE,
    INTERRUPTED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    CommandExecution,
    CommandStatus,
    ExecuteOptions,
    ShellType,
    utcnow,
)

logger = logging.getLogger(__name__)

NO_PARTIAL_OUTPUT = "(no output captured)"
HISTORY_LIMIT = 1000


@dataclass
class _Invocation:
    record: CommandExecution
    options: ExecuteOptions
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    markers: Markers | None = None
    task: asyncio.Task[None] | None = None
    live: bool = False
    submit_attempts: int = 0


class CommandExecutor:
    """Execute commands in terminal panes and infer their completion."""

    def __init__(self, config: AppConfig, terminal: TerminalPort, store: CommandStore) -> None:
        self.config = config
        self.engine = config.engine
        self.terminal = terminal
        self.store = store
        self._invocations: dict[str, _Invocation] = {}
        self._pane_owner: dict[str, str] = {}

    # --- Public API ---

    async def execute(
        self,
        pane_id: str,
        command: str,
        options: ExecuteOptions | None = None,
        *,
        wait: bool = False,
    ) -> str:
        """Start a command and return its id.

        The record is persisted as ``pending`` before this returns. With
        ``wait=True`` the whole lifecycle runs before returning; otherwise it
        continues in a background task.
        """
        if not command.strip():
            raise ValueError("command must not be empty")
        if options is None:
            options = ExecuteOptions(max_retries=self.engine.max_retries)

        record = CommandExecution(id=new_invocation_id(), pane_id=pane_id, command=command)
        await self.store.put(record)

        invocation = _Invocation(record=record, options=options)
        self._invocations[record.id] = invocation
        previous = self._pane_owner.get(pane_id)
        if previous is not None:
            logger.info("Command %s preempts %s on pane %s", record.id, previous, pane_id)
        self._pane_owner[pane_id] = record.id
        logger.info("Command %s queued on pane %s: %s", record.id, pane_id, command)

        if wait:
            await self._run(invocation)
        else:
            invocation.task = asyncio.create_task(
                self._run(invocation), name=f"tmux-exec-{record.id[:8]}"
            )
        return record.id

    async def run(
        self,
        pane_id: str,
        command: str,
        options: ExecuteOptions | None = None,
    ) -> CommandExecution:
        """Execute a command and block until it reaches a terminal status."""
        command_id = await self.execute(pane_id, command, options, wait=True)
        return self._invocations[command_id].record

    async def wait(self, command_id: str, timeout: float | None = None) -> CommandExecution | None:
        """Wait for a background invocation and return its record."""
        invocation = self._invocations.get(command_id)
        if invocation is None:
            return await self.store.get(command_id)
        if invocation.task is not None:
            await asyncio.wait_for(asyncio.shield(invocation.task), timeout)
        return invocation.record

    async def status(self, command_id: str) -> CommandExecution | None:
        return await self.store.get(command_id)

    async def cancel(self, command_id: str) -> bool:
        """Cancel a pending or running command.

        Returns False for unknown ids and for records that already reached a
        terminal status; those records are left untouched.
        """
        invocation = self._invocations.get(command_id)
        record = invocation.record if invocation else await self.store.get(command_id)
        if record is None or record.is_terminal:
            return False

        try:
            await self._call(self.terminal.send_interrupt, record.pane_id)
        except Exception as e:
            logger.warning("Could not interrupt pane %s for %s: %s", record.pane_id, command_id, e)

        partial = None
        if invocation is not None and invocation.markers is not None:
            try:
                buffer = await self._capture(record.pane_id)
                partial = salvage_partial(buffer, invocation.markers.start, self.engine.fallback_lines)
            except Exception as e:
                logger.debug("No partial output for %s: %s", command_id, e)

        result = f"Command cancelled by user request\n\nPartial output:\n{partial or NO_PARTIAL_OUTPUT}"
        if not record.finish(CommandStatus.CANCELLED, result, CANCELLED_EXIT_CODE):
            # Finished while we were interrupting.
            return False
        record.aborted = True
        await self.store.put(record)
        if invocation is not None:
            invocation.cancelled.set()
        logger.info("Command %s cancelled", command_id)
        return True

    async def list_active(self) -> list[CommandExecution]:
        return await self.store.list_active()

    async def list_all(self) -> list[CommandExecution]:
        """Active and historical records, one per id, newest first."""
        merged: dict[str, CommandExecution] = {}
        for record in await self.store.list_history(HISTORY_LIMIT):
            merged[record.id] = record
        for record in await self.store.list_active():
            merged[record.id] = record
        return sorted(merged.values(), key=lambda r: r.start_time, reverse=True)

    async def cleanup_stale(self, max_age_minutes: float = 60) -> int:
        """Time out stuck pending records and evict old finished ones.

        Returns how many records left the active set.
        """
        now = utcnow()
        stale_after = timedelta(minutes=self.engine.stale_pending_minutes)
        removed = 0

        for record in await self.store.list_active():
            if record.status is not CommandStatus.PENDING:
                continue
            invocation = self._invocations.get(record.id)
            if invocation is not None and invocation.live:
                continue
            if now - record.start_time <= stale_after:
                continue
            record.finish(
                CommandStatus.TIMEOUT,
                "[TIMEOUT] Command stuck in pending state",
                TIMEOUT_EXIT_CODE,
            )
            await self.store.put(record)
            logger.warning("Command %s stuck in pending state, marked as timeout", record.id)
            removed += 1

        cutoff = now - timedelta(minutes=max_age_minutes)
        for command_id, invocation in list(self._invocations.items()):
            record = invocation.record
            if invocation.live or not record.is_terminal:
                continue
            if (record.end_time or record.start_time) < cutoff:
                del self._invocations[command_id]
                removed += 1

        if removed:
            logger.info("Cleanup removed %d commands from the active set", removed)
        return removed

    async def shutdown(self) -> None:
        """Cancel background invocations and wait for them to persist."""
        tasks = [inv.task for inv in self._invocations.values() if inv.task and not inv.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- Lifecycle ---

    async def _run(self, invocation: _Invocation) -> None:
        record = invocation.record
        invocation.live = True
        try:
            await self._lifecycle(invocation)
        except asyncio.CancelledError:
            if record.finish(CommandStatus.CANCELLED, "Executor shut down", CANCELLED_EXIT_CODE):
                record.aborted = True
            raise
        except Exception as e:
            logger.exception("Command %s failed inside the executor", record.id)
            record.finish(CommandStatus.ERROR, f"Error: {e}", FAILED_EXIT_CODE)
        finally:
            invocation.live = False
            if self._pane_owner.get(record.pane_id) == record.id:
                del self._pane_owner[record.pane_id]
            await self._persist(record)
            logger.info(
                "Command %s finished: %s (exit %s)", record.id, record.status.value, record.exit_code
            )

    async def _lifecycle(self, invocation: _Invocation) -> None:
        record = invocation.record
        if record.is_terminal:
            return

        # Clear any foreground command so stale output cannot confuse the scan.
        if not await self._with_retries(invocation, "interrupt", self._interrupt, record.pane_id):
            return
        if await self._pause(invocation, self.engine.settle_delay) or record.is_terminal:
            return

        strategy = await self._detect(invocation)
        if record.is_terminal or self._preempted(invocation, ""):
            return
        await self._save(record)

        markers = new_markers(record.id)
        invocation.markers = markers
        lines = strategy.submission(record.command, markers)
        if not await self._with_retries(invocation, "submit", self._submit, invocation, lines):
            return
        if record.is_terminal:
            return
        if record.mark_running():
            await self._save(record)

        await self._poll(invocation, markers)

        if (
            record.status in (CommandStatus.COMPLETED, CommandStatus.ERROR)
            and strategy.needs_cleanup_after
            and is_multiline(record.command)
        ):
            try:
                await self._type_lines(invocation, [strategy.cleanup_script()])
            except Exception as e:
                logger.warning("Trap cleanup failed on pane %s: %s", record.pane_id, e)

    async def _detect(self, invocation: _Invocation) -> ShellStrategy:
        """Identify the shell, degrading to the configured fallback shell."""
        record = invocation.record
        fallback = ShellType.parse(self.engine.fallback_shell)
        if not invocation.options.detect_shell:
            record.shell_type = fallback
            return get_strategy(fallback)

        for attempt in range(max(1, invocation.options.max_retries)):
            if attempt:
                record.retry_count += 1
            probe = PROBE_ORDER[attempt % len(PROBE_ORDER)]
            nonce = uuid.uuid4().hex[:12]
            try:
                await self._type_lines(invocation, [probe.detection_probe(nonce)])
            except Exception as e:
                logger.warning("Detection probe send failed on pane %s: %s", record.pane_id, e)
                if await self._pause(invocation, self.engine.capture_backoff):
                    return get_strategy(fallback)
                continue

            for _ in range(self.engine.detect_attempts):
                if await self._pause(invocation, self.engine.detect_interval):
                    return get_strategy(fallback)
                try:
                    buffer = await self._capture(record.pane_id)
                except Exception as e:
                    logger.debug("Capture failed during detection on %s: %s", record.pane_id, e)
                    continue
                detected = parse_detection(buffer, nonce)
                if detected is not None:
                    record.shell_type = detected.shell_type
                    record.current_working_directory = detected.current_working_directory
                    record.system_info = detected.system_info
                    logger.debug(
                        "Pane %s runs %s in %s",
                        record.pane_id,
                        detected.shell_type.value,
                        detected.current_working_directory,
                    )
                    return get_strategy(detected.shell_type)

        logger.warning(
            "Shell detection did not converge on pane %s, assuming %s",
            record.pane_id,
            fallback.value,
        )
        record.shell_type = fallback
        return get_strategy(fallback)

    async def _poll(self, invocation: _Invocation, markers: Markers) -> None:
        record = invocation.record
        timeout = invocation.options.timeout
        if timeout is None:
            timeout = self.engine.default_timeout

        loop = asyncio.get_running_loop()
        started = loop.time()
        last_buffer = ""
        capture_error: Exception | None = None

        while True:
            if await self._pause(invocation, self.engine.poll_interval) or record.is_terminal:
                return

            try:
                buffer = await self._capture(record.pane_id)
            except Exception as e:
                capture_error = e
                logger.warning("Capture failed on pane %s: %s", record.pane_id, e)
                if await self._pause(invocation, self.engine.capture_backoff):
                    return
            else:
                capture_error = None
                last_buffer = buffer
                scan = scan_completion(buffer, markers.start, markers.end, self.engine.fallback_lines)
                if scan.complete:
                    status = CommandStatus.COMPLETED if scan.exit_code == 0 else CommandStatus.ERROR
                    record.finish(status, scan.output, scan.exit_code)
                    return

            partial = salvage_partial(last_buffer, markers.start, self.engine.fallback_lines)
            if self._preempted(invocation, partial):
                return
            if await self._cancelled_externally(record):
                return

            elapsed = loop.time() - started
            if timeout > 0 and elapsed >= timeout:
                if capture_error is not None:
                    record.finish(
                        CommandStatus.ERROR,
                        f"Terminal capture kept failing until the timeout: {capture_error}",
                        FAILED_EXIT_CODE,
                    )
                else:
                    record.finish(
                        CommandStatus.TIMEOUT,
                        f"[TIMEOUT after {int(timeout * 1000)}ms] Command did not finish\n\n"
                        f"Command: {record.command}\n\n"
                        f"Partial output:\n{partial or NO_PARTIAL_OUTPUT}",
                        TIMEOUT_EXIT_CODE,
                    )
                return

    # --- Helpers ---

    def _preempted(self, invocation: _Invocation, partial: str) -> bool:
        record = invocation.record
        owner = self._pane_owner.get(record.pane_id)
        if owner == record.id:
            return False
        record.finish(
            CommandStatus.ERROR,
            f"Interrupted by command {owner} on the same pane\n\n"
            f"Partial output:\n{partial or NO_PARTIAL_OUTPUT}",
            INTERRUPTED_EXIT_CODE,
        )
        return True

    async def _cancelled_externally(self, record: CommandExecution) -> bool:
        try:
            snapshot = await self.store.get(record.id)
        except Exception as e:
            logger.warning("Could not check store for cancellation of %s: %s", record.id, e)
            return False
        if snapshot is None or snapshot.status is not CommandStatus.CANCELLED:
            return False
        record.finish(
            CommandStatus.CANCELLED,
            snapshot.result or "Command cancelled externally",
            snapshot.exit_code if snapshot.exit_code is not None else CANCELLED_EXIT_CODE,
        )
        record.aborted = True
        logger.info("Command %s was cancelled externally", record.id)
        return True

    async def _with_retries(
        self,
        invocation: _Invocation,
        action: str,
        func: Callable[..., Any],
        *args: Any,
    ) -> bool:
        """Run a terminal action, retrying transport failures with backoff.

        When retries run out the record ends in ``error``.
        """
        record = invocation.record
        attempts = max(1, invocation.options.max_retries + 1)
        for attempt in range(1, attempts + 1):
            try:
                await func(*args)
                return True
            except Exception as e:
                if attempt == attempts:
                    logger.error("%s failed on pane %s after %d attempts: %s", action, record.pane_id, attempt, e)
                    record.finish(
                        CommandStatus.ERROR,
                        f"Error: could not {action} on pane {record.pane_id}: {e}",
                        FAILED_EXIT_CODE,
                    )
                    return False
                logger.warning("%s failed on pane %s (attempt %d): %s", action, record.pane_id, attempt, e)
                record.retry_count += 1
                if await self._pause(invocation, self.engine.capture_backoff * attempt):
                    return False
        return False

    async def _interrupt(self, pane_id: str) -> None:
        await self._call(self.terminal.send_interrupt, pane_id)

    async def _submit(self, invocation: _Invocation, lines: list[str]) -> None:
        if invocation.submit_attempts:
            # Discard whatever half-typed input the failed attempt left.
            await self._interrupt(invocation.record.pane_id)
        invocation.submit_attempts += 1
        await self._type_lines(invocation, lines)

    async def _type_lines(self, invocation: _Invocation, lines: list[str]) -> None:
        pane_id = invocation.record.pane_id
        for index, line in enumerate(lines):
            if index:
                if await self._pause(invocation, self.engine.line_delay):
                    return
            await self._call(self.terminal.send_text, pane_id, line)
            await self._call(self.terminal.send_enter, pane_id)

    async def _capture(self, pane_id: str) -> str:
        return await self._call(self.terminal.capture_buffer, pane_id, self.config.tmux.capture_lines)

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(func, *args)

    async def _pause(self, invocation: _Invocation, seconds: float) -> bool:
        """Sleep cooperatively. Returns True if the invocation was cancelled."""
        if invocation.cancelled.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return invocation.cancelled.is_set()
        try:
            await asyncio.wait_for(invocation.cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _save(self, record: CommandExecution) -> None:
        try:
            await self.store.put(record)
        except Exception:
            logger.exception("Failed to save command %s", record.id)

    async def _persist(self, record: CommandExecution) -> None:
        """Write the final snapshot unless another writer already finalized it."""
        try:
            stored = await self.store.get(record.id)
            if stored is not None and stored.is_terminal and stored.status is not record.status:
                logger.info(
                    "Command %s already %s in store, keeping it", record.id, stored.status.value
                )
                return
            await self.store.put(record)
        except Exception:
            logger.exception("Failed to persist command %s", record.id)
