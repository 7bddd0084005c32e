"""
Command Runner - Execute exactly one command inside a sandbox.

Rules:
- Each command runs once; nothing here or above it retries
- A hard timeout ends the wait; the command itself is only stopped when the
  whole sandbox is killed
- Output is captured verbatim, each stream capped to the first N lines
"""

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional

import structlog

from preview_runtime.errors import CommandFailure, CommandTimeout
from preview_runtime.schemas import CommandExecutionRecord
from preview_runtime.sandbox.executor import ContainerExecutor, ContainerHandle

logger = structlog.get_logger()


# Per-stream line cap
MAX_OUTPUT_LINES = 10000


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class CommandResult:
    """Raw outcome of one command execution."""
    command: str
    exit_code: Optional[int]  # None if timed out
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool

    def to_record(self) -> CommandExecutionRecord:
        return CommandExecutionRecord(
            command=self.command,
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr=self.stderr,
            duration_ms=self.duration_ms,
            timed_out=self.timed_out,
        )


def truncate_output(text: str, max_lines: int = MAX_OUTPUT_LINES) -> str:
    """
    Keep the first max_lines lines of text.

    If lines were dropped, one synthetic line reporting how many is appended.
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    if len(lines) <= max_lines:
        return text

    omitted = len(lines) - max_lines
    return "\n".join(lines[:max_lines]) + f"\n[Output truncated: {omitted} lines omitted]"


class _StreamBuffer:
    """Bytes collected from one output stream, readable while still growing."""

    def __init__(self):
        self._data = bytearray()
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            self._data.extend(chunk)

    def text(self) -> str:
        with self._lock:
            return bytes(self._data).decode("utf-8", errors="replace")


# =============================================================================
# COMMAND RUNNER
# =============================================================================

class CommandRunner:
    """Runs lifecycle commands inside sandboxes under hard timeouts."""

    def __init__(self, executor: ContainerExecutor, max_output_lines: int = MAX_OUTPUT_LINES):
        self.executor = executor
        self.max_output_lines = max_output_lines

    def run(self, handle: ContainerHandle, command: str, timeout: float) -> CommandResult:
        """
        Execute a command once and wait for it, at most ``timeout`` seconds.

        Args:
            handle: Sandbox to run in
            command: Shell command text
            timeout: Hard ceiling in seconds

        Returns:
            CommandResult. On timeout exit_code is None and duration_ms equals
            the timeout exactly.
        """
        stdout = _StreamBuffer()
        stderr = _StreamBuffer()
        outcome = {}

        def target():
            try:
                outcome["exit_code"] = self.executor.exec_stream(
                    handle, command, stdout.write, stderr.write
                )
            except Exception as e:
                outcome["error"] = e

        started = time.monotonic()
        worker = threading.Thread(
            target=target, name=f"exec-{handle.container_name}", daemon=True
        )
        worker.start()
        worker.join(timeout)

        if worker.is_alive():
            timeout_ms = int(timeout * 1000)
            result = CommandResult(
                command=command,
                exit_code=None,
                stdout=truncate_output(stdout.text(), self.max_output_lines),
                # Marker counts toward the line cap
                stderr=truncate_output(
                    stderr.text() + f"\n[TIMEOUT: Command exceeded {timeout_ms}ms]",
                    self.max_output_lines,
                ),
                duration_ms=timeout_ms,
                timed_out=True,
            )
            logger.warning(
                "preview.command_timeout",
                container_id=handle.container_id,
                command=command,
                timeout_ms=timeout_ms,
            )
            return result

        duration_ms = int((time.monotonic() - started) * 1000)
        if "error" in outcome:
            raise outcome["error"]

        result = CommandResult(
            command=command,
            exit_code=outcome.get("exit_code"),
            stdout=truncate_output(stdout.text(), self.max_output_lines),
            stderr=truncate_output(stderr.text(), self.max_output_lines),
            duration_ms=duration_ms,
            timed_out=False,
        )
        logger.info(
            "preview.command_executed",
            container_id=handle.container_id,
            command=command,
            exit_code=result.exit_code,
            duration_ms=duration_ms,
        )
        return result

    def start(self, handle: ContainerHandle, command: str, timeout: float) -> "Future[CommandResult]":
        """
        Launch a command without waiting for it.

        The returned future resolves with the same single-attempt result as
        run(); for a long-lived server that is normally a timeout.
        """
        future: "Future[CommandResult]" = Future()
        future.set_running_or_notify_cancel()

        def target():
            try:
                future.set_result(self.run(handle, command, timeout))
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=target, name=f"start-{handle.container_name}", daemon=True).start()
        return future

    @staticmethod
    def validate(result: CommandResult) -> None:
        """
        Raise if the command did not succeed.

        Raises:
            CommandTimeout: If the command timed out
            CommandFailure: If the exit code is non-zero
        """
        if result.timed_out:
            raise CommandTimeout(result)
        if result.exit_code != 0:
            raise CommandFailure(result)
