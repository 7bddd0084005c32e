"""
Exception types raised by the preview runtime.

Command-level errors carry the raw captured output in their message so the
orchestrator can persist ``str(exc)`` verbatim as the session failure output.
"""

from typing import List, TYPE_CHECKING

if TYPE_CHECKING:
    from preview_runtime.sandbox.commands import CommandResult


class PreviewRuntimeError(Exception):
    """Base class for all preview runtime errors."""
    pass


class PreconditionValidationError(PreviewRuntimeError):
    """Raised when upstream work is not certified complete and hash-locked."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(
            "Precondition validation failed:\n"
            + "\n".join(f"  - {e}" for e in self.errors)
        )


class PortExhaustion(PreviewRuntimeError):
    """Raised when every port in the preview range is held."""

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(f"Port allocation failed: no available ports in range {start}-{end}")


class WorkspaceNotFound(PreviewRuntimeError):
    """Raised before launching a sandbox whose workspace does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Workspace directory does not exist: {path}")


class CommandFailure(PreviewRuntimeError):
    """Raised by validation when a command exited with a non-zero code."""

    def __init__(self, result: "CommandResult"):
        self.result = result
        super().__init__(
            f'Command failed: "{result.command}" exited with code {result.exit_code}\n\n'
            f"STDOUT:\n{result.stdout}\n\n"
            f"STDERR:\n{result.stderr}"
        )


class CommandTimeout(PreviewRuntimeError):
    """Raised by validation when a command exceeded its timeout."""

    def __init__(self, result: "CommandResult"):
        self.result = result
        super().__init__(
            f'Command timeout: "{result.command}" exceeded {result.duration_ms}ms\n\n'
            f"STDERR:\n{result.stderr}"
        )


class ReadinessTimeout(PreviewRuntimeError):
    """Raised when the started service never answered the HTTP probe."""

    def __init__(self, port: int, seconds: float):
        self.port = port
        self.seconds = seconds
        super().__init__(
            f"Server did not become ready after {seconds:g} seconds on port {port}"
        )


class IllegalTransition(PreviewRuntimeError):
    """Raised for any status change outside the transition table."""

    def __init__(self, from_status, to_status, allowed, session_id: str = ""):
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = list(allowed)
        allowed_text = ", ".join(s.value for s in self.allowed) or "none (terminal)"
        super().__init__(
            f"Illegal transition: {from_status.value} -> {to_status.value}\n"
            f"Allowed transitions from {from_status.value}: {allowed_text}\n"
            f"Session: {session_id}"
        )


class SessionTerminal(PreviewRuntimeError):
    """Raised when a mutation is attempted on a FAILED or TERMINATED session."""

    def __init__(self, status, session_id: str = ""):
        self.status = status
        super().__init__(
            f"Cannot perform operation: session is {status.value} (terminal state)\n"
            f"Session: {session_id}"
        )


class SessionNotFound(PreviewRuntimeError):
    """Raised when a session id is unknown to the store."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")
