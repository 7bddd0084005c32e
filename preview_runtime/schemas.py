"""
Pydantic schemas for preview session records and their collaborators.
"""

from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Lifecycle status of a preview session."""
    READY = "READY"
    STARTING = "STARTING"
    BUILDING = "BUILDING"
    RUNNING = "RUNNING"
    FAILED = "FAILED"
    TERMINATED = "TERMINATED"


class FailureStage(str, Enum):
    """Where a failed session broke."""
    INSTALL = "install"
    BUILD = "build"
    START = "start"
    TIMEOUT = "timeout"
    CRASH = "crash"


class TeardownReason(str, Enum):
    """Why a session was torn down."""
    MANUAL = "MANUAL"
    TTL_EXPIRED = "TTL_EXPIRED"
    CRASH = "CRASH"
    SYSTEM_SHUTDOWN = "SYSTEM_SHUTDOWN"


class CommandExecutionRecord(BaseModel):
    """Raw outcome of one lifecycle command. Frozen once attached to a session."""
    model_config = ConfigDict(frozen=True)

    command: str = Field(..., description="Command text as executed")
    exit_code: Optional[int] = Field(None, description="Exit code, None if the command timed out")
    stdout: str = Field(default="", description="Captured stdout, capped to the line limit")
    stderr: str = Field(default="", description="Captured stderr, capped to the line limit")
    duration_ms: int = Field(..., description="Duration, equal to the timeout when timed out")
    timed_out: bool = Field(False, description="Whether the command exceeded its timeout")


class PreviewSession(BaseModel):
    """
    Append-only audit record of one preview session.

    The session hash covers request_id, framework, framework_version,
    manifest_hash, workspace_hash, status, failure_stage and failure_output.
    """
    session_id: str = Field(..., description="Opaque session identifier")
    request_id: str = Field(..., description="External request identifier")

    framework: str = Field("nextjs", description="Framework name")
    framework_version: str = Field(..., description="Framework version")
    manifest_hash: str = Field(..., description="Hash-locked upstream manifest reference")
    workspace_hash: str = Field(..., description="SHA-256 of the workspace contents")

    status: SessionStatus = Field(SessionStatus.READY, description="Current status")
    container_id: Optional[str] = Field(None, description="Sandbox container id")
    port: Optional[int] = Field(None, description="Allocated host port")
    preview_url: Optional[str] = Field(None, description="URL derived from the port")

    started_at: int = Field(..., description="Creation time, epoch milliseconds")
    running_at: Optional[int] = Field(None, description="When RUNNING was reached")
    terminated_at: Optional[int] = Field(None, description="When a terminal status was reached")

    failure_stage: Optional[FailureStage] = Field(None, description="Classified failure stage")
    failure_output: Optional[str] = Field(None, description="Raw failure output, verbatim")
    termination_reason: Optional[TeardownReason] = Field(None, description="Why teardown happened")

    commands: Dict[str, CommandExecutionRecord] = Field(
        default_factory=dict, description="Per-phase command records (install, build, start)"
    )

    session_hash: Optional[str] = Field(None, description="Final SHA-256, set once after termination")


class StatusSnapshot(BaseModel):
    """Read-only view of a session returned to callers."""
    session_id: str
    status: SessionStatus
    preview_url: Optional[str] = None
    failure_stage: Optional[FailureStage] = None
    failure_output: Optional[str] = None


class GateResult(BaseModel):
    """What the precondition gate certifies about an upstream request."""
    request_id: str = Field(..., description="External request identifier")
    verdict: str = Field(..., description="Upstream completion verdict")
    manifest_hash: str = Field(..., description="Hash-locked manifest reference")
    framework: str = Field("nextjs", description="Framework name")
    framework_version: str = Field(..., description="Framework version")
    workspace_path: str = Field(..., description="Absolute path of the assembled workspace")


class AssemblyRecord(BaseModel):
    """Upstream facts about an assembled application, as seen by the gate."""
    request_id: str
    verdict: Optional[str] = Field(None, description="Completion verdict, e.g. COMPLETE")
    manifest_present: bool = Field(True, description="Whether an assembly manifest exists")
    manifest_hash: Optional[str] = Field(None, description="Manifest hash, None if not hash-locked")
    framework: str = "nextjs"
    framework_version: str = "14.2.0"
    workspace_path: str = Field(..., description="Where the assembled app was written")
    build_locked: bool = Field(False, description="Whether an upstream build still holds the lock")
