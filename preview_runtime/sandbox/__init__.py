"""
Sandbox module for running assembled applications in isolated Docker containers.

Components:
- ports: Host port pool shared by all sessions
- hashing: Deterministic workspace and session hashes
- executor: Launch, inspect and kill sandboxes
- commands: Run one command in a sandbox under a hard timeout
- state_machine: Legal session status transitions
- gate: Upstream precondition checks
- store: Session audit records
- preview: The orchestrator tying the above together
"""

from preview_runtime.sandbox.commands import CommandResult, CommandRunner, truncate_output
from preview_runtime.sandbox.executor import ContainerExecutor, ContainerHandle
from preview_runtime.sandbox.gate import AssemblyRecordGate, PreconditionGate, load_assembly_records
from preview_runtime.sandbox.hashing import directory_hash, session_hash
from preview_runtime.sandbox.ports import PortAllocator
from preview_runtime.sandbox.preview import PreviewRuntime, http_probe
from preview_runtime.sandbox.state_machine import ALLOWED_TRANSITIONS, SessionStateMachine
from preview_runtime.sandbox.store import InMemorySessionStore, JsonFileSessionStore

__all__ = [
    # Orchestrator
    "PreviewRuntime",
    "http_probe",
    # Sandbox
    "ContainerExecutor",
    "ContainerHandle",
    "CommandRunner",
    "CommandResult",
    "truncate_output",
    # Bookkeeping
    "PortAllocator",
    "SessionStateMachine",
    "ALLOWED_TRANSITIONS",
    "directory_hash",
    "session_hash",
    # Collaborators
    "AssemblyRecordGate",
    "load_assembly_records",
    "PreconditionGate",
    "InMemorySessionStore",
    "JsonFileSessionStore",
]
