"""
Preview Runtime - Run an assembled application, observe it, destroy it.

This module handles:
- Validating upstream preconditions before any session exists
- Launching a sandbox and running install -> build -> start, once each
- Waiting for the started service to answer HTTP on its mapped port
- Tearing sessions down on request, on failure, or when their TTL expires
- Stamping every finished session with a deterministic hash

Lifecycle:
    start_preview() -> READY -> STARTING -> BUILDING -> RUNNING
    terminate_preview() / TTL -> TERMINATED, any failure -> FAILED
"""

import threading
import time
import uuid
from concurrent.futures import Future
from typing import Callable, Dict, Optional, Set

import httpx
import structlog

from preview_runtime.config import Config, get_config
from preview_runtime.errors import (
    CommandFailure,
    CommandTimeout,
    ReadinessTimeout,
    SessionNotFound,
    SessionTerminal,
)
from preview_runtime.schemas import (
    FailureStage,
    PreviewSession,
    SessionStatus,
    StatusSnapshot,
    TeardownReason,
)
from preview_runtime.sandbox.commands import CommandResult, CommandRunner
from preview_runtime.sandbox.executor import ContainerExecutor, ContainerHandle
from preview_runtime.sandbox.gate import PreconditionGate
from preview_runtime.sandbox.hashing import directory_hash, session_hash
from preview_runtime.sandbox.ports import PortAllocator
from preview_runtime.sandbox.state_machine import SessionStateMachine
from preview_runtime.sandbox.store import InMemorySessionStore

logger = structlog.get_logger()


# Per-request timeout of a single readiness probe (seconds)
PROBE_TIMEOUT = 2.0

# Lifecycle phases, in execution order
PHASE_INSTALL = "install"
PHASE_BUILD = "build"
PHASE_START = "start"


def _now_ms() -> int:
    return int(time.time() * 1000)


def http_probe(url: str, timeout: float = PROBE_TIMEOUT) -> bool:
    """
    Check whether anything answers HTTP at url.

    Any response counts, including 404 and 500.
    """
    try:
        httpx.get(url, timeout=timeout)
        return True
    except httpx.HTTPError:
        return False


class PreviewRuntime:
    """
    Orchestrates preview sessions.

    Ports, TTL timers, container handles and session locks belong to this
    instance, so several runtimes can coexist in one process.

    Thread Safety:
        Every mutation of a session happens under that session's lock.
        Commands and readiness probes run outside the lock, so a concurrent
        terminate_preview() is never blocked behind a long install or build.
    """

    def __init__(
        self,
        gate: PreconditionGate,
        store: Optional[InMemorySessionStore] = None,
        executor: Optional[ContainerExecutor] = None,
        runner: Optional[CommandRunner] = None,
        ports: Optional[PortAllocator] = None,
        config: Optional[Config] = None,
        probe: Callable[[str], bool] = http_probe,
    ):
        self.config = config or get_config()
        cfg = self.config

        self.gate = gate
        self.store = store if store is not None else InMemorySessionStore()
        self.executor = executor or ContainerExecutor(
            image=cfg.docker_image,
            container_port=cfg.container_port,
            user=cfg.container_user,
        )
        self.runner = runner or CommandRunner(self.executor, max_output_lines=cfg.max_output_lines)
        self.ports = ports or PortAllocator(cfg.port_range_start, cfg.port_range_end)
        self.probe = probe

        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._machines: Dict[str, SessionStateMachine] = {}
        self._handles: Dict[str, ContainerHandle] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._finalized: Set[str] = set()
        self._pipelines_done: Set[str] = set()
        # Ports whose sandbox launch was still in flight at teardown
        self._pending_release: Dict[str, int] = {}

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def start_preview(self, request_id: str) -> str:
        """
        Start a preview session for a certified upstream request.

        Returns as soon as the session record exists; the lifecycle runs on a
        background thread. Poll get_status() for progress.

        Args:
            request_id: External request identifier

        Returns:
            The new session id

        Raises:
            PreconditionValidationError: If the gate rejects the request
            PortExhaustion: If no host port is free
        """
        logger.info("preview.start_requested", request_id=request_id)

        # Gate first: nothing exists for rejected requests
        certified = self.gate(request_id)

        logger.info("preview.computing_workspace_hash", workspace=certified.workspace_path)
        workspace_hash = directory_hash(certified.workspace_path)

        port = self.ports.allocate()
        session_id = str(uuid.uuid4())
        try:
            self.store.create(
                PreviewSession(
                    session_id=session_id,
                    request_id=request_id,
                    framework=certified.framework,
                    framework_version=certified.framework_version,
                    manifest_hash=certified.manifest_hash,
                    workspace_hash=workspace_hash,
                    status=SessionStatus.READY,
                    port=port,
                    preview_url=self._url(port),
                    started_at=_now_ms(),
                )
            )
        except Exception:
            self.ports.release(port)
            raise

        logger.info(
            "preview.session_created",
            session_id=session_id,
            request_id=request_id,
            port=port,
            workspace_hash=workspace_hash,
        )

        thread = threading.Thread(
            target=self._execute,
            args=(session_id, certified.workspace_path, port),
            name=f"preview-{session_id[:8]}",
            daemon=True,
        )
        with self._registry_lock:
            self._threads[session_id] = thread
        thread.start()

        return session_id

    def get_status(self, session_id: str) -> StatusSnapshot:
        """
        Read the current status of a session. Safe to poll.

        Raises:
            SessionNotFound: If the session id is unknown
        """
        session = self._require(session_id)
        return StatusSnapshot(
            session_id=session.session_id,
            status=session.status,
            preview_url=session.preview_url,
            failure_stage=session.failure_stage,
            failure_output=session.failure_output,
        )

    def get_session(self, session_id: str) -> PreviewSession:
        """Full audit record of a session, including command records."""
        return self._require(session_id)

    def terminate_preview(self, session_id: str, reason: TeardownReason = TeardownReason.MANUAL) -> None:
        """
        Tear a session down and finalize its hash.

        Idempotent: the first call kills the sandbox, releases the port and
        stamps the hash; any later call is a no-op.

        Raises:
            SessionNotFound: If the session id is unknown
        """
        reason = TeardownReason(reason)
        logger.info("preview.terminate_requested", session_id=session_id, reason=reason.value)
        if self._require(session_id).session_hash is not None:
            logger.info("preview.terminate_noop", session_id=session_id, reason=reason.value)
            return

        with self._lock_for(session_id):
            if session_id in self._finalized:
                logger.info("preview.terminate_noop", session_id=session_id, reason=reason.value)
                return

            session = self._require(session_id)
            if session.session_hash is not None:
                return

            self._cancel_ttl(session_id)

            handle = self._handles.pop(session_id, None)
            if handle is None and session.container_id:
                handle = ContainerHandle(
                    container_id=session.container_id,
                    container_name=session.container_id,
                    port=session.port or 0,
                )
            if handle is not None:
                self.executor.force_terminate(handle)

            if session.port is not None:
                if handle is None and session.status == SessionStatus.STARTING:
                    # Launch in flight: the port stays held until the pipeline
                    # has disposed of the late sandbox
                    with self._registry_lock:
                        self._pending_release[session_id] = session.port
                else:
                    self.ports.release(session.port)

            machine = self._machine_for(session_id)
            if not machine.is_terminal(session.status):
                if session.status == SessionStatus.RUNNING:
                    machine.transition(session.status, SessionStatus.TERMINATED)
                    session.status = SessionStatus.TERMINATED
                else:
                    # Before RUNNING the only legal way out is FAILED
                    output = f"Session terminated ({reason.value}) while {session.status.value}"
                    machine.transition(session.status, SessionStatus.FAILED)
                    session.status = SessionStatus.FAILED
                    session.failure_stage = FailureStage.CRASH
                    session.failure_output = output
                session.terminated_at = _now_ms()

            if session.termination_reason is None:
                session.termination_reason = reason

            session.session_hash = session_hash(session.model_dump(mode="json"))
            self.store.update(session)
            self._finalized.add(session_id)

        logger.info(
            "preview.terminated",
            session_id=session_id,
            reason=reason.value,
            status=session.status.value,
            session_hash=session.session_hash,
        )
        self._forget_if_settled(session_id)

    def shutdown(self) -> None:
        """Terminate every session that has not been finalized yet."""
        logger.info("preview.cleanup_all")
        for session in self.store.all():
            if session.session_hash is None:
                self.terminate_preview(session.session_id, TeardownReason.SYSTEM_SHUTDOWN)

    def wait_for_pipeline(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """
        Block until a session's background lifecycle returns.

        Returns:
            True if the pipeline thread has finished
        """
        with self._registry_lock:
            thread = self._threads.get(session_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # =========================================================================
    # EXECUTION PIPELINE
    # =========================================================================

    def _execute(self, session_id: str, workspace_path: str, port: int) -> None:
        """Run the lifecycle once. Every error ends here as a FAILED session."""
        cfg = self.config
        phase: Optional[str] = None

        try:
            # READY -> STARTING, then sandbox and TTL
            self._transition(session_id, SessionStatus.STARTING)
            logger.info("preview.launching_container", session_id=session_id)
            handle = self.executor.launch(workspace_path, port, name=f"preview-{session_id}")
            self._record_container(session_id, handle)

            phase = PHASE_INSTALL
            self._run_phase(session_id, handle, phase, cfg.install_command, cfg.install_timeout)

            self._transition(session_id, SessionStatus.BUILDING)
            phase = PHASE_BUILD
            self._run_phase(session_id, handle, phase, cfg.build_command, cfg.build_timeout)

            self._transition(session_id, SessionStatus.RUNNING)
            phase = PHASE_START
            logger.info("preview.command_start", session_id=session_id, command=cfg.start_command)
            started = self.runner.start(handle, cfg.start_command, cfg.start_timeout)
            started.add_done_callback(lambda f: self._attach_start_record(session_id, f))
            self._wait_until_ready(session_id, port, started)

            logger.info("preview.running", session_id=session_id, preview_url=self._url(port))

        except SessionTerminal:
            # terminate_preview() got there first
            logger.info("preview.pipeline_aborted", session_id=session_id)

        except Exception as e:
            logger.error(
                "preview.execution_error",
                session_id=session_id,
                phase=phase,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._fail(session_id, self._classify(e, phase), str(e))
            try:
                self.terminate_preview(session_id, TeardownReason.CRASH)
            except Exception:
                logger.exception("preview.teardown_failed", session_id=session_id)

        finally:
            # No launch can be in flight past this point
            self._release_pending(session_id)
            with self._registry_lock:
                self._pipelines_done.add(session_id)
            self._forget_if_settled(session_id)

    def _run_phase(
        self, session_id: str, handle: ContainerHandle, phase: str, command: str, timeout: float
    ) -> CommandResult:
        logger.info(f"preview.command_{phase}", session_id=session_id, command=command)
        result = self.runner.run(handle, command, timeout)
        self._attach_record(session_id, phase, result)
        self.runner.validate(result)
        return result

    def _wait_until_ready(self, session_id: str, port: int, started: "Future[CommandResult]") -> None:
        """
        Poll the mapped port until anything answers HTTP.

        Raises:
            ReadinessTimeout: If nothing answered within the start timeout
            CommandFailure: If the start command exited non-zero first
        """
        cfg = self.config
        url = self._url(port)
        deadline = time.monotonic() + cfg.start_timeout

        while True:
            self._ensure_live(session_id)

            if started.done():
                result = started.result()
                if not result.timed_out:
                    self.runner.validate(result)

            if self.probe(url):
                return

            if time.monotonic() >= deadline:
                raise ReadinessTimeout(port, cfg.start_timeout)

            time.sleep(cfg.readiness_interval)

    @staticmethod
    def _classify(error: Exception, phase: Optional[str]) -> FailureStage:
        if isinstance(error, CommandTimeout):
            return FailureStage.TIMEOUT
        if isinstance(error, ReadinessTimeout):
            return FailureStage.START
        if isinstance(error, CommandFailure) and phase is not None:
            return FailureStage(phase)
        return FailureStage.CRASH

    # =========================================================================
    # SESSION MUTATIONS (always under the session lock)
    # =========================================================================

    def _transition(self, session_id: str, to_status: SessionStatus) -> None:
        with self._lock_for(session_id):
            session = self._require(session_id)
            machine = self._machine_for(session_id)
            machine.assert_not_terminal(session.status)
            machine.transition(session.status, to_status)

            session.status = to_status
            if to_status == SessionStatus.RUNNING:
                session.running_at = _now_ms()
            self.store.update(session)

    def _record_container(self, session_id: str, handle: ContainerHandle) -> None:
        with self._lock_for(session_id):
            session = self._require(session_id)
            if self._machine_for(session_id).is_terminal(session.status):
                # Terminated while launching; this sandbox has no other owner
                self.executor.force_terminate(handle)
                self._release_pending(session_id)
                raise SessionTerminal(session.status, session_id)

            self._handles[session_id] = handle
            session.container_id = handle.container_id
            self.store.update(session)
            self._start_ttl(session_id)

    def _attach_record(self, session_id: str, phase: str, result: CommandResult) -> None:
        with self._lock_for(session_id):
            session = self._require(session_id)
            self._machine_for(session_id).assert_not_terminal(session.status)
            if phase in session.commands:
                raise ValueError(f"Command record for {phase} already attached to {session_id}")
            session.commands[phase] = result.to_record()
            self.store.update(session)

    def _attach_start_record(self, session_id: str, future: "Future[CommandResult]") -> None:
        error = future.exception()
        if error is not None:
            logger.warning("preview.start_command_error", session_id=session_id, error=str(error))
            return
        result = future.result()
        try:
            # Checked before locking so a finished session gets no new lock
            self._ensure_live(session_id)
            self._attach_record(session_id, PHASE_START, result)
        except SessionTerminal:
            logger.info(
                "preview.start_record_dropped",
                session_id=session_id,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )

    def _fail(self, session_id: str, stage: FailureStage, output: str) -> bool:
        """Move a live session to FAILED. Returns False if it was already terminal."""
        with self._lock_for(session_id):
            session = self._require(session_id)
            machine = self._machine_for(session_id)
            if machine.is_terminal(session.status):
                logger.info(
                    "preview.failure_ignored",
                    session_id=session_id,
                    status=session.status.value,
                    stage=stage.value,
                )
                return False

            machine.transition(session.status, SessionStatus.FAILED)
            session.status = SessionStatus.FAILED
            session.failure_stage = stage
            session.failure_output = output
            session.terminated_at = _now_ms()
            self.store.update(session)

        logger.error("preview.failed", session_id=session_id, stage=stage.value)
        return True

    def _ensure_live(self, session_id: str) -> None:
        session = self._require(session_id)
        if SessionStateMachine.is_terminal(session.status):
            raise SessionTerminal(session.status, session_id)

    def _release_pending(self, session_id: str) -> None:
        with self._registry_lock:
            port = self._pending_release.pop(session_id, None)
        if port is not None:
            self.ports.release(port)
            logger.info("preview.port_released", session_id=session_id, port=port)

    def _forget_if_settled(self, session_id: str) -> None:
        """Drop per-session bookkeeping once teardown and the pipeline have both finished."""
        with self._registry_lock:
            if session_id not in self._finalized or session_id not in self._pipelines_done:
                return
            self._finalized.discard(session_id)
            self._pipelines_done.discard(session_id)
            self._locks.pop(session_id, None)
            self._machines.pop(session_id, None)
            self._threads.pop(session_id, None)

    # =========================================================================
    # TTL
    # =========================================================================

    def _start_ttl(self, session_id: str) -> None:
        timer = threading.Timer(self.config.session_ttl, self._on_ttl_expired, args=(session_id,))
        timer.daemon = True
        with self._registry_lock:
            self._timers[session_id] = timer
        timer.start()

    def _cancel_ttl(self, session_id: str) -> None:
        with self._registry_lock:
            timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    def _on_ttl_expired(self, session_id: str) -> None:
        logger.warning("preview.ttl_expired", session_id=session_id)
        try:
            self.terminate_preview(session_id, TeardownReason.TTL_EXPIRED)
        except Exception:
            logger.exception("preview.ttl_termination_failed", session_id=session_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _url(self, port: int) -> str:
        return f"http://{self.config.host}:{port}"

    def _require(self, session_id: str) -> PreviewSession:
        session = self.store.find(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _lock_for(self, session_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._locks.setdefault(session_id, threading.RLock())

    def _machine_for(self, session_id: str) -> SessionStateMachine:
        with self._registry_lock:
            machine = self._machines.get(session_id)
            if machine is None:
                machine = self._machines[session_id] = SessionStateMachine(session_id)
            return machine
