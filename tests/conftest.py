"""Shared fixtures: a scripted stand-in for the Docker executor and a runtime wired to it."""

import os
import threading
import time

import pytest

from preview_runtime.config import Config
from preview_runtime.errors import WorkspaceNotFound
from preview_runtime.schemas import AssemblyRecord
from preview_runtime.sandbox.executor import ContainerHandle
from preview_runtime.sandbox.gate import AssemblyRecordGate
from preview_runtime.sandbox.ports import PortAllocator
from preview_runtime.sandbox.preview import PreviewRuntime

# Script value: block until the container is killed
BLOCK = "block"

MANIFEST_HASH = "a" * 64


class FakeExecutor:
    """
    Executor double with per-command scripted outcomes.

    scripts maps command text to (exit_code, stdout_bytes, stderr_bytes) or
    BLOCK. An exit_code of BLOCK emits the output, then blocks. Unscripted
    commands succeed with no output.
    """

    def __init__(self, scripts=None):
        self.scripts = dict(scripts or {})
        self.launched = []
        self.terminated = []
        self.executed = []
        self.launch_error = None
        # Set to an Event to park the next launch until it is set
        self.launch_hold = None
        self.launch_entered = threading.Event()
        self._killed = {}
        self._lock = threading.Lock()

    def launch(self, workspace_path, host_port, name=None):
        if not os.path.isdir(workspace_path):
            raise WorkspaceNotFound(workspace_path)
        hold, self.launch_hold = self.launch_hold, None
        if hold is not None:
            self.launch_entered.set()
            hold.wait()
        if self.launch_error is not None:
            raise self.launch_error
        with self._lock:
            handle = ContainerHandle(
                container_id=f"container-{len(self.launched) + 1}",
                container_name=name or "preview-test",
                port=host_port,
            )
            self.launched.append(handle)
            self._killed[handle.container_id] = threading.Event()
        return handle

    def status(self, handle):
        killed = self._killed.get(handle.container_id)
        if killed is None:
            return "unknown"
        return "killed" if killed.is_set() else "running"

    def is_running(self, handle):
        return self.status(handle) == "running"

    def force_terminate(self, handle):
        with self._lock:
            self.terminated.append(handle.container_id)
            killed = self._killed.get(handle.container_id)
        if killed is not None:
            killed.set()

    def exec_stream(self, handle, command, on_stdout, on_stderr):
        with self._lock:
            self.executed.append(command)
        script = self.scripts.get(command, (0, b"", b""))
        if script == BLOCK:
            script = (BLOCK, b"", b"")
        exit_code, out, err = script
        if out:
            on_stdout(out)
        if err:
            on_stderr(err)
        if exit_code == BLOCK:
            self._killed[handle.container_id].wait()
            return 137
        return exit_code


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it is truthy or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def config(tmp_path):
    """Fast, isolated configuration."""
    cfg = Config(env_file=tmp_path / "absent.env")
    cfg.port_range_start = 20000
    cfg.port_range_end = 20009
    cfg.host = "localhost"
    cfg.install_timeout = 5
    cfg.build_timeout = 5
    cfg.start_timeout = 2
    cfg.session_ttl = 60
    cfg.readiness_interval = 0.01
    return cfg


@pytest.fixture
def workspace(tmp_path):
    """A small assembled application."""
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "package.json").write_text('{"name": "demo", "scripts": {"build": "next build"}}')
    (root / "src" / "index.js").write_text("console.log('hi')\n")
    return root


@pytest.fixture
def records(workspace):
    return {
        "req-1": AssemblyRecord(
            request_id="req-1",
            verdict="COMPLETE",
            manifest_hash=MANIFEST_HASH,
            framework_version="14.2.0",
            workspace_path=str(workspace),
        ),
    }


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def make_runtime(config, records, executor):
    """Build a runtime; keyword overrides replace collaborators."""
    created = []

    def factory(**overrides):
        kwargs = dict(
            gate=AssemblyRecordGate(records),
            executor=executor,
            config=config,
            ports=PortAllocator(config.port_range_start, config.port_range_end),
            probe=lambda url: True,
        )
        kwargs.update(overrides)
        runtime = PreviewRuntime(**kwargs)
        created.append(runtime)
        return runtime

    yield factory

    for runtime in created:
        runtime.shutdown()
