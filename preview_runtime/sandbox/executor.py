"""
Container Executor - Launch and tear down isolated Docker sandboxes.

Security Requirements:
- Workspace mounted read-only at /app (the sandbox cannot modify input)
- Strict resource limits (1 CPU, 512MB memory, no swap, 100 processes)
- No outward DNS; the only traffic in is the published service port
- Runs as the non-root "node" user with all capabilities dropped
- Containers auto-removed by Docker when their main process exits

The container's main process is a no-op (``tail -f /dev/null``) so lifecycle
commands can be executed into it one at a time.
"""

import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Literal, Optional

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from preview_runtime.errors import WorkspaceNotFound

logger = structlog.get_logger()


# =============================================================================
# CONSTANTS
# =============================================================================

# Pinned runtime image, never resolved from a floating tag
DOCKER_IMAGE = "node:18.19.0-alpine"

# Port the application listens on inside the sandbox
CONTAINER_PORT = 3000
WORKDIR = "/app"
CONTAINER_USER = "node"

# Resource limits
MAX_CPUS = 1
MAX_MEMORY = "512m"
MAX_PIDS = 100

# Teardown grace period before SIGKILL (seconds)
TERMINATE_GRACE_SECONDS = 5.0
EXIT_POLL_INTERVAL = 0.5

ContainerStatus = Literal["running", "exited", "killed", "unknown"]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ContainerHandle:
    """Reference to a launched sandbox."""
    container_id: str
    container_name: str
    port: int


# =============================================================================
# CONTAINER EXECUTOR
# =============================================================================

class ContainerExecutor:
    """
    Docker-backed sandbox control surface.

    Only this class talks to the Docker daemon; the orchestrator and the
    command runner work with ContainerHandle values.
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        image: str = DOCKER_IMAGE,
        container_port: int = CONTAINER_PORT,
        user: str = CONTAINER_USER,
        host_ip: str = "127.0.0.1",
    ):
        self._client = client
        self.image = image
        self.container_port = container_port
        self.user = user
        self.host_ip = host_ip
        self._image_lock = threading.Lock()
        self._image_ready = False

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def ping(self) -> bool:
        """Check that the Docker daemon answers."""
        try:
            return bool(self.client.ping())
        except DockerException:
            return False

    def ensure_image(self) -> None:
        """Verify the pinned image is present locally, pulling it once if missing."""
        with self._image_lock:
            if self._image_ready:
                return
            try:
                self.client.images.get(self.image)
            except ImageNotFound:
                logger.info("preview.image_pull", image=self.image)
                self.client.images.pull(self.image)
            self._image_ready = True

    def launch(self, workspace_path: str, host_port: int, name: Optional[str] = None) -> ContainerHandle:
        """
        Launch a sandbox with the workspace mounted read-only.

        Args:
            workspace_path: Directory holding the assembled application
            host_port: Host port the service port is published on
            name: Optional container name

        Returns:
            Handle for the running sandbox

        Raises:
            WorkspaceNotFound: If workspace_path is not a directory
        """
        if not os.path.isdir(workspace_path):
            raise WorkspaceNotFound(workspace_path)

        self.ensure_image()

        container_name = name or f"preview-{uuid.uuid4()}"
        workspace = os.path.abspath(workspace_path)

        container = self.client.containers.run(
            image=self.image,
            command=["tail", "-f", "/dev/null"],
            name=container_name,
            detach=True,
            auto_remove=True,
            working_dir=WORKDIR,
            volumes={workspace: {"bind": WORKDIR, "mode": "ro"}},
            ports={f"{self.container_port}/tcp": (self.host_ip, host_port)},
            nano_cpus=int(MAX_CPUS * 1_000_000_000),
            mem_limit=MAX_MEMORY,
            memswap_limit=MAX_MEMORY,  # equal to mem_limit: no swap
            pids_limit=MAX_PIDS,
            network_mode="bridge",
            dns=["127.0.0.1"],  # nothing resolves outward
            cap_drop=["ALL"],
            security_opt=["no-new-privileges"],
            user=self.user,
            environment={
                "NODE_ENV": "production",
                "PORT": str(self.container_port),
                "HOSTNAME": "0.0.0.0",
            },
        )

        logger.info(
            "preview.container_launched",
            container_id=container.id,
            container_name=container_name,
            port=host_port,
        )
        return ContainerHandle(container_id=container.id, container_name=container_name, port=host_port)

    def status(self, handle: ContainerHandle) -> ContainerStatus:
        """Best-effort container status; "unknown" if it no longer resolves."""
        try:
            container = self.client.containers.get(handle.container_id)
            state = container.status
        except (NotFound, APIError, DockerException):
            return "unknown"

        if state == "running":
            return "running"
        if state == "exited":
            return "exited"
        if state in ("dead", "killed"):
            return "killed"
        return "unknown"

    def is_running(self, handle: ContainerHandle) -> bool:
        return self.status(handle) == "running"

    def kill(self, handle: ContainerHandle, signal: str = "SIGTERM") -> None:
        """Send a signal to the container. A vanished container is not an error."""
        try:
            self.client.containers.get(handle.container_id).kill(signal=signal)
        except (NotFound, APIError) as e:
            logger.debug("preview.kill_ignored", container_id=handle.container_id, signal=signal, error=str(e))

    def wait_for_exit(self, handle: ContainerHandle, timeout: float) -> bool:
        """Poll until the container stops running. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.is_running(handle):
                return True
            time.sleep(EXIT_POLL_INTERVAL)
        return not self.is_running(handle)

    def force_terminate(self, handle: ContainerHandle) -> None:
        """
        Stop a sandbox: SIGTERM, wait up to 5 seconds, then SIGKILL.

        Idempotent; terminating an already-gone sandbox does nothing.
        """
        self.kill(handle, "SIGTERM")
        if not self.wait_for_exit(handle, TERMINATE_GRACE_SECONDS):
            self.kill(handle, "SIGKILL")

        # auto_remove deletes the container once it exits
        logger.info("preview.container_terminated", container_id=handle.container_id)

    def exec_stream(
        self,
        handle: ContainerHandle,
        command: str,
        on_stdout: Callable[[bytes], None],
        on_stderr: Callable[[bytes], None],
    ) -> Optional[int]:
        """
        Run one shell command inside the sandbox, streaming output chunks.

        Blocks until the command exits or the container goes away.

        Returns:
            The command's exit code
        """
        api = self.client.api
        exec_id = api.exec_create(
            handle.container_id,
            ["sh", "-c", command],
            stdout=True,
            stderr=True,
            user=self.user,
            workdir=WORKDIR,
        )["Id"]

        for stdout_chunk, stderr_chunk in api.exec_start(exec_id, stream=True, demux=True):
            if stdout_chunk:
                on_stdout(stdout_chunk)
            if stderr_chunk:
                on_stderr(stderr_chunk)

        return api.exec_inspect(exec_id).get("ExitCode")
