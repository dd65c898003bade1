"""
Provisioning Runtime

Manages a long-lived Qdrant container through the docker CLI. The container
is named, restarts with the daemon and keeps its data in a named volume, so
it is shared by every process and never torn down on exit.

The bootstrap only talks to the ``ProvisioningRuntime`` protocol; tests
substitute a fake runtime.
"""

import socket
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable

import requests

from ..logging_config import configure_logger_for_debug_trace
from ..search_exceptions import ProvisioningError, ProvisioningPermissionError

logger = configure_logger_for_debug_trace(__name__)

QDRANT_CONTAINER_PORT = 6333
QDRANT_STORAGE_PATH = "/qdrant/storage"
HEALTH_PATH = "/healthz"


@dataclass
class ManagedInstanceSpec:
    """
    Desired managed instance.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    name: str
    image: str
    host_port: int
    volume_name: Optional[str] = None


@dataclass
class ManagedInstanceInfo:
    """
    Observed managed instance.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    name: str
    container_id: str
    state: str
    image: str = ""
    created: bool = False  # True when this process created the container

    @property
    def running(self) -> bool:
        return self.state == "running"


@runtime_checkable
class ProvisioningRuntime(Protocol):
    """Capability to run the vector store as a managed instance."""

    def check_permission(self) -> bool: ...

    def instance_info(self, name: str) -> Optional[ManagedInstanceInfo]: ...

    def ensure_managed_instance(self, spec: ManagedInstanceSpec) -> ManagedInstanceInfo: ...

    def wait_for_health(self, url: str, timeout: float) -> bool: ...


def is_port_free(host: str, port: int, timeout: float = 1.0) -> bool:
    """True if nothing accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return False
    except OSError:
        return True


def wait_for_http_health(url: str, timeout: float, interval: float = 1.0) -> bool:
    """
    Poll ``url + /healthz`` until it answers 200 or the timeout expires.

    Returns:
        True if the endpoint became healthy within the timeout
    """
    health_url = url.rstrip("/") + HEALTH_PATH
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        attempt += 1
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(f"Health check {health_url} timed out after {attempt - 1} attempts")
            return False
        try:
            response = requests.get(health_url, timeout=min(2.0, remaining))
            if response.status_code == 200:
                logger.info(f"Health check {health_url} succeeded (attempt {attempt})")
                return True
            logger.debug(f"Health check {health_url}: HTTP {response.status_code}")
        except requests.RequestException as e:
            logger.debug(f"Health check {health_url} attempt {attempt}: {e}")
        time.sleep(max(0.0, min(interval, deadline - time.monotonic())))


class DockerProvisioningRuntime:
    """
    ProvisioningRuntime backed by the docker CLI.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a manager.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    def __init__(self, docker_binary: str = "docker", command_timeout: float = 60.0):
        self.docker_binary = docker_binary
        self.command_timeout = command_timeout

    def _run(self, args: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        cmd = [self.docker_binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ProvisioningPermissionError(f"{self.docker_binary} executable not found") from e
        except OSError as e:
            raise ProvisioningPermissionError(f"Cannot execute {self.docker_binary}: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ProvisioningError(f"{' '.join(cmd)} timed out after {e.timeout}s") from e

    def check_permission(self) -> bool:
        """True if the docker daemon is reachable by this user."""
        try:
            result = self._run(["version", "--format", "{{.Server.Version}}"], timeout=10.0)
        except ProvisioningError as e:
            logger.warning(f"docker is not usable: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"docker is not usable: {result.stderr.strip()}")
            return False
        return True

    def instance_info(self, name: str) -> Optional[ManagedInstanceInfo]:
        result = self._run([
            "ps", "-a",
            "--filter", f"name=^/{name}$",
            "--format", "{{.ID}}\t{{.State}}\t{{.Image}}",
        ])
        if result.returncode != 0:
            raise ProvisioningError(f"docker ps failed: {result.stderr.strip()}")

        line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        if not line:
            return None
        parts = line.split("\t")
        container_id = parts[0]
        state = parts[1] if len(parts) > 1 else "unknown"
        image = parts[2] if len(parts) > 2 else ""
        return ManagedInstanceInfo(name=name, container_id=container_id, state=state, image=image)

    def ensure_managed_instance(self, spec: ManagedInstanceSpec) -> ManagedInstanceInfo:
        """
        Reuse a running container, start a stopped one, or create it.

        Raises:
            ProvisioningError: If docker fails
        """
        info = self.instance_info(spec.name)
        if info is not None and info.running:
            logger.info(f"Reusing running container {spec.name} ({info.container_id})")
            return info

        if info is not None:
            logger.info(f"Starting stopped container {spec.name} ({info.container_id})")
            self._check(self._run(["start", spec.name]), f"docker start {spec.name}")
        else:
            logger.info(f"Creating container {spec.name} from {spec.image}")
            args = [
                "run", "-d",
                "--name", spec.name,
                "--restart", "unless-stopped",
                "-p", f"{spec.host_port}:{QDRANT_CONTAINER_PORT}",
            ]
            if spec.volume_name:
                args += ["-v", f"{spec.volume_name}:{QDRANT_STORAGE_PATH}"]
            args.append(spec.image)
            self._check(self._run(args), f"docker run {spec.image}")

        started = self.instance_info(spec.name)
        if started is None:
            raise ProvisioningError(f"Container {spec.name} not found after start")
        started.created = info is None
        return started

    def wait_for_health(self, url: str, timeout: float) -> bool:
        return wait_for_http_health(url, timeout)

    @staticmethod
    def _check(result: subprocess.CompletedProcess, what: str) -> None:
        if result.returncode != 0:
            raise ProvisioningError(
                f"{what} failed (exit {result.returncode}): {result.stderr.strip()}",
                {"command": what},
            )
