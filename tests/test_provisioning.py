"""
Tests for the docker provisioning runtime and the health/port probes.

subprocess.run and requests.get are monkeypatched; no docker daemon is used.
"""

import socket
import subprocess

import pytest
import requests

from manuscript_search.search_exceptions import ProvisioningError, ProvisioningPermissionError
from manuscript_search.services import provisioning
from manuscript_search.services.provisioning import (
    DockerProvisioningRuntime,
    ManagedInstanceSpec,
    is_port_free,
    wait_for_http_health,
)


class FakeDocker:
    """Replays scripted docker CLI results and records the commands."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd[1:])
        returncode, stdout, stderr = self.responses.pop(0)
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def spec():
    return ManagedInstanceSpec(
        name="manuscript-search-qdrant",
        image="qdrant/qdrant:latest",
        host_port=6333,
        volume_name="manuscript-search-qdrant-data",
    )


class TestDockerProvisioningRuntime:

    def test_check_permission(self, monkeypatch):
        monkeypatch.setattr(subprocess, "run", FakeDocker([(0, "27.0.1\n", "")]))
        assert DockerProvisioningRuntime().check_permission()

    def test_check_permission_denied(self, monkeypatch):
        monkeypatch.setattr(subprocess, "run", FakeDocker([(1, "", "permission denied")]))
        assert not DockerProvisioningRuntime().check_permission()

    def test_missing_docker_binary(self, monkeypatch):
        def missing(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(subprocess, "run", missing)
        runtime = DockerProvisioningRuntime()

        assert not runtime.check_permission()
        with pytest.raises(ProvisioningPermissionError):
            runtime.instance_info("x")

    def test_unexecutable_docker_binary(self, monkeypatch):
        def denied(cmd, **kwargs):
            raise PermissionError(13, "Permission denied", cmd[0])

        monkeypatch.setattr(subprocess, "run", denied)
        runtime = DockerProvisioningRuntime()

        assert not runtime.check_permission()
        with pytest.raises(ProvisioningPermissionError) as excinfo:
            runtime.instance_info("x")
        assert isinstance(excinfo.value.cause, PermissionError)

    def test_command_timeout(self, monkeypatch):
        def slow(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", slow)
        with pytest.raises(ProvisioningError):
            DockerProvisioningRuntime(command_timeout=1.0).instance_info("x")

    def test_instance_info(self, monkeypatch):
        monkeypatch.setattr(subprocess, "run", FakeDocker([(0, "abc123\trunning\tqdrant/qdrant:latest\n", "")]))

        info = DockerProvisioningRuntime().instance_info("manuscript-search-qdrant")

        assert info.container_id == "abc123"
        assert info.running
        assert info.image == "qdrant/qdrant:latest"

    def test_instance_info_missing(self, monkeypatch):
        monkeypatch.setattr(subprocess, "run", FakeDocker([(0, "", "")]))
        assert DockerProvisioningRuntime().instance_info("nope") is None

    def test_ensure_reuses_running_container(self, monkeypatch, spec):
        docker = FakeDocker([(0, "abc123\trunning\tqdrant/qdrant:latest\n", "")])
        monkeypatch.setattr(subprocess, "run", docker)

        info = DockerProvisioningRuntime().ensure_managed_instance(spec)

        assert info.running and not info.created
        assert [cmd[0] for cmd in docker.commands] == ["ps"]

    def test_ensure_starts_stopped_container(self, monkeypatch, spec):
        docker = FakeDocker([
            (0, "abc123\texited\tqdrant/qdrant:latest\n", ""),
            (0, "manuscript-search-qdrant\n", ""),
            (0, "abc123\trunning\tqdrant/qdrant:latest\n", ""),
        ])
        monkeypatch.setattr(subprocess, "run", docker)

        info = DockerProvisioningRuntime().ensure_managed_instance(spec)

        assert info.running and not info.created
        assert docker.commands[1] == ["start", "manuscript-search-qdrant"]

    def test_ensure_creates_persistent_container(self, monkeypatch, spec):
        docker = FakeDocker([
            (0, "", ""),
            (0, "abc123\n", ""),
            (0, "abc123\trunning\tqdrant/qdrant:latest\n", ""),
        ])
        monkeypatch.setattr(subprocess, "run", docker)

        info = DockerProvisioningRuntime().ensure_managed_instance(spec)

        assert info.created
        run = docker.commands[1]
        assert run[0] == "run"
        assert ["--restart", "unless-stopped"] == run[run.index("--restart"):run.index("--restart") + 2]
        assert "6333:6333" in run
        assert "manuscript-search-qdrant-data:/qdrant/storage" in run
        assert "--rm" not in run
        assert run[-1] == "qdrant/qdrant:latest"

    def test_ensure_run_failure(self, monkeypatch, spec):
        monkeypatch.setattr(subprocess, "run", FakeDocker([(0, "", ""), (125, "", "port is already allocated")]))

        with pytest.raises(ProvisioningError) as exc_info:
            DockerProvisioningRuntime().ensure_managed_instance(spec)

        assert "port is already allocated" in str(exc_info.value)


class _Response:

    def __init__(self, status_code):
        self.status_code = status_code


class TestProbes:

    def test_health_succeeds_after_retries(self, monkeypatch):
        answers = [requests.ConnectionError("refused"), _Response(503), _Response(200)]
        urls = []

        def fake_get(url, timeout):
            urls.append(url)
            answer = answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer

        monkeypatch.setattr(provisioning.requests, "get", fake_get)

        assert wait_for_http_health("http://localhost:6333/", timeout=5.0, interval=0.01)
        assert urls[0] == "http://localhost:6333/healthz"
        assert len(urls) == 3

    def test_health_times_out(self, monkeypatch):
        def refused(url, timeout):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(provisioning.requests, "get", refused)

        assert not wait_for_http_health("http://localhost:6333", timeout=0.1, interval=0.02)

    def test_port_probe(self):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]
        try:
            assert not is_port_free("127.0.0.1", port)
        finally:
            server.close()
        assert is_port_free("127.0.0.1", port, timeout=0.2)
