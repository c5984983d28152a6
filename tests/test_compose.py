"""Tests for the docker compose interface (subprocess mocked)."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from n8n_stack.compose import (
    ComposeClient,
    ServiceStatus,
    StackHealth,
    health_from_containers,
    parse_ps_output,
)
from n8n_stack.errors import CommandFailed

CONTAINERS = [
    {"Service": "postgres", "State": "running", "Health": "healthy"},
    {"Service": "n8n", "State": "running", "Health": ""},
]


class TestParsePsOutput:
    """Both output shapes of `docker compose ps --format json`."""

    def test_json_array(self):
        assert parse_ps_output(json.dumps(CONTAINERS)) == CONTAINERS

    def test_ndjson(self):
        output = "\n".join(json.dumps(c) for c in CONTAINERS) + "\n"

        assert parse_ps_output(output) == CONTAINERS

    def test_empty(self):
        assert parse_ps_output("  \n") == []


class TestHealthFromContainers:
    """Tests for the stack health reduction."""

    def test_all_running(self):
        assert health_from_containers(CONTAINERS) == StackHealth.HEALTHY

    def test_no_containers(self):
        assert health_from_containers([]) == StackHealth.UNKNOWN

    def test_exited_container(self):
        containers = [*CONTAINERS, {"Service": "cloudflared", "State": "exited", "Health": ""}]

        assert health_from_containers(containers) == StackHealth.DEGRADED

    @pytest.mark.parametrize("health", ["starting", "unhealthy"])
    def test_not_yet_healthy(self, health):
        containers = [{"Service": "postgres", "State": "running", "Health": health}]

        assert health_from_containers(containers) == StackHealth.DEGRADED


class TestComposeClient:
    """Tests for ComposeClient command construction and error mapping."""

    @pytest.fixture
    def client(self, stack_root):
        return ComposeClient(stack_root / "compose.yaml")

    def test_compose_command(self, client, stack_root):
        assert client.compose_command("up", "-d") == [
            "docker", "compose", "-f", str(stack_root / "compose.yaml"), "up", "-d",
        ]

    def test_service_status_running(self, client, mock_subprocess):
        """Test a running postgres container reads as RUNNING."""
        mock_subprocess.return_value = MagicMock(returncode=0, stdout=json.dumps(CONTAINERS), stderr="")

        assert client.service_status("postgres") == ServiceStatus.RUNNING
        args = mock_subprocess.call_args[0][0]
        assert args[-5:] == ["ps", "--all", "--format", "json", "postgres"]

    def test_service_status_stopped(self, client, mock_subprocess):
        mock_subprocess.return_value = MagicMock(
            returncode=0, stdout=json.dumps([{"Service": "postgres", "State": "exited"}]), stderr=""
        )

        assert client.service_status("postgres") == ServiceStatus.STOPPED

    def test_service_status_absent(self, client, mock_subprocess):
        """Test no container at all reads as STOPPED."""
        mock_subprocess.return_value = MagicMock(returncode=0, stdout="", stderr="")

        assert client.service_status("postgres") == ServiceStatus.STOPPED

    def test_service_status_unknown_on_failure(self, client, mock_subprocess):
        """Test a failing docker daemon reads as UNKNOWN, not as an exception."""
        mock_subprocess.return_value = MagicMock(returncode=1, stdout="", stderr="Cannot connect to the Docker daemon")

        assert client.service_status("postgres") == ServiceStatus.UNKNOWN

    def test_stack_health(self, client, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout=json.dumps(CONTAINERS), stderr="")

        assert client.stack_health() == StackHealth.HEALTHY
        assert client.running_services() == ["n8n", "postgres"]

    def test_command_failed_details(self, client, mock_subprocess):
        """Test CommandFailed carries command, exit code and stderr."""
        mock_subprocess.return_value = MagicMock(returncode=17, stdout="", stderr="no such service\n")

        with pytest.raises(CommandFailed) as exc_info:
            client.up("postgres")

        assert exc_info.value.returncode == 17
        assert exc_info.value.stderr == "no such service"
        assert exc_info.value.command[-3:] == ["up", "-d", "postgres"]

    def test_docker_missing(self, client):
        """Test a missing docker binary becomes CommandFailed."""
        with patch("subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(CommandFailed, match="not found"):
                client.down()

    def test_timeout(self, client):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["docker"], 600)):
            with pytest.raises(CommandFailed, match="timed out"):
                client.pull()

    def test_exec_does_not_raise(self, client, mock_subprocess):
        """Test exec returns the result so callers can inspect the exit code."""
        mock_subprocess.return_value = MagicMock(returncode=2, stdout="", stderr="")

        result = client.exec("postgres", ["pg_isready", "-U", "n8n"])

        assert result.returncode == 2
        assert mock_subprocess.call_args[0][0][-5:] == ["-T", "postgres", "pg_isready", "-U", "n8n"]

    def test_volume_exists(self, client, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout="[]", stderr="")
        assert client.volume_exists("n8n_data") is True

        mock_subprocess.return_value = MagicMock(returncode=1, stdout="", stderr="no such volume")
        assert client.volume_exists("n8n_data") is False

    def test_run_container(self, client, mock_subprocess):
        """Test helper containers are throwaway with the requested mounts."""
        client.run_container("alpine:3.21", ["vol:/data:ro", "/tmp/x:/backup"], ["tar", "czf", "/backup/a.tgz"])

        assert mock_subprocess.call_args[0][0] == [
            "docker", "run", "--rm", "-v", "vol:/data:ro", "-v", "/tmp/x:/backup",
            "alpine:3.21", "tar", "czf", "/backup/a.tgz",
        ]

    def test_helper_image_from_compose(self, client):
        """Test the pinned alpine image is read from compose.yaml."""
        assert client.helper_image() == "alpine:3.21"

    def test_helper_image_fallback(self, tmp_path):
        (tmp_path / "compose.yaml").write_text("services:\n  n8n:\n    image: n8nio/n8n\n")

        assert ComposeClient(tmp_path / "compose.yaml").helper_image() == "alpine:3.20"
