"""
Compose module - narrow typed interface over the docker / docker compose CLI.

All parsing of docker output happens here so the orchestrators only deal
with ServiceStatus and StackHealth values.
"""

import json
import logging
import subprocess
from enum import Enum
from pathlib import Path

import yaml

from .constants import HELPER_IMAGE_FALLBACK, HELPER_SERVICE
from .errors import CommandFailed

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600


class ServiceStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class StackHealth(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


def parse_ps_output(output: str) -> list[dict]:
    """
    Parse ``docker compose ps --format json``.

    Compose < 2.21 prints a JSON array, newer releases print one JSON
    object per line.
    """
    text = output.strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def health_from_containers(containers: list[dict]) -> StackHealth:
    """Reduce container states to a single stack health value."""
    if not containers:
        return StackHealth.UNKNOWN
    for container in containers:
        if container.get("State", "").lower() != "running":
            return StackHealth.DEGRADED
        if container.get("Health", "").lower() in ("starting", "unhealthy"):
            return StackHealth.DEGRADED
    return StackHealth.HEALTHY


class ComposeClient:
    """
    Runs docker commands against one compose project.

    Args:
        compose_file: Path to compose.yaml
        docker: docker executable
        timeout: Timeout in seconds for captured commands
    """

    def __init__(self, compose_file: Path, docker: str = "docker", timeout: int = DEFAULT_TIMEOUT):
        self.compose_file = compose_file
        self.docker = docker
        self.timeout = timeout

    def compose_command(self, *args: str) -> list[str]:
        return [self.docker, "compose", "-f", str(self.compose_file), *args]

    def _run(self, cmd: list[str], check: bool = True, timeout: int | None = None) -> subprocess.CompletedProcess:
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout or self.timeout)
        except FileNotFoundError as err:
            raise CommandFailed(cmd, None, f"{self.docker} not found - please install Docker") from err
        except subprocess.TimeoutExpired as err:
            raise CommandFailed(cmd, None, f"timed out after {err.timeout}s") from err

        if check and result.returncode != 0:
            raise CommandFailed(cmd, result.returncode, result.stderr or "")
        return result

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def ps(self, *services: str) -> list[dict]:
        """List containers of the project (including stopped ones)."""
        result = self._run(self.compose_command("ps", "--all", "--format", "json", *services), timeout=60)
        return parse_ps_output(result.stdout)

    def service_status(self, service: str) -> ServiceStatus:
        try:
            containers = self.ps(service)
        except (CommandFailed, json.JSONDecodeError) as e:
            logger.debug("Could not query status of %s: %s", service, e)
            return ServiceStatus.UNKNOWN

        containers = [c for c in containers if c.get("Service", service) == service]
        if any(c.get("State", "").lower() == "running" for c in containers):
            return ServiceStatus.RUNNING
        return ServiceStatus.STOPPED

    def stack_health(self) -> StackHealth:
        try:
            containers = self.ps()
        except (CommandFailed, json.JSONDecodeError) as e:
            logger.debug("Could not query stack health: %s", e)
            return StackHealth.UNKNOWN
        return health_from_containers(containers)

    def running_services(self) -> list[str]:
        try:
            containers = self.ps()
        except (CommandFailed, json.JSONDecodeError):
            return []
        return sorted({c.get("Service", "") for c in containers if c.get("State", "").lower() == "running"})

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def up(self, *services: str) -> None:
        self._run(self.compose_command("up", "-d", *services))

    def down(self) -> None:
        self._run(self.compose_command("down"))

    def pull(self) -> None:
        self._run(self.compose_command("pull"))

    def exec(self, service: str, command: list[str], check: bool = False) -> subprocess.CompletedProcess:
        """Run a command inside a service container and capture its output."""
        return self._run(self.compose_command("exec", "-T", service, *command), check=check)

    def exec_stream(self, service: str, command: list[str], stdin=None, stdout=None, stderr=None) -> subprocess.Popen:
        """Start a command inside a service container for streaming (dump/restore pipes)."""
        cmd = self.compose_command("exec", "-T", service, *command)
        logger.debug("Streaming: %s", " ".join(cmd))
        try:
            return subprocess.Popen(cmd, stdin=stdin, stdout=stdout, stderr=stderr)
        except FileNotFoundError as err:
            raise CommandFailed(cmd, None, f"{self.docker} not found - please install Docker") from err

    # -------------------------------------------------------------------------
    # Volumes and helper containers
    # -------------------------------------------------------------------------

    def volume_exists(self, name: str) -> bool:
        try:
            result = self._run([self.docker, "volume", "inspect", name], check=False, timeout=60)
        except CommandFailed:
            return False
        return result.returncode == 0

    def remove_volume(self, name: str) -> bool:
        """Remove a volume; returns False if it did not exist or could not be removed."""
        result = self._run([self.docker, "volume", "rm", name], check=False, timeout=60)
        return result.returncode == 0

    def create_volume(self, name: str) -> None:
        self._run([self.docker, "volume", "create", name], timeout=60)

    def run_container(self, image: str, volumes: list[str], command: list[str]) -> None:
        """Run a throwaway container (``docker run --rm``) with the given mounts."""
        cmd = [self.docker, "run", "--rm"]
        for volume in volumes:
            cmd.extend(["-v", volume])
        cmd.append(image)
        cmd.extend(command)
        self._run(cmd)

    def helper_image(self, fallback: str = HELPER_IMAGE_FALLBACK) -> str:
        """Image of the pinned helper service in compose.yaml (kept current by Dependabot)."""
        try:
            with open(self.compose_file) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            return fallback

        services = data.get("services") or {}
        helper = services.get(HELPER_SERVICE) or {}
        image = helper.get("image") if isinstance(helper, dict) else None
        return str(image) if image else fallback
