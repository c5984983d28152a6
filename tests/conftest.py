"""Shared pytest fixtures for n8n-stack tests."""

import gzip
import io
import subprocess
import tarfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from n8n_stack.compose import ServiceStatus, StackHealth
from n8n_stack.config import load_config
from n8n_stack.environment import load_environment

VALID_ENV = """\
# n8n deployment
POSTGRES_USER=n8n_admin
POSTGRES_PASSWORD=s3cr3t-Pa55word
POSTGRES_DB=n8n
POSTGRES_NON_ROOT_USER=n8n
POSTGRES_NON_ROOT_PASSWORD=an0ther-Pa55word
N8N_ENCRYPTION_KEY=0f1e2d3c4b5a69788796a5b4c3d2e1f0
N8N_RUNNERS_AUTH_TOKEN=runner-token-123
DOMAIN_NAME=example.com
SUBDOMAIN=n8n
"""

COMPOSE_YAML = """\
services:
  postgres:
    image: postgres:16
  n8n:
    image: n8nio/n8n:latest
  alpine:
    image: alpine:3.21
    profiles: ["tools"]
volumes:
  n8n_data:
"""

SQL_DUMP = b"CREATE TABLE workflow_entity (id integer);\nINSERT INTO workflow_entity VALUES (1);\n"


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    """Keep the caller's n8n-stack settings out of the tests."""
    for key in (
        "N8N_STACK_ROOT",
        "N8N_STACK_BACKUP_DIR",
        "N8N_STACK_CONFIG",
        "N8N_STACK_LOG_LEVEL",
        "N8N_STACK_REPOSITORY",
        "BACKUP_ENCRYPTION_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", "/nonexistent-n8n-stack-config")


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def stack_root(tmp_path):
    """Create a deployment directory as shipped by the n8n compose repository."""
    root = tmp_path / "n8n-compose"
    root.mkdir()
    (root / "compose.yaml").write_text(COMPOSE_YAML)
    (root / ".env").write_text(VALID_ENV)
    (root / ".env.example").write_text("POSTGRES_PASSWORD=CHANGE_ME_generate_strong_password\n")
    (root / "init-data.sh").write_text("#!/bin/bash\necho init\n")
    (root / ".version").write_text("v1.0.0\n")
    return root


@pytest.fixture
def app_config(stack_root):
    """Tool configuration rooted at the test deployment."""
    return load_config(root=stack_root)


@pytest.fixture
def environment(stack_root):
    return load_environment(stack_root / ".env")


# =============================================================================
# Fake docker
# =============================================================================


class RecordingStdin(io.BytesIO):
    """stdin of a fake process; keeps the written bytes after close()."""

    def close(self):
        self.captured = self.getvalue()
        super().close()


class FakeProcess:
    """Minimal stand-in for subprocess.Popen used by streaming pipelines."""

    def __init__(self, stdout: bytes = b"", returncode: int = 0, stdin=False):
        self.stdout = io.BytesIO(stdout)
        self.stdin = RecordingStdin() if stdin else None
        self.returncode = returncode
        self.killed = False

    def wait(self, timeout=None):
        return self.returncode

    def kill(self):
        self.killed = True


def make_volume_tarball(path: Path, files: dict[str, bytes] | None = None) -> Path:
    """Write a tar.gz like the helper container produces for the data volume."""
    files = files or {"config": b'{"encryptionKey": "x"}', "database.sqlite": b""}
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(f"./{name}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class FakeCompose:
    """
    Records docker interactions and simulates a running stack.

    The helper container writes a real n8n_data.tar.gz into the mounted
    backup directory, so archives produced against it are valid.
    """

    def __init__(self, compose_file: Path | None = None):
        self.compose_file = compose_file
        self.calls: list[tuple] = []
        self.status = ServiceStatus.RUNNING
        self.health = StackHealth.HEALTHY
        self.volumes = {"n8n-compose_n8n_data"}
        self.dump = SQL_DUMP
        self.dump_returncode = 0
        self.dump_stderr = b""
        self.restore_returncode = 0
        self.ready_after = 1
        self.ready_checks = 0
        self.container_error: Exception | None = None
        self.containers = [
            {"Service": "postgres", "State": "running", "Health": "healthy"},
            {"Service": "n8n", "State": "running", "Health": ""},
        ]

    def compose_command(self, *args):
        return ["docker", "compose", "-f", str(self.compose_file), *args]

    def service_status(self, service):
        self.calls.append(("status", service))
        return self.status

    def stack_health(self):
        return self.health

    def running_services(self):
        return sorted(c["Service"] for c in self.containers if c["State"] == "running")

    def ps(self, *services):
        return list(self.containers)

    def up(self, *services):
        self.calls.append(("up", *services))

    def down(self):
        self.calls.append(("down",))

    def pull(self):
        self.calls.append(("pull",))

    def exec(self, service, command, check=False):
        self.calls.append(("exec", service, *command))
        returncode = 0
        if command[0] == "pg_isready":
            self.ready_checks += 1
            returncode = 0 if self.ready_checks >= self.ready_after else 2
        return subprocess.CompletedProcess(command, returncode, "", "")

    def exec_stream(self, service, command, stdin=None, stdout=None, stderr=None):
        self.calls.append(("stream", service, *command))
        if command[0] == "pg_dump":
            if self.dump_stderr and stderr is not None:
                stderr.write(self.dump_stderr)
                stderr.flush()
            return FakeProcess(stdout=self.dump, returncode=self.dump_returncode)
        self.restore_process = FakeProcess(returncode=self.restore_returncode, stdin=True)
        return self.restore_process

    def volume_exists(self, name):
        return name in self.volumes

    def remove_volume(self, name):
        self.calls.append(("volume_rm", name))
        existed = name in self.volumes
        self.volumes.discard(name)
        return existed

    def create_volume(self, name):
        self.calls.append(("volume_create", name))
        self.volumes.add(name)

    def run_container(self, image, volumes, command):
        self.calls.append(("run", image, *volumes))
        if self.container_error:
            raise self.container_error
        for mount in volumes:
            host, _, target = mount.partition(":")
            if target == "/backup" and command[0] == "tar":
                make_volume_tarball(Path(host) / "n8n_data.tar.gz")

    def helper_image(self, fallback="alpine:3.20"):
        return "alpine:3.21"

    def names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_compose(stack_root):
    return FakeCompose(stack_root / "compose.yaml")


# =============================================================================
# Backup archives
# =============================================================================


@pytest.fixture
def make_backup(tmp_path):
    """Factory building backup archives with a chosen layout."""

    def _make(
        name: str = "backup-20240101-020000",
        dump: bytes | None = SQL_DUMP,
        volume: bool = True,
        config: dict[str, str] | None = None,
        extra_roots: tuple[str, ...] = (),
    ) -> Path:
        build = tmp_path / "build" / name
        build.mkdir(parents=True)
        if dump is not None:
            with gzip.open(build / "database.sql.gz", "wb") as f:
                f.write(dump)
        if volume:
            make_volume_tarball(build / "n8n_data.tar.gz")
        if config is not None:
            (build / "config").mkdir()
            for filename, content in config.items():
                (build / "config" / filename).write_text(content)

        archive = tmp_path / f"{name}.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(build, arcname=name)
            for extra in extra_roots:
                extra_dir = tmp_path / "build" / extra
                extra_dir.mkdir(parents=True, exist_ok=True)
                tar.add(extra_dir, arcname=extra)
        return archive

    return _make


@pytest.fixture
def env_text():
    """Contents of a valid deployment .env."""
    return VALID_ENV


@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for tests that call external tools."""
    with patch("subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        yield mock_run


@pytest.fixture(name="_mock_shutil_which")
def mock_shutil_which():
    """Mock shutil.which to simulate available tools."""

    def which_side_effect(tool):
        available = {"docker", "openssl"}
        return f"/usr/bin/{tool}" if tool in available else None

    with patch("shutil.which", side_effect=which_side_effect) as mock:
        yield mock
