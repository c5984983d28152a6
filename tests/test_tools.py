"""Tests for tools module."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

from n8n_stack.tools import check_tools_status, compose_version, get_tool_path


class TestGetToolPath:
    """Tests for tool path lookup."""

    def test_found(self):
        with patch("shutil.which", return_value="/usr/bin/docker"):
            assert get_tool_path("docker") == Path("/usr/bin/docker")

    def test_not_found(self):
        with patch("shutil.which", return_value=None):
            assert get_tool_path("docker") is None


class TestComposeVersion:
    """Tests for compose plugin detection."""

    def test_version(self, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout="2.29.1\n", stderr="")

        assert compose_version() == "2.29.1"
        assert mock_subprocess.call_args[0][0] == ["docker", "compose", "version", "--short"]

    def test_plugin_missing(self, mock_subprocess):
        """Test docker without the compose plugin."""
        mock_subprocess.return_value = MagicMock(returncode=1, stdout="", stderr="'compose' is not a docker command")

        assert compose_version() is None

    def test_timeout(self):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["docker"], 30)):
            assert compose_version() is None


class TestCheckToolsStatus:
    """Tests for check_tools_status."""

    def test_all_available(self, _mock_shutil_which, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout="2.29.1\n", stderr="")

        status = check_tools_status()

        assert status == {"docker": "/usr/bin/docker", "docker compose": "2.29.1", "openssl": "/usr/bin/openssl"}

    def test_without_docker(self, mock_subprocess):
        """Test the compose plugin is not probed when docker itself is missing."""
        with patch("shutil.which", return_value=None):
            status = check_tools_status()

        assert status == {"docker": None, "docker compose": None, "openssl": None}
        mock_subprocess.assert_not_called()
