"""
Tools module - locate the external programs the stack depends on.

Only presence is checked here; n8n-stack never installs docker itself.
"""

import shutil
import subprocess
from pathlib import Path


def get_tool_path(tool_name: str) -> Path | None:
    """Find a tool on the system PATH."""
    sys_path = shutil.which(tool_name)
    if sys_path:
        return Path(sys_path)
    return None


def compose_version(docker: str = "docker") -> str | None:
    """
    Version string of the ``docker compose`` plugin.

    Returns:
        Version (e.g. ``2.29.1``) or None when the plugin is unavailable
    """
    try:
        result = subprocess.run(
            [docker, "compose", "version", "--short"],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def check_tools_status() -> dict[str, str | None]:
    """
    Check status of all external tools.

    Returns:
        Dict mapping tool name to a location or version (None if not found)
    """
    docker = get_tool_path("docker")
    return {
        "docker": str(docker) if docker else None,
        "docker compose": compose_version(str(docker)) if docker else None,
        "openssl": str(path) if (path := get_tool_path("openssl")) else None,
    }
