"""
Configuration management with YAML loading and environment variable support.

This is the configuration of the tool itself (where the deployment lives,
retention, polling budgets, release feed). The deployment's own secrets
live in .env and are handled by the environment module.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .constants import DATABASE_SERVICE, HELPER_IMAGE_FALLBACK, MANAGED_DIRS, MANAGED_FILES, VOLUME_NAME

CONFIG_FILENAME = "n8n-stack.yaml"


def _env_path(env_var: str, default: Path | None = None) -> Path | None:
    """Get path from environment variable or return default."""
    if value := os.environ.get(env_var):
        return Path(value)
    return default


@dataclass
class PathsConfig:
    """Deployment paths - relative entries resolve against ``root``."""

    root: Path = field(default_factory=lambda: _env_path("N8N_STACK_ROOT", Path.cwd()))
    compose_file: Path = Path("compose.yaml")
    env_file: Path = Path(".env")
    backup_dir: Path = field(default_factory=lambda: _env_path("N8N_STACK_BACKUP_DIR", Path("backups")))
    version_file: Path = Path(".version")


@dataclass
class BackupConfig:
    retention_days: int = 30
    database_service: str = DATABASE_SERVICE
    volume_name: str = VOLUME_NAME
    helper_image: str = HELPER_IMAGE_FALLBACK


@dataclass
class WaitConfig:
    """Polling budgets for readiness waits (seconds)."""

    database_attempts: int = 30
    database_initial: float = 2.0
    database_step: float = 1.0
    database_cap: float = 10.0
    health_attempts: int = 30
    health_interval: float = 5.0


@dataclass
class UpdateConfig:
    repository: str = field(
        default_factory=lambda: os.environ.get("N8N_STACK_REPOSITORY", "cognitivegears/n8n-compose")
    )
    api_base: str = "https://api.github.com"
    timeout: int = 30
    managed_files: list[str] = field(default_factory=lambda: list(MANAGED_FILES))
    managed_dirs: list[str] = field(default_factory=lambda: list(MANAGED_DIRS))


@dataclass
class LoggingConfig:
    level: str = field(default_factory=lambda: os.environ.get("N8N_STACK_LOG_LEVEL", "INFO"))
    file: Path | None = None
    console_logging: bool = True


_SECTIONS = ["paths", "backup", "waits", "update", "logging"]
_PATH_KEYS = {"root", "compose_file", "env_file", "backup_dir", "version_file", "file"}


@dataclass
class AppConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    waits: WaitConfig = field(default_factory=WaitConfig)
    update: UpdateConfig = field(default_factory=UpdateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "AppConfig":
        """Load configuration from YAML file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict) -> "AppConfig":
        """Create config from dictionary."""
        config = cls()

        for section_name in _SECTIONS:
            if section_name not in data:
                continue
            section = getattr(config, section_name)
            for key, value in (data[section_name] or {}).items():
                if not hasattr(section, key):
                    continue
                if key in _PATH_KEYS and isinstance(value, str):
                    value = Path(value).expanduser()
                setattr(section, key, value)

        return config

    def _to_dict(self) -> dict:
        """Convert config to dictionary."""
        result = {}
        for attr in _SECTIONS:
            section = getattr(self, attr)
            result[attr] = {
                key: str(value) if isinstance(value, Path) else value for key, value in vars(section).items()
            }
        return result

    def resolve(self, path: Path) -> Path:
        """Resolve a deployment-relative path against the install root."""
        return path if path.is_absolute() else self.paths.root / path

    @property
    def root(self) -> Path:
        return self.paths.root

    @property
    def compose_path(self) -> Path:
        return self.resolve(self.paths.compose_file)

    @property
    def env_path(self) -> Path:
        return self.resolve(self.paths.env_file)

    @property
    def backup_dir(self) -> Path:
        return self.resolve(self.paths.backup_dir)

    @property
    def version_path(self) -> Path:
        return self.resolve(self.paths.version_file)

    @property
    def project_name(self) -> str:
        """Compose project name derived from the install directory, as compose does."""
        name = self.paths.root.resolve().name.lower()
        return "".join(ch if ch.isascii() and ch.isalnum() else "-" for ch in name)


def _get_default_config_dir() -> Path:
    """Get default config directory."""
    if xdg_config := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_config) / "n8n-stack"

    return Path.home() / ".config" / "n8n-stack"


def load_config(config_path: Path | None = None, root: Path | None = None) -> AppConfig:
    """
    Load configuration for a deployment.

    Args:
        config_path: Explicit YAML file (default: N8N_STACK_CONFIG or search)
        root: Install root override (takes precedence over YAML and environment)

    Returns:
        AppConfig with the root resolved to an absolute path
    """
    if config_path is None:
        config_path = _env_path("N8N_STACK_CONFIG")

    if config_path is None:
        search_root = root or _env_path("N8N_STACK_ROOT", Path.cwd())
        search_paths = [
            search_root / CONFIG_FILENAME,
            _get_default_config_dir() / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    config = AppConfig.from_yaml(config_path) if config_path else AppConfig()

    if root is not None:
        config.paths.root = root
    config.paths.root = config.paths.root.expanduser().resolve()

    return config


def validate_paths(config: AppConfig) -> list[str]:
    """
    Validate that the deployment looks like an n8n compose checkout.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    if not config.root.is_dir():
        errors.append(f"install root does not exist: {config.root}")
    elif not config.compose_path.exists():
        errors.append(f"{config.compose_path.name} not found in {config.root} (set N8N_STACK_ROOT or --root)")

    if config.backup.retention_days < 0:
        errors.append("backup.retention_days must not be negative")

    return errors
