"""Tests for configuration loading and validation."""

from pathlib import Path

from n8n_stack.config import (
    AppConfig,
    load_config,
    validate_paths,
)


class TestAppConfig:
    """Tests for AppConfig dataclass."""

    def test_default_config(self):
        """Test default configuration values."""
        config = AppConfig()

        assert config.backup.retention_days == 30
        assert config.backup.database_service == "postgres"
        assert config.backup.volume_name == "n8n_data"
        assert config.waits.database_attempts == 30
        assert config.waits.database_cap == 10.0
        assert config.update.repository == "cognitivegears/n8n-compose"
        assert ".github" in config.update.managed_dirs
        assert ".env" not in config.update.managed_files

    def test_from_yaml_missing_file(self, tmp_path):
        """Test loading from non-existent file returns defaults."""
        config = AppConfig.from_yaml(tmp_path / "nonexistent.yaml")

        assert config.backup.retention_days == 30

    def test_from_yaml_valid_file(self, tmp_path):
        """Test loading from valid YAML file."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("""
paths:
  backup_dir: /mnt/nas/n8n
  compose_file: docker-compose.yml

backup:
  retention_days: 7
  unknown_key: ignored

update:
  repository: someone/fork

logging:
  level: DEBUG
  file: logs/n8n-stack.log
""")
        config = AppConfig.from_yaml(config_file)

        assert config.paths.backup_dir == Path("/mnt/nas/n8n")
        assert config.paths.compose_file == Path("docker-compose.yml")
        assert config.backup.retention_days == 7
        assert not hasattr(config.backup, "unknown_key")
        assert config.update.repository == "someone/fork"
        assert config.logging.level == "DEBUG"
        assert config.logging.file == Path("logs/n8n-stack.log")

    def test_from_yaml_empty_file(self, tmp_path):
        """Test an empty YAML file yields defaults."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")

        assert AppConfig.from_yaml(config_file).backup.retention_days == 30

    def test_relative_paths_resolve_against_root(self, tmp_path):
        """Test deployment-relative paths are anchored at the install root."""
        config = AppConfig()
        config.paths.root = tmp_path

        assert config.compose_path == tmp_path / "compose.yaml"
        assert config.env_path == tmp_path / ".env"
        assert config.backup_dir == tmp_path / "backups"
        assert config.version_path == tmp_path / ".version"

    def test_absolute_backup_dir_kept(self, tmp_path):
        config = AppConfig()
        config.paths.root = tmp_path / "root"
        config.paths.backup_dir = tmp_path / "elsewhere"

        assert config.backup_dir == tmp_path / "elsewhere"

    def test_project_name(self, tmp_path):
        """Test the compose project name is derived from the root directory."""
        config = AppConfig()
        config.paths.root = tmp_path / "My N8N.Stack"

        assert config.project_name == "my-n8n-stack"

    def test_to_dict(self):
        """Test config serializes paths as strings."""
        data = AppConfig()._to_dict()

        assert data["backup"]["retention_days"] == 30
        assert data["paths"]["compose_file"] == "compose.yaml"


class TestLoadConfig:
    """Tests for load_config."""

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test N8N_STACK_* variables override defaults."""
        monkeypatch.setenv("N8N_STACK_ROOT", str(tmp_path))
        monkeypatch.setenv("N8N_STACK_BACKUP_DIR", "/srv/backups")
        monkeypatch.setenv("N8N_STACK_REPOSITORY", "acme/n8n-compose")
        monkeypatch.setenv("N8N_STACK_LOG_LEVEL", "WARNING")

        config = load_config()

        assert config.root == tmp_path.resolve()
        assert config.backup_dir == Path("/srv/backups")
        assert config.update.repository == "acme/n8n-compose"
        assert config.logging.level == "WARNING"

    def test_finds_config_in_root(self, stack_root):
        """Test n8n-stack.yaml in the install root is picked up."""
        (stack_root / "n8n-stack.yaml").write_text("backup:\n  retention_days: 3\n")

        config = load_config(root=stack_root)

        assert config.backup.retention_days == 3

    def test_explicit_config_path(self, tmp_path, stack_root):
        """Test an explicit config path wins over the search."""
        (stack_root / "n8n-stack.yaml").write_text("backup:\n  retention_days: 3\n")
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text("backup:\n  retention_days: 9\n")

        config = load_config(explicit, root=stack_root)

        assert config.backup.retention_days == 9

    def test_root_argument_wins(self, tmp_path, stack_root):
        """Test --root overrides a root set in YAML."""
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text(f"paths:\n  root: {tmp_path / 'other'}\n")

        config = load_config(explicit, root=stack_root)

        assert config.root == stack_root.resolve()


class TestValidatePaths:
    """Tests for validate_paths."""

    def test_valid_deployment(self, app_config):
        assert validate_paths(app_config) == []

    def test_missing_root(self, tmp_path):
        """Test a missing install root is reported."""
        config = load_config(root=tmp_path / "missing")

        errors = validate_paths(config)

        assert len(errors) == 1
        assert "does not exist" in errors[0]

    def test_missing_compose_file(self, tmp_path):
        """Test a root without compose.yaml is reported."""
        config = load_config(root=tmp_path)

        errors = validate_paths(config)

        assert any("compose.yaml" in e for e in errors)
