"""
Backup module - database dump, data volume archive and config snapshot.

Produces ``backup-<timestamp>.tar.gz`` (or ``.tar.gz.enc`` when a passphrase
is set) in the backup directory:

    backup-20240101-020000/
        database.sql.gz
        n8n_data.tar.gz          (when the data volume exists)
        config/                  (non-secret files + env variable names)

Anything written before the archive is verified is rolled back on failure.
"""

import gzip
import logging
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .archive import CHUNK_SIZE, create_archive, verify_archive
from .compose import ComposeClient, ServiceStatus
from .config import AppConfig
from .constants import (
    ARCHIVE_SUFFIX,
    BACKUP_PREFIX,
    CONFIG_DIR,
    CONFIG_SNAPSHOT_FILES,
    DATABASE_DUMP,
    ENCRYPTED_SUFFIX,
    ENV_NAMES_FILE,
    LEGACY_PROJECT,
    TIMESTAMP_FORMAT,
    VOLUME_ARCHIVE,
)
from .crypto import encrypt_file
from .environment import Environment
from .errors import ArchiveCorrupt, ConfigMissing, DumpFailed, ServiceNotRunning

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass
class RetentionResult:
    """Outcome of a retention sweep."""

    removed: list[Path] = field(default_factory=list)
    retained: int = 0


@dataclass
class BackupResult:
    """Result of a completed backup."""

    archive: Path
    encrypted: bool
    size: int
    volume_name: str | None = None
    retention: RetentionResult = field(default_factory=RetentionResult)

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)


def backup_name(now: datetime) -> str:
    return f"{BACKUP_PREFIX}{now.strftime(TIMESTAMP_FORMAT)}"


def list_backups(directory: Path) -> list[Path]:
    """Backup archives in ``directory``, newest first."""
    if not directory.is_dir():
        return []
    archives = [
        p
        for p in directory.glob(f"{BACKUP_PREFIX}*{ARCHIVE_SUFFIX}*")
        if p.is_file() and (p.name.endswith(ARCHIVE_SUFFIX) or p.name.endswith(ENCRYPTED_SUFFIX))
    ]
    return sorted(archives, key=lambda p: p.stat().st_mtime, reverse=True)


def prune_backups(directory: Path, retention_days: int, now: float | None = None) -> RetentionResult:
    """
    Delete archives older than ``retention_days`` whole days.

    Age is counted in completed days, so with a 30 day window an archive
    aged 30 days and some hours is kept and one aged 31 days is removed
    (same rule as ``find -mtime +30``).
    """
    now = time.time() if now is None else now
    result = RetentionResult()

    for path in list_backups(directory):
        age_days = int((now - path.stat().st_mtime) // SECONDS_PER_DAY)
        if age_days > retention_days:
            path.unlink()
            result.removed.append(path)
            logger.debug("Removed expired backup %s (%d days old)", path.name, age_days)

    result.retained = len(list_backups(directory))
    return result


def volume_candidates(config: AppConfig) -> list[str]:
    """Volume names to try, in order: explicit, project-prefixed, legacy project-prefixed."""
    name = config.backup.volume_name
    candidates = [name, f"{config.project_name}_{name}", f"{LEGACY_PROJECT}_{name}"]
    return list(dict.fromkeys(candidates))


def resolve_volume(compose: ComposeClient, candidates: list[str]) -> str | None:
    """First candidate volume that exists, or None."""
    for candidate in candidates:
        if compose.volume_exists(candidate):
            return candidate
    return None


class BackupOrchestrator:
    """
    Creates one backup of the running stack.

    Args:
        config: Tool configuration
        environment: Validated deployment environment
        compose: Compose client for the deployment
        passphrase: Encrypt the archive when set
        clock: Source of the backup timestamp
    """

    def __init__(
        self,
        config: AppConfig,
        environment: Environment,
        compose: ComposeClient,
        passphrase: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.environment = environment
        self.compose = compose
        self.passphrase = passphrase
        self.clock = clock

    def run(self, target_dir: Path | None = None) -> BackupResult:
        """
        Run the full backup.

        Raises:
            ConfigMissing, ServiceNotRunning, DumpFailed, CommandFailed,
            ArchiveCorrupt, EncryptionFailed
        """
        if not self.config.compose_path.exists():
            raise ConfigMissing(f"{self.config.compose_path.name} not found in {self.config.root}")

        backup_dir = (target_dir or self.config.backup_dir).expanduser().resolve()
        name = backup_name(self.clock())
        staging = backup_dir / name
        archive = backup_dir / f"{name}{ARCHIVE_SUFFIX}"

        service = self.config.backup.database_service
        if self.compose.service_status(service) != ServiceStatus.RUNNING:
            raise ServiceNotRunning(f"PostgreSQL container ({service}) is not running")

        backup_dir.mkdir(parents=True, exist_ok=True)
        backup_dir.chmod(0o700)
        logger.info("Starting backup to %s", staging)

        durable = False
        try:
            staging.mkdir(mode=0o700)
            self._dump_database(staging)
            volume = self._backup_volume(staging)
            self._snapshot_config(staging)

            logger.info("Creating backup archive...")
            create_archive(staging, archive)
            archive.chmod(0o600)
            shutil.rmtree(staging)

            logger.info("Verifying backup integrity...")
            if not verify_archive(archive):
                archive.unlink(missing_ok=True)
                raise ArchiveCorrupt(f"Backup verification failed - archive is corrupted: {archive}")
            durable = True
        except BaseException:
            if not durable:
                self._rollback(staging, archive)
            raise

        final = archive
        if self.passphrase:
            final = self._encrypt(archive)

        final.chmod(0o600)
        size = final.stat().st_size
        logger.info("Backup completed: %s (%.1f MB)", final, size / (1024 * 1024))

        logger.info("Cleaning up backups older than %d days...", self.config.backup.retention_days)
        retention = prune_backups(backup_dir, self.config.backup.retention_days)
        logger.info("Cleanup complete. %d backup(s) retained.", retention.retained)

        return BackupResult(
            archive=final,
            encrypted=final.name.endswith(ENCRYPTED_SUFFIX),
            size=size,
            volume_name=volume,
            retention=retention,
        )

    def _rollback(self, staging: Path, archive: Path) -> None:
        if staging.exists():
            logger.warning("Cleaning up incomplete backup directory...")
            shutil.rmtree(staging, ignore_errors=True)
        archive.unlink(missing_ok=True)
        archive.with_name(archive.name + ".enc").unlink(missing_ok=True)

    def _dump_database(self, staging: Path) -> Path:
        """Stream pg_dump through gzip, checking both sides of the pipe."""
        logger.info("Backing up PostgreSQL database...")
        dump_path = staging / DATABASE_DUMP
        command = [
            "pg_dump",
            "-U",
            self.environment.postgres_user,
            "-d",
            self.environment.postgres_db,
            "--no-owner",
            "--no-acl",
        ]

        with tempfile.TemporaryFile() as stderr_file:
            proc = self.compose.exec_stream(
                self.config.backup.database_service, command, stdout=subprocess.PIPE, stderr=stderr_file
            )
            compress_error: OSError | None = None
            try:
                with gzip.open(dump_path, "wb") as out:
                    shutil.copyfileobj(proc.stdout, out, CHUNK_SIZE)
            except OSError as e:
                compress_error = e
                proc.kill()
            finally:
                proc.stdout.close()
            dump_status = proc.wait()
            stderr_file.seek(0)
            stderr = stderr_file.read().decode(errors="replace").strip()

        gzip_status = 1 if compress_error else 0
        if compress_error is not None:
            raise DumpFailed("gzip", f"pg_dump: {dump_status}, gzip: {gzip_status} ({compress_error})")
        if dump_status != 0:
            detail = f"pg_dump: {dump_status}, gzip: {gzip_status}"
            raise DumpFailed("pg_dump", f"{detail}\n{stderr}" if stderr else detail)

        logger.info("Database backup completed: %s", DATABASE_DUMP)
        return dump_path

    def _backup_volume(self, staging: Path) -> str | None:
        logger.info("Backing up n8n data volume...")
        volume = resolve_volume(self.compose, volume_candidates(self.config))
        if volume is None:
            logger.warning("Could not find %s volume, skipping volume backup", self.config.backup.volume_name)
            return None

        image = self.compose.helper_image(self.config.backup.helper_image)
        self.compose.run_container(
            image,
            [f"{volume}:/data:ro", f"{staging}:/backup"],
            ["tar", "czf", f"/backup/{VOLUME_ARCHIVE}", "-C", "/data", "."],
        )
        logger.info("n8n data backup completed: %s (volume %s)", VOLUME_ARCHIVE, volume)
        return volume

    def _snapshot_config(self, staging: Path) -> Path:
        """Copy non-secret config files and record .env variable names (never values)."""
        logger.info("Backing up configuration files...")
        config_dir = staging / CONFIG_DIR
        config_dir.mkdir()

        for filename in CONFIG_SNAPSHOT_FILES:
            source = self.config.root / filename
            if source.is_file() and not source.is_symlink():
                shutil.copy2(source, config_dir / filename)

        logger.info("Creating environment reference (without secrets)...")
        names = self.environment.variable_names()
        (config_dir / ENV_NAMES_FILE).write_text("".join(f"{name}\n" for name in names))
        return config_dir

    def _encrypt(self, archive: Path) -> Path:
        """Encrypt the verified archive; the plaintext is removed only after success."""
        logger.info("Encrypting backup...")
        encrypted = archive.with_name(archive.name + ".enc")
        encrypt_file(archive, encrypted, self.passphrase)
        archive.unlink()
        logger.info("Backup encrypted successfully")
        return encrypted
