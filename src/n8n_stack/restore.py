"""
Restore module - guarded restore of database, data volume and config.

The restore walks a fixed sequence of states:

    IDLE -> VALIDATING -> CONFIRMED -> STOPPING -> VOLUME_RESTORE
         -> DATABASE_WAIT -> DATABASE_RESTORE -> CONFIG_RESTORE -> RESTARTING -> DONE

Nothing destructive happens before the archive has passed integrity and
content checks and the operator has confirmed. Validation failures and a
declined confirmation end in ABORTED; a failure once the stack has been
stopped ends in FAILED.
"""

import gzip
import logging
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .archive import CHUNK_SIZE, find_backup_root, require_intact, safe_extract, verify_gzip
from .backup import BackupOrchestrator, resolve_volume, volume_candidates
from .compose import ComposeClient, StackHealth
from .config import AppConfig
from .constants import CONFIG_DIR, DATABASE_DUMP, ENCRYPTED_SUFFIX, RESTORABLE_CONFIG_FILES, VOLUME_ARCHIVE
from .crypto import decrypt_file
from .environment import Environment, validate_database_name
from .errors import (
    ArchiveNotFound,
    CommandFailed,
    ConfigMissing,
    DatabaseTimeout,
    InvalidDump,
    MissingKey,
    NonInteractive,
    StackError,
)
from .retry import BackoffPolicy, wait_until

logger = logging.getLogger(__name__)


class RestoreState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    CONFIRMED = "confirmed"
    STOPPING = "stopping"
    VOLUME_RESTORE = "volume_restore"
    DATABASE_WAIT = "database_wait"
    DATABASE_RESTORE = "database_restore"
    CONFIG_RESTORE = "config_restore"
    RESTARTING = "restarting"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


# States before the stack is touched; failures here abort rather than fail
_PRE_DESTRUCTIVE = {RestoreState.IDLE, RestoreState.VALIDATING, RestoreState.CONFIRMED}


@dataclass
class RestoreResult:
    """Outcome of a restore run."""

    state: RestoreState
    archive: Path
    history: list[RestoreState] = field(default_factory=list)
    pre_restore_backup: Path | None = None
    volume_restored: bool = False
    config_restored: list[str] = field(default_factory=list)
    healthy: bool = False

    @property
    def completed(self) -> bool:
        return self.state == RestoreState.DONE


def resolve_archive_path(archive: Path, root: Path) -> Path:
    """Resolve a relative archive path against the cwd first, then the install root."""
    archive = archive.expanduser()
    if archive.is_absolute() or archive.exists():
        return archive.resolve()
    return (root / archive).resolve()


class RestoreOrchestrator:
    """
    Restores a backup archive into the running deployment.

    Args:
        config: Tool configuration
        environment: Current deployment environment (never taken from the backup)
        compose: Compose client for the deployment
        confirm: Asks the operator a yes/no question
        passphrase: Decryption passphrase for ``.enc`` archives
        force: Allow running without an interactive terminal
        is_interactive: Probe for an attached terminal
        backup_factory: Builds the orchestrator used for the pre-restore backup
        sleep: Sleep function for readiness polling
    """

    def __init__(
        self,
        config: AppConfig,
        environment: Environment,
        compose: ComposeClient,
        confirm: Callable[[str], bool],
        passphrase: str | None = None,
        force: bool = False,
        is_interactive: Callable[[], bool] = lambda: sys.stdin.isatty(),
        backup_factory: Callable[[], BackupOrchestrator] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.config = config
        self.environment = environment
        self.compose = compose
        self.confirm = confirm
        self.passphrase = passphrase
        self.force = force
        self.is_interactive = is_interactive
        self.backup_factory = backup_factory or (
            lambda: BackupOrchestrator(config, environment, compose, passphrase=passphrase)
        )
        self.sleep = sleep
        self.state = RestoreState.IDLE
        self.history: list[RestoreState] = [RestoreState.IDLE]

    def _enter(self, state: RestoreState) -> None:
        logger.debug("Restore state: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _result(self, archive: Path, **kwargs) -> RestoreResult:
        return RestoreResult(state=self.state, archive=archive, history=list(self.history), **kwargs)

    def ensure_interactive(self) -> None:
        """Refuse to run from cron or a pipe unless forced. Has no side effects."""
        if not self.force and not self.is_interactive():
            raise NonInteractive(
                "Restore must be run interactively (not from cron or pipe); use --force to bypass this check"
            )

    def run(self, archive: Path) -> RestoreResult:
        """
        Restore ``archive``.

        Returns:
            RestoreResult in state DONE, or ABORTED when the operator declined

        Raises:
            NonInteractive, ArchiveNotFound, MissingKey, DecryptFailed,
            ArchiveCorrupt, InvalidLayout, InvalidDump, ConfigUnsafe,
            DatabaseTimeout, CommandFailed
        """
        self.ensure_interactive()

        try:
            with tempfile.TemporaryDirectory(prefix="n8n-restore-") as tmp:
                return self._run(archive, Path(tmp))
        except BaseException:
            if self.state in _PRE_DESTRUCTIVE:
                self._enter(RestoreState.ABORTED)
            elif self.state not in (RestoreState.FAILED, RestoreState.ABORTED):
                self._enter(RestoreState.FAILED)
            raise

    def _run(self, archive: Path, workspace: Path) -> RestoreResult:
        self._enter(RestoreState.VALIDATING)
        backup_root = self._validate(archive, workspace)

        self._enter(RestoreState.CONFIRMED)
        logger.warning("WARNING: This will restore from backup and OVERWRITE current data!")
        logger.warning("Backup file: %s", archive)
        logger.warning("Database: %s", self.environment.postgres_db)
        if not self.confirm("Are you sure you want to continue?"):
            logger.info("Restore cancelled")
            self._enter(RestoreState.ABORTED)
            return self._result(archive)

        pre_restore = None
        if self.confirm("Create a backup of current data before restoring?"):
            proceed, pre_restore = self._pre_restore_backup()
            if not proceed:
                logger.info("Restore cancelled")
                self._enter(RestoreState.ABORTED)
                return self._result(archive)

        self._enter(RestoreState.STOPPING)
        logger.info("Stopping services...")
        self.compose.down()

        self._enter(RestoreState.VOLUME_RESTORE)
        volume_restored = self._restore_volume(backup_root)

        self._enter(RestoreState.DATABASE_WAIT)
        self._wait_for_database()

        self._enter(RestoreState.DATABASE_RESTORE)
        self._restore_database(backup_root / DATABASE_DUMP)

        restored_files: list[str] = []
        if (backup_root / CONFIG_DIR).is_dir() and self.confirm(
            "Restore configuration files (compose.yaml, init-data.sh)?"
        ):
            self._enter(RestoreState.CONFIG_RESTORE)
            restored_files = self._restore_config(backup_root / CONFIG_DIR)

        self._enter(RestoreState.RESTARTING)
        healthy = self._restart()

        self._enter(RestoreState.DONE)
        return self._result(
            archive,
            pre_restore_backup=pre_restore,
            volume_restored=volume_restored,
            config_restored=restored_files,
            healthy=healthy,
        )

    # -------------------------------------------------------------------------
    # Validation (no side effects outside the workspace)
    # -------------------------------------------------------------------------

    def _validate(self, archive: Path, workspace: Path) -> Path:
        if not archive.is_file():
            raise ArchiveNotFound(f"Backup file not found: {archive}")
        if not self.config.compose_path.exists():
            raise ConfigMissing(f"{self.config.compose_path.name} not found in {self.config.root}")

        validate_database_name(self.environment.postgres_db)

        plain = archive
        if archive.name.endswith(ENCRYPTED_SUFFIX):
            logger.info("Encrypted backup detected")
            if not self.passphrase:
                raise MissingKey("Backup is encrypted but BACKUP_ENCRYPTION_KEY is not set")
            logger.info("Decrypting backup...")
            plain = decrypt_file(archive, workspace / "decrypted.tar.gz", self.passphrase)
            logger.info("Backup decrypted successfully")

        logger.info("Verifying backup archive integrity...")
        require_intact(plain)
        logger.info("Backup archive verified successfully")

        logger.info("Extracting backup archive...")
        extracted = safe_extract(plain, workspace / "extracted")
        backup_root = find_backup_root(extracted)

        dump = backup_root / DATABASE_DUMP
        if not dump.is_file():
            raise InvalidDump(f"{DATABASE_DUMP} not found in backup")
        if not verify_gzip(dump):
            raise InvalidDump("Database backup is corrupted")

        logger.info("Backup contents validated successfully")
        return backup_root

    # -------------------------------------------------------------------------
    # Destructive steps
    # -------------------------------------------------------------------------

    def _pre_restore_backup(self) -> tuple[bool, Path | None]:
        """Run a safety backup; returns (proceed, archive)."""
        logger.info("Creating backup of current state...")
        try:
            result = self.backup_factory().run(self.config.backup_dir)
        except StackError as e:
            logger.warning("Pre-restore backup failed: %s", e)
            return self.confirm("Continue anyway?"), None
        logger.info("Pre-restore backup completed: %s", result.archive)
        return True, result.archive

    def _restore_volume(self, backup_root: Path) -> bool:
        if not (backup_root / VOLUME_ARCHIVE).is_file():
            logger.warning("No %s found in backup, skipping volume restore", VOLUME_ARCHIVE)
            return False

        logger.info("Restoring n8n data volume...")
        volume = resolve_volume(self.compose, volume_candidates(self.config))
        if volume is None:
            volume = f"{self.config.project_name}_{self.config.backup.volume_name}"

        self.compose.remove_volume(volume)
        self.compose.create_volume(volume)
        image = self.compose.helper_image(self.config.backup.helper_image)
        self.compose.run_container(
            image,
            [f"{volume}:/data", f"{backup_root}:/backup:ro"],
            ["sh", "-c", f"cd /data && tar xzf /backup/{VOLUME_ARCHIVE} --no-same-owner --no-same-permissions"],
        )
        logger.info("n8n data volume restored (%s)", volume)
        return True

    def _wait_for_database(self) -> None:
        service = self.config.backup.database_service
        waits = self.config.waits
        logger.info("Starting PostgreSQL...")
        self.compose.up(service)

        logger.info("Waiting for PostgreSQL to be ready...")
        policy = BackoffPolicy(
            initial=waits.database_initial,
            step=waits.database_step,
            cap=waits.database_cap,
            attempts=waits.database_attempts,
        )
        command = ["pg_isready", "-U", self.environment.postgres_user, "-d", self.environment.postgres_db]

        def is_ready() -> bool:
            return self.compose.exec(service, command).returncode == 0

        def on_retry(attempt: int, total: int, wait: float) -> None:
            logger.info("Attempt %d/%d - waiting %ss...", attempt, total, wait)

        kwargs = {"sleep": self.sleep} if self.sleep else {}
        if not wait_until(is_ready, policy, on_retry=on_retry, **kwargs):
            self._enter(RestoreState.FAILED)
            raise DatabaseTimeout("PostgreSQL failed to become ready")
        logger.info("PostgreSQL is ready")

    def _restore_database(self, dump: Path) -> None:
        service = self.config.backup.database_service
        user = self.environment.postgres_user
        database = validate_database_name(self.environment.postgres_db)

        logger.info("Preparing database...")
        dropped = self.compose.exec(
            service, ["psql", "-U", user, "-d", "postgres", "-c", f'DROP DATABASE IF EXISTS "{database}";']
        )
        if dropped.returncode != 0:
            logger.debug("DROP DATABASE returned %s: %s", dropped.returncode, dropped.stderr)
        self.compose.exec(
            service, ["psql", "-U", user, "-d", "postgres", "-c", f'CREATE DATABASE "{database}";'], check=True
        )

        logger.info("Restoring database...")
        command = ["psql", "-U", user, "-d", database]
        with tempfile.TemporaryFile() as stderr_file:
            proc = self.compose.exec_stream(
                service, command, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=stderr_file
            )
            try:
                with gzip.open(dump, "rb") as src:
                    shutil.copyfileobj(src, proc.stdin, CHUNK_SIZE)
            except BrokenPipeError:
                logger.debug("psql closed its input early")
            finally:
                with suppress(BrokenPipeError):
                    proc.stdin.close()
            returncode = proc.wait()
            stderr_file.seek(0)
            stderr = stderr_file.read().decode(errors="replace")

        if returncode != 0:
            raise CommandFailed(self.compose.compose_command("exec", "-T", service, *command), returncode, stderr)
        logger.info("Database restored")

    def _restore_config(self, config_dir: Path) -> list[str]:
        """Copy restorable config files back, never following symbolic links."""
        logger.info("Restoring configuration files...")
        restored = []
        for filename in RESTORABLE_CONFIG_FILES:
            source = config_dir / filename
            if source.is_symlink():
                logger.warning("Skipping symbolic link in backup: %s", filename)
                continue
            if not source.is_file():
                continue
            shutil.copy2(source, self.config.root / filename)
            restored.append(filename)
            logger.info("Restored: %s", filename)
        logger.info("Configuration files restored")
        return restored

    def _restart(self) -> bool:
        logger.info("Starting all services...")
        self.compose.up()

        logger.info("Waiting for services to start...")
        policy = BackoffPolicy.constant(self.config.waits.health_interval, self.config.waits.health_attempts)
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        healthy = wait_until(lambda: self.compose.stack_health() == StackHealth.HEALTHY, policy, **kwargs)

        if self.compose.running_services():
            logger.info("Restore completed successfully!")
            if url := self.environment.public_url:
                logger.info("n8n should be available at %s", url)
        else:
            logger.warning("Some services may not have started correctly")
            logger.warning("Check with: docker compose logs")
        if not healthy:
            logger.warning("Services did not report healthy within the wait budget")
        return healthy
