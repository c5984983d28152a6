"""
Update module - check the release feed and apply a published release.

Features:
- Latest release lookup through the GitHub REST API (HTTPS only)
- Version comparison against the ``.version`` marker (plain equality)
- Safety backup before anything is replaced
- Managed file replacement from the release tarball (``.env`` is never touched)
- Image pull and restart with a health wait
"""

import json
import logging
import os
import shutil
import ssl
import stat
import tempfile
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

from .archive import CHUNK_SIZE, find_release_root, require_intact, safe_extract
from .backup import BackupOrchestrator
from .compose import ComposeClient, StackHealth
from .config import AppConfig
from .constants import EXECUTABLE_FILES, NO_RELEASE_NOTES, UNKNOWN_VERSION
from .errors import (
    ArchiveCorrupt,
    BackupRequired,
    EmptyResponse,
    FetchFailed,
    MalformedRelease,
    RateLimited,
    RepoNotFound,
    StackError,
)
from .retry import BackoffPolicy, wait_until

logger = logging.getLogger(__name__)

RELEASE_NOTES_LINES = 20
USER_AGENT = "n8n-stack-updater"


class UpdateOutcome(Enum):
    UP_TO_DATE = "up_to_date"
    CANCELLED = "cancelled"
    APPLIED = "applied"


@dataclass
class ReleaseInfo:
    """Latest release as published on the feed."""

    tag: str
    tarball_url: str | None
    notes: str = NO_RELEASE_NOTES


@dataclass
class UpdateStatus:
    current: str
    latest: str
    notes: str
    update_available: bool
    release: ReleaseInfo | None = None


@dataclass
class UpdateResult:
    outcome: UpdateOutcome
    version: str
    backup: Path | None = None
    updated_files: list[str] = field(default_factory=list)
    healthy: bool = False


# =============================================================================
# Version marker
# =============================================================================


def read_version(path: Path) -> str:
    """Read the version marker; a missing or empty file reads as ``unknown``."""
    try:
        version = path.read_text().strip()
    except FileNotFoundError:
        return UNKNOWN_VERSION
    return version or UNKNOWN_VERSION


def write_version(path: Path, version: str) -> None:
    path.write_text(f"{version}\n")


# =============================================================================
# Release feed
# =============================================================================


def parse_release(payload: str) -> ReleaseInfo:
    """
    Parse a ``releases/latest`` payload.

    Raises:
        EmptyResponse: payload is blank
        MalformedRelease: payload is not a JSON object or has no tag_name
    """
    if not payload.strip():
        raise EmptyResponse("Empty response from GitHub API")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedRelease(f"Could not parse release info from GitHub: {e}") from e
    if not isinstance(data, dict):
        raise MalformedRelease("Could not parse release info from GitHub: unexpected payload")

    if "rate limit" in str(data.get("message", "")).lower():
        raise RateLimited("GitHub API rate limit exceeded. Try again later.")
    if data.get("message") == "Not Found":
        raise RepoNotFound("Repository not found or no releases available")

    tag = data.get("tag_name")
    if not tag:
        raise MalformedRelease("Could not parse latest version from GitHub")

    body = (data.get("body") or "").strip()
    notes = "\n".join(body.splitlines()[:RELEASE_NOTES_LINES]) if body else NO_RELEASE_NOTES
    return ReleaseInfo(tag=str(tag), tarball_url=data.get("tarball_url") or None, notes=notes)


def _require_https(url: str) -> None:
    if urlparse(url).scheme != "https":
        raise FetchFailed(f"Refusing non-HTTPS URL: {url}")


class ReleaseClient:
    """
    Minimal GitHub releases client.

    Args:
        repository: ``owner/name`` of the release repository
        api_base: API root URL
        timeout: Socket timeout in seconds
        opener: ``urlopen``-compatible callable (injectable for tests)
    """

    def __init__(
        self,
        repository: str,
        api_base: str = "https://api.github.com",
        timeout: int = 30,
        opener: Callable = urllib.request.urlopen,
    ):
        self.repository = repository
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.opener = opener
        self.context = ssl.create_default_context()

    @property
    def latest_url(self) -> str:
        return f"{self.api_base}/repos/{self.repository}/releases/latest"

    def _open(self, url: str, accept: str):
        _require_https(url)
        request = urllib.request.Request(url, headers={"Accept": accept, "User-Agent": USER_AGENT})
        try:
            return self.opener(request, timeout=self.timeout, context=self.context)
        except urllib.error.HTTPError as e:
            body = e.read().decode(errors="replace") if e.fp else ""
            if e.code == 429 or "rate limit" in body.lower():
                raise RateLimited("GitHub API rate limit exceeded. Try again later.") from e
            if e.code == 404 or "Not Found" in body:
                raise RepoNotFound(f"Repository not found or no releases available: {self.repository}") from e
            raise FetchFailed(f"Failed to fetch {url}: HTTP {e.code}") from e
        except (urllib.error.URLError, OSError) as e:
            raise FetchFailed(f"Failed to fetch {url}: {e}") from e

    def latest_release(self) -> ReleaseInfo:
        logger.debug("Fetching %s", self.latest_url)
        with self._open(self.latest_url, "application/vnd.github+json") as response:
            payload = response.read().decode("utf-8", errors="replace")
        return parse_release(payload)

    def download(self, url: str, destination: Path) -> Path:
        """Download ``url`` to ``destination``; an empty download is an error."""
        try:
            with self._open(url, "application/octet-stream") as response, open(destination, "wb") as out:
                shutil.copyfileobj(response, out, CHUNK_SIZE)
        except OSError as e:
            raise FetchFailed(f"Download failed: {e}") from e

        if destination.stat().st_size == 0:
            raise FetchFailed("Download failed or file is empty")
        return destination


# =============================================================================
# Managed file replacement
# =============================================================================


def install_release(release_root: Path, root: Path, managed_files: list[str], managed_dirs: list[str]) -> list[str]:
    """
    Copy the managed files of an extracted release into the install root.

    Symbolic links in the release are never followed; ``.env`` is never part
    of the managed set.

    Returns:
        Relative paths that were written
    """
    updated = []
    for filename in managed_files:
        source = release_root / filename
        if source.is_symlink() or not source.is_file():
            continue
        shutil.copyfile(source, root / filename)
        updated.append(filename)
        logger.info("Updated: %s", filename)

    for dirname in managed_dirs:
        source_dir = release_root / dirname
        if source_dir.is_symlink() or not source_dir.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(source_dir):
            current = Path(dirpath)
            dirnames[:] = [d for d in dirnames if not (current / d).is_symlink()]
            for filename in filenames:
                source = current / filename
                if source.is_symlink() or not source.is_file():
                    continue
                relative = source.relative_to(release_root)
                target = root / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, target)
                updated.append(str(relative))
        logger.info("Updated: %s/", dirname)

    for filename in EXECUTABLE_FILES:
        target = root / filename
        if target.is_file():
            target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    return updated


# =============================================================================
# Updater
# =============================================================================


class Updater:
    """
    Checks for and applies releases to one deployment.

    Args:
        config: Tool configuration
        compose: Compose client for the deployment
        client: Release feed client
        confirm: Asks the operator a yes/no question
        backup_factory: Builds the orchestrator for the pre-update backup
        sleep: Sleep function for the health wait
    """

    def __init__(
        self,
        config: AppConfig,
        compose: ComposeClient,
        client: ReleaseClient,
        confirm: Callable[[str], bool],
        backup_factory: Callable[[], BackupOrchestrator],
        sleep: Callable[[float], None] | None = None,
    ):
        self.config = config
        self.compose = compose
        self.client = client
        self.confirm = confirm
        self.backup_factory = backup_factory
        self.sleep = sleep

    def check(self) -> UpdateStatus:
        current = read_version(self.config.version_path)
        logger.info("Current version: %s", current)
        logger.info("Fetching latest release from GitHub...")
        release = self.client.latest_release()
        logger.info("Latest version: %s", release.tag)

        return UpdateStatus(
            current=current,
            latest=release.tag,
            notes=release.notes,
            update_available=current != release.tag,
            release=release,
        )

    def apply(self, force: bool = False) -> UpdateResult:
        """
        Apply the latest release.

        Without ``force`` an up-to-date deployment is left alone and the
        operator must confirm. With ``force`` the release is applied without
        confirmation and a failed safety backup only warns.
        """
        status = self.check()
        if not status.update_available and not force:
            logger.info("No update needed")
            return UpdateResult(UpdateOutcome.UP_TO_DATE, status.current)

        release = status.release
        if not release.tarball_url:
            raise MalformedRelease("Could not get download URL")

        if not force:
            logger.warning("This will update to version %s", release.tag)
            logger.warning("A backup will be created before updating")
            if not self.confirm("Continue?"):
                logger.info("Update cancelled")
                return UpdateResult(UpdateOutcome.CANCELLED, status.current)

        backup = self._safety_backup(force)

        with tempfile.TemporaryDirectory(prefix="n8n-update-") as tmp:
            workspace = Path(tmp)
            tarball = workspace / "release.tar.gz"

            logger.info("Downloading %s...", release.tag)
            self.client.download(release.tarball_url, tarball)

            logger.info("Verifying download integrity...")
            try:
                require_intact(tarball, "Downloaded release")
            except ArchiveCorrupt as e:
                raise ArchiveCorrupt("Downloaded file is corrupted") from e

            logger.info("Extracting...")
            extracted = safe_extract(tarball, workspace / "extracted")
            release_root = find_release_root(extracted, self.config.update.repository.rsplit("/", 1)[-1])
            logger.info("Extracted to: %s", release_root.name)

            logger.info("Updating files...")
            updated = install_release(
                release_root,
                self.config.root,
                self.config.update.managed_files,
                self.config.update.managed_dirs,
            )

        write_version(self.config.version_path, release.tag)
        logger.info("Version file updated: %s", release.tag)

        healthy = self._restart()
        logger.info("Update to %s completed successfully!", release.tag)
        return UpdateResult(UpdateOutcome.APPLIED, release.tag, backup=backup, updated_files=updated, healthy=healthy)

    def _safety_backup(self, force: bool) -> Path | None:
        logger.info("Creating backup before updating...")
        try:
            return self.backup_factory().run(self.config.backup_dir).archive
        except StackError as e:
            if not force:
                raise BackupRequired(
                    f"Backup failed - update aborted for safety ({e}). "
                    "Fix backup issues before updating, or use --force to skip"
                ) from e
            logger.warning("Backup failed: %s", e)
            logger.warning("Continuing without backup due to --force flag")
            return None

    def _restart(self) -> bool:
        logger.info("Stopping services...")
        self.compose.down()
        logger.info("Pulling new Docker images...")
        self.compose.pull()
        logger.info("Starting services with updated images...")
        self.compose.up()

        logger.info("Waiting for services to become healthy...")
        waits = self.config.waits
        policy = BackoffPolicy.constant(waits.health_interval, waits.health_attempts)
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        healthy = wait_until(lambda: self.compose.stack_health() == StackHealth.HEALTHY, policy, **kwargs)
        if not healthy:
            logger.warning("Services may not be fully healthy yet - check with: docker compose ps")
        return healthy
