"""
Archive helpers - create, verify and safely extract tar.gz archives.

An archive counts as intact only when the whole gzip stream decompresses
(including the CRC trailer) and the tar member list reads without error.
This is the Python equivalent of ``tar tzf`` succeeding.
"""

import gzip
import logging
import tarfile
import zlib
from pathlib import Path

from .constants import BACKUP_PREFIX
from .errors import ArchiveCorrupt, InvalidLayout

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

_READ_ERRORS = (OSError, EOFError, zlib.error, tarfile.TarError)


def verify_gzip(path: Path) -> bool:
    """Check that a gzip file decompresses completely."""
    try:
        with gzip.open(path, "rb") as f:
            while f.read(CHUNK_SIZE):
                pass
    except _READ_ERRORS as e:
        logger.debug("gzip check failed for %s: %s", path, e)
        return False
    return True


def verify_archive(path: Path) -> bool:
    """Check that a tar.gz archive is complete and listable."""
    if not path.is_file() or path.stat().st_size == 0:
        return False
    if not verify_gzip(path):
        return False
    try:
        with tarfile.open(path, "r:gz") as tar:
            tar.getmembers()
    except _READ_ERRORS as e:
        logger.debug("tar listing failed for %s: %s", path, e)
        return False
    return True


def require_intact(path: Path, what: str = "Backup archive") -> None:
    """Raise ArchiveCorrupt unless ``path`` passes :func:`verify_archive`."""
    if not verify_archive(path):
        raise ArchiveCorrupt(f"{what} is corrupted or invalid: {path}")


def create_archive(source_dir: Path, archive_path: Path) -> Path:
    """Package ``source_dir`` (as its own top-level directory) into a tar.gz."""
    with tarfile.open(archive_path, "w:gz") as tar:
        tar.add(source_dir, arcname=source_dir.name)
    return archive_path


def safe_extract(archive_path: Path, destination: Path) -> Path:
    """
    Extract without trusting archived metadata.

    The ``data`` filter drops ownership, strips special permission bits and
    rejects absolute paths, ``..`` traversal and links pointing outside the
    destination.
    """
    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            tar.extractall(path=destination, filter="data")
    except _READ_ERRORS as e:
        raise ArchiveCorrupt(f"Failed to extract {archive_path.name}: {e}") from e
    return destination


def find_backup_root(extracted: Path) -> Path:
    """Locate the single top-level ``backup-*`` directory of an extracted backup."""
    candidates = sorted(p for p in extracted.iterdir() if p.is_dir() and p.name.startswith(BACKUP_PREFIX))
    if not candidates:
        raise InvalidLayout("Invalid backup archive structure: no backup-* directory found")
    if len(candidates) > 1:
        names = ", ".join(p.name for p in candidates)
        raise InvalidLayout(f"Invalid backup archive structure: multiple backup directories ({names})")
    return candidates[0]


def find_release_root(extracted: Path, name_hint: str) -> Path:
    """
    Locate the top-level directory of an extracted release tarball.

    GitHub tarballs unpack to ``<owner>-<repo>-<sha>``; prefer a directory
    containing ``name_hint`` and fall back to any directory.
    """
    directories = sorted(p for p in extracted.iterdir() if p.is_dir() and not p.is_symlink())
    for directory in directories:
        if name_hint and name_hint in directory.name:
            return directory
    if directories:
        return directories[0]
    raise InvalidLayout("Could not find extracted release files")
