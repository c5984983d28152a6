"""Advisory per-deployment lock so backup, restore and update never overlap."""

import fcntl
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import LockHeld

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".n8n-stack.lock"


@contextmanager
def deployment_lock(root: Path, operation: str = "operation") -> Iterator[Path]:
    """
    Hold an exclusive, non-blocking flock on ``<root>/.n8n-stack.lock``.

    Raises:
        LockHeld: another n8n-stack process holds the lock
    """
    lock_path = root / LOCK_FILENAME
    with open(lock_path, "a+") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            handle.seek(0)
            holder = handle.read().strip() or "another process"
            raise LockHeld(f"Another n8n-stack operation is running ({holder}); refusing to start {operation}") from e

        try:
            handle.seek(0)
            handle.truncate()
            handle.write(f"{operation} pid={os.getpid()}\n")
            handle.flush()
            logger.debug("Acquired %s for %s", lock_path, operation)
            yield lock_path
        finally:
            handle.truncate(0)
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
