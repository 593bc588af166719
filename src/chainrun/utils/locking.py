"""Advisory per-file locks with a bounded wait."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from chainrun.core.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0


def lock_path_for(path: Path) -> Path:
    """Sidecar lock file for a target file (``state.json`` -> ``state.json.lock``)."""
    return path.with_name(f"{path.name}.lock")


@contextmanager
def edit_lock(path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[None]:
    """Hold an exclusive OS-level lock on ``path`` for the duration of the block.

    Every agent editing the same file must go through this helper; the lock
    is advisory and protects nothing from writers that skip it.

    Args:
        path: File being edited (need not exist yet)
        timeout: Maximum seconds to wait for the lock

    Raises:
        LockTimeoutError: If the lock is still held elsewhere after ``timeout``.
    """
    lock_file = lock_path_for(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_file), timeout=timeout)
    try:
        lock.acquire()
    except Timeout as e:
        logger.error(f"Lock contention on {path}: gave up after {timeout:.1f}s")
        raise LockTimeoutError(str(path), timeout) from e
    try:
        yield
    finally:
        lock.release()
