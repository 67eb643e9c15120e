"""Advisory run lock around the whole pipeline.

The lock is a file created with ``O_CREAT | O_EXCL``; whoever creates it
owns the output destination until it is removed. Waiting is bounded and a
timeout is a hard failure.
"""

from __future__ import annotations

import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from revenue_engine.exceptions import LockTimeoutError


def _try_create(lock_path: Path) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w") as f:
        f.write(f"{os.getpid()}\n")
    return True


@contextmanager
def run_lock(lock_path: Path, timeout_seconds: float = 300.0, poll_seconds: float = 0.5) -> Iterator[Path]:
    """Hold ``lock_path`` for the duration of the block.

    Raises LockTimeoutError if the lock is still held by someone else after
    ``timeout_seconds``.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout_seconds
    while not _try_create(lock_path):
        if time.monotonic() >= deadline:
            raise LockTimeoutError(
                f"Could not acquire run lock {lock_path} within {timeout_seconds:.0f}s",
                detail={"lock_path": str(lock_path)},
            )
        time.sleep(poll_seconds)

    logger.debug("Run lock acquired: {path}", path=lock_path)
    try:
        yield lock_path
    finally:
        lock_path.unlink(missing_ok=True)
        logger.debug("Run lock released: {path}", path=lock_path)
