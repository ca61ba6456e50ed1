from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from foreman.errors import StateError

logger = logging.getLogger(__name__)


@contextmanager
def file_lock(
    lock_path: Path,
    timeout_seconds: float = 10.0,
    poll_seconds: float = 0.02,
) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``lock_path`` for the duration of the block.

    The kernel drops the lock when the holder exits, so a crashed process never
    leaves the file locked.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
    start = time.monotonic()
    try:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError(
                        f"Timed out waiting for lock {lock_path.name}.",
                        lock=str(lock_path),
                        timeout_seconds=timeout_seconds,
                    ) from exc
                time.sleep(poll_seconds)
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("utf-8"))
        logger.debug("acquired lock %s", lock_path)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("released lock %s", lock_path)
    finally:
        os.close(fd)
