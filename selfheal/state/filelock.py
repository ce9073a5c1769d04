from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from typing import Iterator

from selfheal.errors import LockTimeoutError

logger = logging.getLogger(__name__)


def lock_path_for(path: str) -> str:
    return f"{path}.lock"


def _try_create(lock_path: str) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(str(os.getpid()))
    return True


@contextmanager
def file_lock(path: str, *, timeout_s: float = 30.0, poll_s: float = 0.1) -> Iterator[str]:
    """
    Advisory lock on `path` via a sidecar `<path>.lock` holding our PID.

    Spins until the sidecar can be created exclusively. A lock still present after
    `timeout_s` is treated as stale and removed. The sidecar is removed on every exit path.
    """
    lock_path = lock_path_for(path)
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)

    deadline = time.monotonic() + float(timeout_s)
    while not _try_create(lock_path):
        if time.monotonic() >= deadline:
            holder = _read_holder(lock_path)
            logger.warning("removing stale lock %s (holder pid=%s)", lock_path, holder or "?")
            try:
                os.unlink(lock_path)
            except FileNotFoundError:
                pass
            if not _try_create(lock_path):
                raise LockTimeoutError(f"lock_contended_after_stale_removal: {lock_path}")
            break
        time.sleep(poll_s)

    try:
        yield lock_path
    finally:
        try:
            os.unlink(lock_path)
        except FileNotFoundError:
            pass


def _read_holder(lock_path: str) -> str | None:
    try:
        with open(lock_path, "r", encoding="utf-8") as f:
            return f.read().strip() or None
    except OSError:
        return None
