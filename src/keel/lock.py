"""Exclusive lease on a deployment target.

At most one pipeline run may mutate a deployment target at a time. The lease
is an ``fcntl.flock`` on a per-target lock file on the controller host, held
from the start of Deploy until the run is terminal. Runs from different
controller hosts are not serialized.
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from keel.errors import TargetLockedError

logger = structlog.get_logger(__name__)

# Lock retry interval in seconds
LOCK_RETRY_INTERVAL = 0.1


def get_lock_dir() -> Path:
    """Directory for target lock files (``$KEEL_LOCK_DIR`` or ~/.cache/keel/locks)."""
    configured = os.environ.get("KEEL_LOCK_DIR")
    lock_dir = Path(configured) if configured else Path.home() / ".cache" / "keel" / "locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    return lock_dir


def lock_path_for(target_key: str, lock_dir: Path | None = None) -> Path:
    key_hash = hashlib.sha256(target_key.encode()).hexdigest()[:16]
    return (lock_dir or get_lock_dir()) / f"target-{key_hash}.lock"


@contextmanager
def target_lock(
    target_key: str,
    timeout_seconds: float,
    lock_dir: Path | None = None,
) -> Iterator[Path]:
    """Hold the exclusive lease for a deployment target.

    Args:
        target_key: Identifies the target (host and container name).
        timeout_seconds: How long to wait for a concurrent holder.
        lock_dir: Lock file directory override.

    Yields:
        Path of the lock file once the lease is held.

    Raises:
        TargetLockedError: If the lease is not acquired within the timeout.
    """
    lock_path = lock_path_for(target_key, lock_dir)
    if lock_dir is not None:
        lock_dir.mkdir(parents=True, exist_ok=True)
    lock_path.touch(exist_ok=True)

    start_time = time.monotonic()
    lock_fd = os.open(str(lock_path), os.O_RDWR)

    lock_acquired = False
    try:
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                lock_acquired = True
                logger.debug("target_lock_acquired", target=target_key, path=str(lock_path))
                break
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EWOULDBLOCK):
                    raise

                elapsed = time.monotonic() - start_time
                if elapsed >= timeout_seconds:
                    logger.warning(
                        "target_lock_timeout",
                        target=target_key,
                        timeout_seconds=timeout_seconds,
                    )
                    raise TargetLockedError(target_key, timeout_seconds) from e

                time.sleep(LOCK_RETRY_INTERVAL)

        yield lock_path

    finally:
        if lock_acquired:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            logger.debug("target_lock_released", target=target_key)
        os.close(lock_fd)


__all__ = ["get_lock_dir", "lock_path_for", "target_lock"]
