"""Advisory locks for blob files on a shared local directory.

:class:`folio.blobstore.LocalBlobStore` holds ``<blob>.lock`` while it
compares a version tag and swaps in new content, so two processes writing
the same manifest cannot interleave. Plain writes take the same lock,
which keeps a conditional writer from reading a half-replaced file.

flock is released when the block exits, on error, or when the process
dies. Locks are per open file description: nesting ``blob_lock`` on the
same blob in one thread deadlocks until the timeout.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO

logger = logging.getLogger("folio")

LOCK_SUFFIX = ".lock"

# Blob writes finish in milliseconds; waiting longer means a stuck holder.
DEFAULT_LOCK_TIMEOUT = 10.0

_RETRY_DELAY = 0.05


class LockTimeout(OSError):
    """A blob lock stayed held by someone else past the timeout."""


def lock_path_for(blob: Path) -> Path:
    return blob.with_name(blob.name + LOCK_SUFFIX)


def _try_acquire(handle: IO[str]) -> bool:
    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        if exc.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
            return False
        raise
    return True


@contextmanager
def blob_lock(blob: Path, timeout: float = DEFAULT_LOCK_TIMEOUT, pathname: str = "") -> Iterator[None]:
    """Hold an exclusive lock on ``blob`` while the block runs.

    ``timeout`` of 0 makes a single attempt. ``pathname`` is the blob's
    store path, used in the timeout message.

    Raises:
        LockTimeout: the lock was not acquired in time.
    """
    lock_file = lock_path_for(blob)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    with open(lock_file, "w") as handle:
        while not _try_acquire(handle):
            if time.monotonic() >= deadline:
                label = pathname or str(blob)
                logger.warning("blob lock on %s still held after %.1fs", label, timeout)
                raise LockTimeout(f"Blob {label} is locked by another writer (waited {timeout:.1f}s)")
            time.sleep(_RETRY_DELAY)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
