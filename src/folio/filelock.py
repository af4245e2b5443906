"""Cross-process exclusive lock for small state files.

Several ``folio`` processes (a CLI invocation next to a long-running
scheduler) may write ``preferences.json`` at once.  :func:`file_lock`
takes an ``fcntl.flock`` on a sibling ``.lock`` file; the OS drops it when
the descriptor closes, so a crashed holder never leaves a stale lock.

Not reentrant within one thread.
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

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0
POLL_SECONDS = 0.05


class LockTimeout(OSError):
    """Another process kept the lock past the timeout."""


def _try_flock(handle: IO[str]) -> bool:
    """One non-blocking attempt; False if someone else holds the lock."""
    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    except OSError as exc:
        if exc.errno in (errno.EAGAIN, errno.EWOULDBLOCK):
            return False
        raise
    return True


@contextmanager
def file_lock(path: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> Iterator[None]:
    """Hold an exclusive lock on ``<path>.lock`` while the block runs.

    Raises:
        LockTimeout: If the lock is still taken after *timeout* seconds.
    """
    sidecar = path.parent / f"{path.name}.lock"
    sidecar.parent.mkdir(parents=True, exist_ok=True)
    give_up_at = time.monotonic() + timeout
    with sidecar.open("w") as handle:
        while not _try_flock(handle):
            if time.monotonic() >= give_up_at:
                logger.warning("Lock on %s not acquired after %.1fs", sidecar, timeout)
                raise LockTimeout(
                    f"Could not lock {path.name} within {timeout:.1f}s; "
                    f"another folio process holds {sidecar}"
                )
            time.sleep(POLL_SECONDS)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
