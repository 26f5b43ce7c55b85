"""
Run-level mutual exclusion.

Two pipeline runs would race on staging paths and retention decisions, so
a run holds an exclusive lock file for its whole duration.
"""

import fcntl
import logging
import os
from contextlib import contextmanager


logger = logging.getLogger(__name__)


class LockError(Exception):
    """Raised when another run already holds the lock."""
    pass


@contextmanager
def run_lock(path: str):
    """
    Hold an exclusive, non-blocking lock on path while the block runs.

    The lock is released by the kernel if the process dies.

    Raises:
        LockError: If the lock is held by another process
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    f = open(path, 'a+')
    try:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(f"Another backup run is in progress (lock held on {path})")

        f.seek(0)
        f.truncate()
        f.write(f'{os.getpid()}\n')
        f.flush()
        logger.debug(f"Acquired run lock {path}")
        try:
            yield path
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            logger.debug(f"Released run lock {path}")
    finally:
        f.close()
