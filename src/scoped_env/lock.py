"""The process-wide environment lock.

The environment table has no per-key atomic read-modify-write, so the
whole table is treated as one shared resource guarded by one lock.
Every guard step (capture-and-apply on construction, restore on
release) runs while holding it, which puts all of those steps in a
single total order across threads.

The lock is re-entrant: code holding it via ``environment_lock()`` can
still create, read and release guards on the same thread.

Fork: a child process inherits the parent's memory, including a lock
that some *other* parent thread may have been holding at the time of
the fork.  That thread does not exist in the child, so the lock would
stay held forever.  The child therefore gets a fresh lock.
"""

import os
import threading
from collections.abc import Generator
from contextlib import contextmanager

_lock = threading.RLock()


def _reinit_after_fork() -> None:
    """Replace the lock in a freshly forked child."""
    global _lock  # noqa: PLW0603
    _lock = threading.RLock()


if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=_reinit_after_fork)


@contextmanager
def environment_lock() -> Generator[None]:
    """Hold the environment lock for the duration of the block.

    Usage::

        with environment_lock():
            home = PROCESS_ENV.get("HOME")
            path = PROCESS_ENV.get("PATH")

    No guard can apply or restore a value while the block runs.
    """
    lock = _lock
    with lock:
        yield
