"""Permit guarding the creation and destruction of shared file resources."""

import contextlib
import threading


class ResourcePermit:
    """Serialises file opening/closing and lookup-table construction.

    One instance is shared by all streams running in the same process;
    per-event reads from already opened resources do not need it.
    """

    def __init__(self):
        self._lock = threading.Lock()

    @contextlib.contextmanager
    def acquire(self):
        with self._lock:
            yield self

    @property
    def locked(self) -> bool:
        return self._lock.locked()
