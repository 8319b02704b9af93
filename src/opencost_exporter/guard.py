import threading
from contextlib import contextmanager
from typing import Iterator


class RunGuard:
    """
    RunGuard: Is a thread-safe store of export targets that
    currently have a run in flight.

    Prevents two runs from writing to the same target at the
    same time. A run claims its schedule identity before it
    starts and releases it when it finishes; a second claim for
    an identity that is still held is refused.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._active: "set[str]" = set()

    def try_acquire(self, identity: "str") -> "bool":
        """
        claims identity. Returns False when it is already held.
        """
        with self._lock:
            if identity in self._active:
                return False

            self._active.add(identity)
            return True

    def release(self, identity: "str") -> "None":
        with self._lock:
            self._active.discard(identity)

    def is_active(self, identity: "str") -> "bool":
        with self._lock:
            return identity in self._active

    @contextmanager
    def hold(self, identity: "str") -> "Iterator[bool]":
        """
        yields whether identity could be claimed, releasing
        it on exit if it was.
        """
        acquired = self.try_acquire(identity)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(identity)
