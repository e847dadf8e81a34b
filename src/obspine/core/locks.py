"""Per-key mutual exclusion.

Writes to one procedure must be serialized because the merge decision and
the column assignment read state they then modify. Writes to distinct
procedures stay independent.

Example:
    >>> locks = KeyedLock()
    >>> with locks.hold("urn:ogc:object:sensor:GEOM:2"):
    ...     pass
    >>> with locks.hold_many(["b", "a"]):   # acquired in sorted order
    ...     pass
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field


@dataclass
class KeyedLock:
    """Re-entrant lock per key, created on first use.

    A discarded key keeps its lock until its last holder or waiter leaves.
    """

    _locks: dict[str, threading.RLock] = field(default_factory=dict, init=False)
    _users: dict[str, int] = field(default_factory=dict, init=False)
    _retired: set[str] = field(default_factory=set, init=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False)

    def _enter(self, key: str) -> threading.RLock:
        """Get or create the lock for key and count one more user."""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _leave(self, key: str) -> None:
        with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                if key in self._retired:
                    self._retired.discard(key)
                    del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._enter(key)
        try:
            with lock:
                yield
        finally:
            self._leave(key)

    @contextmanager
    def hold_many(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold several keys at once. Sorted acquisition order avoids deadlocks."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def discard(self, key: str) -> None:
        """Forget the lock of a key that is gone (a removed procedure)."""
        with self._guard:
            if key not in self._locks:
                return
            if self._users.get(key):
                self._retired.add(key)
            else:
                del self._locks[key]

    def keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


__all__ = ["KeyedLock"]
