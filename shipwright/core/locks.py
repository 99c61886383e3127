"""Per-entity lock registry used by the stores."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class _Entry:
    __slots__ = ("lock", "users", "discarded")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0
        self.discarded = False


class KeyedLock:
    """
    Hands out one re-entrant lock per key.

    Writers to the same entity serialize on that entity's lock while
    unrelated entities proceed in parallel. The registry itself is guarded
    by a short-lived internal lock. A lock is only forgotten once no
    ``hold`` block is using or waiting on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def _entry(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        return entry

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            return self._entry(key).lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self._guard:
            entry = self._entry(key)
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and entry.discarded:
                    self._drop(key, entry)

    def discard(self, key: str) -> None:
        """Forget the lock for a deleted entity once nobody uses it."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                return
            if entry.users:
                entry.discarded = True
            else:
                self._drop(key, entry)

    def _drop(self, key: str, entry: _Entry) -> None:
        if self._entries.get(key) is entry:
            del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
