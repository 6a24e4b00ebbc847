"""Per-key locking for in-process serialization.

The messaging core serializes work on two kinds of keys:
- a conversation id, so that sends and delivery sweeps of one conversation
  are stored and fanned out in a single order
- a (type, sorted participant ids) tuple, so that concurrent find-or-create
  calls for the same participant set converge on one conversation

API:
- KeyedLock().hold(key) -> context manager
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class _Entry:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class KeyedLock:
    """A lazily populated map of re-entrant locks, one per key.

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the map only grows with the number of keys in flight.
    """

    def __init__(self):
        self._entries: Dict[Hashable, _Entry] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(key, None)
