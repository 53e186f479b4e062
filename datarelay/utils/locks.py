import threading
from contextlib import contextmanager
from typing import Iterator


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """One mutex per key, created on demand and dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @contextmanager
    def hold(self, key: str, *, blocking: bool = True, timeout: float = -1) -> Iterator[bool]:
        """Yield whether the lock for ``key`` was acquired; always released on exit."""
        entry = self._checkout(key)
        acquired = False
        try:
            acquired = entry.lock.acquire(blocking, timeout) if blocking else entry.lock.acquire(False)
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            self._checkin(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
