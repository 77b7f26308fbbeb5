import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Tuple


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """
    One mutex per key, handed out lazily and dropped once nobody holds or
    waits on it.

    ``hold`` acquires the locks for several keys in lexical order, so two
    callers holding overlapping key sets can never deadlock each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        acquired: List[Tuple[str, _Entry]] = []
        try:
            for key in sorted(set(keys)):
                entry = self._checkout(key)
                entry.lock.acquire()
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key)
