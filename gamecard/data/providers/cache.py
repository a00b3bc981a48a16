from __future__ import annotations

import threading
from typing import Iterator


class ResourceCache:
    """Insert-once URL -> bytes store shared by every export in the process.

    Values are immutable ``bytes`` and an entry is never replaced, so readers
    need no lock; only the insert path is serialized.
    """

    def __init__(self) -> None:
        self._items: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        return self._items.get(key)

    def put_if_absent(self, key: str, value: bytes) -> bytes:
        existing = self._items.get(key)
        if existing is not None:
            return existing
        with self._lock:
            existing = self._items.get(key)
            if existing is not None:
                return existing
            self._items[key] = bytes(value)
            return self._items[key]

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))


font_cache = ResourceCache()
