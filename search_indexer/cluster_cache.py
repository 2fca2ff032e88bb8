"""Thread-safe cache of the clusters known to be stored in the database."""

from __future__ import annotations

import threading
from typing import Any


class ClustersCache:
    """Maps cluster UIDs to their last stored properties."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.RLock()

    def read(self, uid: str) -> tuple[Any, bool]:
        """Return the cached data for ``uid`` and whether it was present."""
        with self._lock:
            if uid in self._data:
                return self._data[uid], True
            return None, False

    def update(self, uid: str, data: Any) -> None:
        """Store ``data`` for ``uid``; an empty uid is ignored."""
        if not uid:
            return
        with self._lock:
            self._data[uid] = data

    def delete(self, uid: str) -> None:
        """Remove ``uid`` if present."""
        with self._lock:
            self._data.pop(uid, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, uid: object) -> bool:
        with self._lock:
            return uid in self._data