from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Optional


class TTLCache:
    """
    Bounded in-memory cache with per-entry expiry and explicit invalidation.

    Used for read-mostly configuration (commission records). Every write
    path for the cached data must call `invalidate(key)`.
    """

    def __init__(
        self,
        ttl_seconds: int,
        max_entries: int = 1024,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock or datetime.utcnow
        self._entries: "OrderedDict[str, tuple[datetime, Any]]" = OrderedDict()

    def get(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        if self.ttl.total_seconds() <= 0:
            return
        self._entries[key] = (self._clock() + self.ttl, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
