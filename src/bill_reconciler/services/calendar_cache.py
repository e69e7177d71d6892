import asyncio
from datetime import date
from time import monotonic

from bill_reconciler.logger import get_logger
from bill_reconciler.models import MergedOccurrence

logger = get_logger(__name__)

CacheKey = tuple[str, date, date, date]


class CalendarCache:
    """Short-lived cache of merged occurrence lists, one entry per user and range."""

    def __init__(self, ttl_seconds: float) -> None:
        self.ttl_seconds = max(0.0, ttl_seconds)
        self._entries: dict[CacheKey, tuple[float, list[MergedOccurrence]]] = {}
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    async def get(self, key: CacheKey) -> list[MergedOccurrence] | None:
        if not self.enabled:
            return None
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, occurrences = entry
            if monotonic() >= expires_at:
                del self._entries[key]
                return None
            return list(occurrences)

    async def put(self, key: CacheKey, occurrences: list[MergedOccurrence]) -> None:
        if not self.enabled:
            return
        async with self._lock:
            self._entries[key] = (monotonic() + self.ttl_seconds, list(occurrences))

    async def invalidate(self, user_id: str) -> int:
        async with self._lock:
            stale = [key for key in self._entries if key[0] == user_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("[CACHE] Dropped %d calendar entries for user %s.", len(stale), user_id)
        return len(stale)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
