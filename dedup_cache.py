from __future__ import annotations

from collections import OrderedDict
from typing import Callable
import logging
import time


logger = logging.getLogger("hooked.router")

DEFAULT_TTL_SECONDS = 5.0
DEFAULT_MAX_ENTRIES = 256


class DedupCache:
    """Recently processed ids, bounded both by count and by per-entry TTL.

    Entries are kept in insertion order so the oldest one is evicted first
    when ``max_entries`` is reached. Expired entries are dropped lazily on
    every call and can also be swept explicitly.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max(int(max_entries), 1)
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()

    def seen(self, notification_id: str) -> bool:
        now = self._clock()
        expires_at = self._entries.get(notification_id)
        if expires_at is None:
            return False
        if expires_at <= now:
            self._entries.pop(notification_id, None)
            return False
        return True

    def remember(self, notification_id: str, ttl_seconds: float | None = None) -> None:
        now = self._clock()
        ttl = self.ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        self._entries.pop(notification_id, None)
        self._entries[notification_id] = now + ttl
        self.sweep(now=now)
        while len(self._entries) > self.max_entries:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug("dedup_evicted id=%s", evicted_id)

    def sweep(self, *, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        expired = [key for key, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, notification_id: object) -> bool:
        return isinstance(notification_id, str) and self.seen(notification_id)
