# Overview: Short-TTL in-process cache for dashboard reads.

"""
Read Cache

WHY: Dashboards poll stock overviews and AP summaries far more often than
the underlying data changes. Serving them from a short-lived cache keeps
aggregation queries off the hot path.

NOT A SOURCE OF TRUTH:
- Only GET endpoints that accept slightly stale data use it
- Every mutation path reads the ledger directly and never consults it
- Mutations invalidate every entry for the affected store after commit
- Callers can always bypass it (use_cache=False / ?fresh=1)

Entries are keyed by (store_id, namespace, *params).
"""

from __future__ import annotations

import threading
import time

from flask import current_app


class TTLCache:
    def __init__(self):
        self._entries: dict[tuple, tuple[float, object]] = {}
        self._lock = threading.Lock()

    def get(self, key: tuple):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    def set(self, key: tuple, value, ttl_seconds: float) -> None:
        with self._lock:
            now = time.monotonic()
            self._prune_expired(now)
            self._entries[key] = (now + ttl_seconds, value)

    def _prune_expired(self, now: float) -> int:
        """Drop every expired entry. Caller holds the lock."""
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def invalidate_store(self, store_id: int) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key[0] == store_id]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


read_cache = TTLCache()


def cached_read(store_id: int, namespace: str, loader, *params, use_cache: bool = True):
    """Return loader() through the cache unless use_cache is False or TTL is 0."""
    ttl = current_app.config.get("READ_CACHE_TTL_SECONDS", 15)
    if not use_cache or ttl <= 0:
        return loader()

    key = (store_id, namespace, *params)
    value = read_cache.get(key)
    if value is None:
        value = loader()
        read_cache.set(key, value, ttl)
    return value


def invalidate_store(store_id: int) -> None:
    read_cache.invalidate_store(store_id)
