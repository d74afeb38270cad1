"""
TTL cache used for the BioTime auth token and the gap summary.

MemoryTTLCache is per-process; DatabaseTTLCache shares entries between
workers through the cache_entries table.
"""
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..models.models import CacheEntry


class TTLCache:
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def get_or_set(self, key: str, ttl_seconds: int, factory: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = factory()
            self.set(key, value, ttl_seconds)
        return value


class MemoryTTLCache(TTLCache):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._items[key]
                return None
            return value

    def set(self, key, value, ttl_seconds):
        with self._lock:
            self._items[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key):
        with self._lock:
            self._items.pop(key, None)


class DatabaseTTLCache(TTLCache):
    """Values must be JSON serializable."""

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = datetime.utcnow):
        self.session_factory = session_factory
        self._clock = clock

    def get(self, key):
        db = self.session_factory()
        try:
            entry = db.get(CacheEntry, key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                db.delete(entry)
                db.commit()
                return None
            return (entry.value or {}).get("v")
        finally:
            db.close()

    def set(self, key, value, ttl_seconds):
        db = self.session_factory()
        try:
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
            entry = db.get(CacheEntry, key)
            if entry is None:
                db.add(CacheEntry(key=key, value={"v": value}, expires_at=expires_at))
            else:
                entry.value = {"v": value}
                entry.expires_at = expires_at
            db.commit()
        finally:
            db.close()

    def delete(self, key):
        db = self.session_factory()
        try:
            db.query(CacheEntry).filter(CacheEntry.key == key).delete()
            db.commit()
        finally:
            db.close()


def build_cache(backend: str, session_factory: Callable[[], Session]) -> TTLCache:
    if backend == "database":
        return DatabaseTTLCache(session_factory)
    return MemoryTTLCache()
