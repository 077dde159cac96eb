import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Optional, Dict, Callable


@dataclass(frozen=True)
class CachedPage:
    url: str
    content: str
    http_status: int
    content_type: str
    final_url: str
    fetched_at: float


class PageCache:
    """
    FLOW: Generates a hash key for a URL -> Checks in-memory dictionary for existing entries ->
    Validates age against the TTL (or a caller-supplied max age) -> Returns the cached page or None.
    """

    def __init__(self, ttl_seconds: float = 3600, max_entries: int = 10000,
                 clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: Dict[str, CachedPage] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _cache_key(url: str) -> str:
        return hashlib.sha256(url.encode("utf-8")).hexdigest()

    def get(self, url: str, max_age: Optional[float] = None) -> Optional[CachedPage]:
        limit = self.ttl_seconds if max_age is None else max_age
        key = self._cache_key(url)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self.clock() - entry.fetched_at > limit:
                if self.clock() - entry.fetched_at > self.ttl_seconds:
                    del self._entries[key]
                return None
            return entry

    def put(self, url: str, content: str, http_status: int = 200, content_type: str = "text/html",
            final_url: Optional[str] = None, fetched_at: Optional[float] = None):
        entry = CachedPage(url, content or "", http_status, content_type, final_url or url,
                           self.clock() if fetched_at is None else fetched_at)
        with self._lock:
            if len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].fetched_at)
                del self._entries[oldest]
            self._entries[self._cache_key(url)] = entry

    def __len__(self):
        with self._lock:
            return len(self._entries)
