"""Search result caching with TTL expiry and a background sweeper."""

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import CACHE_MAX_SIZE, CACHE_TTL_SECONDS
from ..errors import CacheError, InvalidInput


logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class QueryCache:
    """Cache for search results keyed by (query text, serialized options).

    Eviction on overflow drops the oldest *inserted* entry (FIFO, not LRU).
    All access goes through an internal lock; ``get`` returns the stored list
    as a fresh copy so callers never share a mutable list with the cache.
    """

    def __init__(self, ttl_seconds=CACHE_TTL_SECONDS, max_size=CACHE_MAX_SIZE,
                 clock: Callable[[], float] = time.monotonic):
        if max_size <= 0:
            raise InvalidInput(f"max_size must be positive, got {max_size!r}")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.clock = clock
        self.cache = OrderedDict()  # {(query, options_json): (results, inserted_at)}
        self.stats = {"hits": 0, "misses": 0, "invalidations": 0, "evictions": 0}
        self._lock = threading.RLock()
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @staticmethod
    def make_key(query_text: str, options: Dict[str, Any]) -> CacheKey:
        """Build a cache key. Raises CacheError if the options cannot be serialized."""
        try:
            serialized = json.dumps(options, sort_keys=True, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise CacheError(f"Cannot serialize search options for caching: {e}", cause=e) from e
        return query_text, serialized

    def get(self, key: CacheKey) -> Optional[List]:
        """Return cached results, or None if missing or expired."""
        with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return None

            results, inserted_at = entry
            if self.clock() - inserted_at > self.ttl_seconds:
                del self.cache[key]
                self.stats["invalidations"] += 1
                self.stats["misses"] += 1
                return None

            self.stats["hits"] += 1
            return list(results)

    def set(self, key: CacheKey, results: List):
        """Store results, evicting the oldest entries if the cache is full."""
        with self._lock:
            if key in self.cache:
                # Re-insert so the entry moves to the back of the FIFO order
                del self.cache[key]
            while len(self.cache) >= self.max_size:
                self.cache.popitem(last=False)
                self.stats["evictions"] += 1
            self.cache[key] = (tuple(results), self.clock())

    def sweep(self) -> int:
        """Remove expired entries. Returns how many were removed.

        Only one sweep runs at a time; a call that overlaps a running sweep
        returns 0 immediately.
        """
        if not self._sweep_lock.acquire(blocking=False):
            return 0
        try:
            with self._lock:
                now = self.clock()
                expired = [k for k, (_, inserted_at) in self.cache.items()
                           if now - inserted_at > self.ttl_seconds]
                for key in expired:
                    del self.cache[key]
                self.stats["invalidations"] += len(expired)
            if expired:
                logger.debug("Swept %d expired cache entries", len(expired))
            return len(expired)
        finally:
            self._sweep_lock.release()

    def start_sweeper(self, interval: Optional[float] = None):
        """Start the background sweep thread (interval defaults to the TTL)."""
        interval = interval or self.ttl_seconds
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop, args=(interval,),
                name="query-cache-sweeper", daemon=True,
            )
            self._sweeper.start()

    def _sweep_loop(self, interval: float):
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                logger.warning("Cache sweep failed: %s", e)

    def stop_sweeper(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout)
        self._sweeper = None

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def invalidate_all(self):
        """Clear all cache entries."""
        with self._lock:
            count = len(self.cache)
            self.cache.clear()
            if count > 0:
                self.stats["invalidations"] += count
        if count > 0:
            logger.info("Cleared all %d cache entries", count)

    def __len__(self):
        with self._lock:
            return len(self.cache)

    def get_stats(self) -> Dict:
        """Return cache statistics."""
        with self._lock:
            total_queries = self.stats["hits"] + self.stats["misses"]
            hit_rate = (self.stats["hits"] / total_queries * 100) if total_queries > 0 else 0
            return {
                "hits": self.stats["hits"],
                "misses": self.stats["misses"],
                "invalidations": self.stats["invalidations"],
                "evictions": self.stats["evictions"],
                "hit_rate": f"{hit_rate:.1f}%",
                "size": len(self.cache),
                "max_size": self.max_size,
            }
