import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Tuple

from exceptions import PersistenceError
from models import AnalysisResult

if TYPE_CHECKING:
    from persistence import PersistenceGateway

logger = logging.getLogger(__name__)

EVICTION_BATCH = 100


def content_hash(text: str) -> str:
    """Cache key for a content string."""
    if not text:
        text = "EMPTY_INPUT"
    return hashlib.md5(f"{text}:{len(text)}".encode()).hexdigest()


@dataclass
class CacheEntry:
    result: AnalysisResult
    timestamp: float


class ContentAnalysisCache:
    """Content-addressed cache of AI verdicts with TTL and approximate eviction.

    At capacity the oldest-inserted EVICTION_BATCH entries are dropped in one go; reads
    do not refresh an entry's position. An optional gateway mirrors entries to the
    persistent ai_analysis_cache table.
    """

    def __init__(self, max_size: int = 5000, ttl_hours: float = 24,
                 store: Optional["PersistenceGateway"] = None,
                 clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self.ttl = ttl_hours * 60 * 60
        self.store = store
        self.clock = clock
        self.cache: Dict[str, CacheEntry] = {}
        self.cache_lock = threading.RLock()
        self.stats = {'hits': 0, 'misses': 0, 'sets': 0, 'evictions': 0, 'expired': 0, 'warm_hits': 0}

    def get(self, text: str) -> Optional[AnalysisResult]:
        """Thread-safe lookup by content hash; expired entries count as misses."""
        key = content_hash(text)
        with self.cache_lock:
            entry = self.cache.get(key)
            if entry is None:
                self.stats['misses'] += 1
                return None

            if self.clock() - entry.timestamp > self.ttl:
                del self.cache[key]
                self.stats['expired'] += 1
                self.stats['misses'] += 1
                return None

            self.stats['hits'] += 1
            return entry.result

    def set(self, text: str, result: AnalysisResult):
        """Thread-safe insert, evicting the oldest batch when full."""
        key = content_hash(text)
        with self.cache_lock:
            if key in self.cache:
                del self.cache[key]
            elif len(self.cache) >= self.max_size:
                self._evict_oldest()

            self.cache[key] = CacheEntry(result=result, timestamp=self.clock())
            self.stats['sets'] += 1

    def _evict_oldest(self):
        keys_to_delete = list(self.cache.keys())[:EVICTION_BATCH]
        for key in keys_to_delete:
            del self.cache[key]
        self.stats['evictions'] += len(keys_to_delete)
        logger.debug(f"Evicted {len(keys_to_delete)} analysis cache entries")

    def clear(self):
        """Drop every in-memory entry."""
        with self.cache_lock:
            self.cache.clear()

    def __len__(self) -> int:
        return len(self.cache)

    # ------------------------------------------------------------------
    # Persistent mirror
    # ------------------------------------------------------------------

    def warm_from_store(self, texts: Iterable[str]) -> Dict[str, AnalysisResult]:
        """Look up texts in the persistent mirror and load hits into memory.

        Store failures mean "no warm cache"; they never propagate.
        """
        texts = list(dict.fromkeys(texts))
        if self.store is None or not texts:
            return {}

        try:
            found = self.store.get_cached_analyses(texts)
        except PersistenceError as e:
            logger.warning(f"Persistent analysis cache unavailable, continuing without it: {e}")
            return {}

        for text, result in found.items():
            self.set(text, result)

        with self.cache_lock:
            self.stats['warm_hits'] += len(found)
        if found:
            logger.info(f"💾 Warmed {len(found)}/{len(texts)} analyses from persistent cache")
        return found

    def mirror_to_store(self, pairs: List[Tuple[str, AnalysisResult]]):
        """Best-effort write of new verdicts to the persistent mirror."""
        if self.store is None or not pairs:
            return

        try:
            self.store.set_cached_analyses(pairs)
        except PersistenceError as e:
            logger.warning(f"Could not mirror {len(pairs)} analyses to persistent cache: {e}")

    def get_stats(self) -> Dict[str, any]:
        """Get cache statistics"""
        with self.cache_lock:
            total_requests = self.stats['hits'] + self.stats['misses']
            return {
                'cache_size': len(self.cache),
                'max_size': self.max_size,
                'hits': self.stats['hits'],
                'misses': self.stats['misses'],
                'sets': self.stats['sets'],
                'evictions': self.stats['evictions'],
                'expired': self.stats['expired'],
                'warm_hits': self.stats['warm_hits'],
                'hit_rate': self.stats['hits'] / max(1, total_requests)
            }
