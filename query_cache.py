import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, List, Optional, Union

from date_chunker import to_date
from models import FeedbackRecord

logger = logging.getLogger(__name__)


@dataclass
class QueryCacheEntry:
    data: List[FeedbackRecord]
    timestamp: float
    access_count: int = 0
    ai_analyzed: bool = False


def make_query_key(date_from: Union[str, date], date_to: Union[str, date],
                   ai_required: Optional[bool] = None) -> str:
    key = f"{to_date(date_from).isoformat()}-{to_date(date_to).isoformat()}"
    if ai_required is not None:
        key += ":ai" if ai_required else ":raw"
    return key


class QueryResultCache:
    """Strict LRU + TTL cache of fully processed result sets, keyed by date range."""

    def __init__(self, max_entries: int = 10, ttl_seconds: float = 300,
                 clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self.ttl = ttl_seconds
        self.clock = clock
        self.entries: "OrderedDict[str, QueryCacheEntry]" = OrderedDict()
        self.lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, require_ai: bool = False) -> Optional[List[FeedbackRecord]]:
        """Return cached data, or None when absent, expired, or not AI-enriched but required."""
        entry = self.get_entry(key, require_ai)
        return entry.data if entry is not None else None

    def get_entry(self, key: str, require_ai: bool = False) -> Optional[QueryCacheEntry]:
        """Like get, but returns the entry so callers can read its ai_analyzed flag."""
        with self.lock:
            entry = self.entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if self.clock() - entry.timestamp > self.ttl:
                del self.entries[key]
                self.misses += 1
                logger.debug(f"Query cache expired: {key}")
                return None

            if require_ai and not entry.ai_analyzed:
                self.misses += 1
                logger.debug(f"Query cache entry {key} lacks AI analysis")
                return None

            entry.access_count += 1
            self.entries.move_to_end(key)
            self.hits += 1
            return entry

    def set(self, key: str, data: List[FeedbackRecord], ai_analyzed: bool = False):
        """Store a result set as most recently used, evicting the least recently used when full."""
        with self.lock:
            if key in self.entries:
                del self.entries[key]
            elif len(self.entries) >= self.max_entries:
                evicted, _ = self.entries.popitem(last=False)
                logger.debug(f"Query cache evicted least recently used: {evicted}")

            self.entries[key] = QueryCacheEntry(
                data=data,
                timestamp=self.clock(),
                ai_analyzed=ai_analyzed
            )

    def invalidate(self, key: str):
        """Drop one key if present."""
        with self.lock:
            self.entries.pop(key, None)

    def clear(self):
        """Drop every entry."""
        with self.lock:
            self.entries.clear()

    def keys(self) -> List[str]:
        with self.lock:
            return list(self.entries.keys())

    def get_stats(self) -> Dict[str, any]:
        """Get cache statistics"""
        with self.lock:
            total_requests = self.hits + self.misses
            return {
                'cache_size': len(self.entries),
                'max_entries': self.max_entries,
                'hits': self.hits,
                'misses': self.misses,
                'hit_rate': self.hits / max(1, total_requests)
            }
