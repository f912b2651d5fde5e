"""
Schedule Cache

Thread-safe memo of computed schedule days keyed by (date, user id). Every
invalidation bumps a generation counter; a value computed under an older
generation is dropped on write so a late writer cannot restore stale data.
"""

import logging
import threading
from collections import OrderedDict
from datetime import date
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


CacheKey = Tuple[date, Optional[str]]


class ScheduleCache:
    """In-memory cache of WorkScheduleDay / Unassigned results"""

    def __init__(self, max_entries: Optional[int] = None):
        if max_entries is not None and max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.max_entries = max_entries
        self._entries: "OrderedDict[CacheKey, Any]" = OrderedDict()
        self._lock = threading.Lock()
        self._generation = 0
        self._hits = 0
        self._misses = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, target: date, user_id: Optional[str] = None) -> Optional[Any]:
        with self._lock:
            value = self._entries.get((target, user_id))
            if value is None:
                self._misses += 1
            else:
                self._hits += 1
            return value

    def put(self, target: date, user_id: Optional[str], value: Any,
            generation: Optional[int] = None) -> bool:
        """
        Store a computed value.

        Args:
            generation: Generation the value was computed under; when it is
                older than the current one the write is dropped

        Returns:
            True if the value was stored
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Dropping stale cache write for {target} (generation {generation} "
                             f"< {self._generation})")
                return False
            key = (target, user_id)
            self._entries[key] = value
            self._entries.move_to_end(key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)
            return True

    def invalidate(self, start: Optional[date] = None, end: Optional[date] = None) -> int:
        """
        Drop cached entries, all of them or those whose date is in [start, end].

        Returns:
            Number of entries removed
        """
        with self._lock:
            self._generation += 1
            if start is None and end is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                stale = [key for key in self._entries
                         if (start is None or key[0] >= start) and (end is None or key[0] <= end)]
                for key in stale:
                    del self._entries[key]
                removed = len(stale)
            generation = self._generation
        logger.info(f"Schedule cache invalidated: {removed} entries removed, generation {generation}")
        return removed

    def clear(self):
        """Drop all entries and reset the hit/miss counters"""
        with self._lock:
            self._generation += 1
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._entries),
                "generation": self._generation,
                "maxEntries": self.max_entries,
                "hitRate": round(self._hits / lookups, 3) if lookups else 0.0
            }
