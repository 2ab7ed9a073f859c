"""
Fast-path machine cache.

Process-wide, size-bounded LRU of the last-known record per machine id.
Entries are advisory: every writer refreshes them after a successful store
write, but readers must tolerate a stale hit.

Usage:
    cache = MachineCache(max_entries=1024)
    cache.put(machine.machine_id, machine)
    hit = cache.get("M1")
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass

from models import snapshot

logger = logging.getLogger("machinectl.cache")


@dataclass
class CacheStats:
    gets: int = 0
    hits: int = 0
    misses: int = 0
    puts: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        if self.gets == 0:
            return 0.0
        return self.hits / self.gets

    def to_dict(self):
        return {
            "gets": self.gets,
            "hits": self.hits,
            "misses": self.misses,
            "puts": self.puts,
            "evictions": self.evictions,
            "hit_rate": round(self.hit_rate, 3),
        }


class MachineCache:
    """Thread-safe LRU keyed by machine id. Stores and hands out copies."""

    def __init__(self, max_entries: int = 1024):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, object]" = OrderedDict()
        self._stats = CacheStats()
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            self._stats.gets += 1
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return snapshot(entry)

    def put(self, key, value):
        with self._lock:
            self._entries[key] = snapshot(value)
            self._entries.move_to_end(key)
            self._stats.puts += 1
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Evicted machine %s from cache", evicted)

    def invalidate(self, key):
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return key in self._entries
