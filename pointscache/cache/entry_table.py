"""
In-memory entry table for the request cache.
Keeps entries in recency order, a tag -> keys index, and enforces the byte budget
by evicting least-recently-used entries before inserts.
"""

import logging
from collections import OrderedDict
from typing import Iterable, Iterator

from pointscache.types import CacheEntry

logger = logging.getLogger(__name__)


class EntryTable:
    """
    Byte-bounded LRU table.

    Ordering:
      - the OrderedDict runs from least to most recently used
      - touch() moves an entry to the MRU end (only when lru_enabled)
      - insert() always lands at the MRU end, so ties fall back to insertion order

    Every method is synchronous: under trio nothing can interleave with an
    evict -> insert sequence.
    """

    def __init__(self, *, max_size_bytes: int, lru_enabled: bool = True) -> None:
        if max_size_bytes < 0:
            raise ValueError("max_size_bytes must be >= 0")
        self._max_size_bytes = max_size_bytes
        self._lru_enabled = lru_enabled
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tag_index: dict[str, set[str]] = {}
        "tag -> keys currently declaring it"
        self.current_size = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def max_size_bytes(self) -> int:
        return self._max_size_bytes

    def lookup(self, key: str) -> CacheEntry | None:
        """Returns the entry without changing its recency."""
        return self._entries.get(key)

    def touch(self, key: str, now: float) -> CacheEntry:
        entry = self._entries[key]
        entry.access_count += 1
        entry.last_accessed_at = now
        if self._lru_enabled:
            # mark as recently used
            self._entries.move_to_end(key, last=True)
        return entry

    def entries(self) -> Iterator[CacheEntry]:
        """Live entries, least recently used first."""
        return iter(list(self._entries.values()))

    def keys_for_tag(self, tag: str) -> set[str]:
        return set(self._tag_index.get(tag, ()))

    def insert(self, entry: CacheEntry) -> list[CacheEntry]:
        """
        Inserts or overwrites entry.key, evicting LRU entries first.
        Returns the evicted entries (not counting an overwritten one).
        """
        # An overwrite releases the old bytes before we measure headroom
        self._discard(entry.key)
        evicted = self._evict_for(entry.size_bytes)
        if entry.size_bytes > self._max_size_bytes:
            logger.debug(
                f"Entry {entry.key} ({entry.size_bytes} B) exceeds max size "
                f"{self._max_size_bytes} B, storing anyway"
            )
        self._entries[entry.key] = entry
        self.current_size += entry.size_bytes
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(entry.key)
        return evicted

    def remove(self, key: str) -> CacheEntry | None:
        return self._discard(key)

    def remove_tagged(self, tags: Iterable[str]) -> list[CacheEntry]:
        """Removes every entry carrying at least one of tags (via the index, no scan)."""
        keys: set[str] = set()
        for tag in tags:
            keys.update(self._tag_index.get(tag, ()))
        removed = []
        for key in keys:
            entry = self._discard(key)
            if entry is not None:
                removed.append(entry)
        return removed

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._tag_index.clear()
        self.current_size = 0
        return count

    def _evict_for(self, required_space: int) -> list[CacheEntry]:
        evicted = []
        while self._entries and self.current_size + required_space > self._max_size_bytes:
            key, entry = next(iter(self._entries.items()))
            self._discard(key)
            logger.debug(f"Evicted: {key} ({entry.size_bytes} B)")
            evicted.append(entry)
        return evicted

    def _discard(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        self.current_size -= entry.size_bytes
        for tag in entry.tags:
            bucket = self._tag_index.get(tag)
            if bucket is None:
                continue
            bucket.discard(key)
            if not bucket:
                del self._tag_index[tag]
        return entry
