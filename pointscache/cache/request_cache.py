"""
Client-side request cache.
Composes the entry table (capacity + LRU + tags), lazy TTL checks, request
coalescing, statistics and snapshot persistence behind one object.
"""

import dataclasses
import hashlib
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Iterator, TypeVar

import trio

from pointscache.cache.coalescer import RequestCoalescer
from pointscache.cache.entry_table import EntryTable
from pointscache.cache.sizing import SizeEstimator, estimate_size
from pointscache.cache.snapshot import SnapshotError, decode_snapshot, encode_snapshot
from pointscache.storage.persistence import PersistentStore
from pointscache.types import CacheConfiguration, CacheEntry, CacheStatistics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCache:
    def __init__(
        self,
        config: CacheConfiguration | None = None,
        *,
        store: PersistentStore | None = None,
        size_estimator: SizeEstimator = estimate_size,
    ):
        """
        :param config: Capacity, TTL and persistence settings. Defaults to CacheConfiguration().
        :param store: Durable key-value store for snapshots. Required if persistence is enabled.
        :param size_estimator: Returns the approximate byte size of a value.
        """
        if config is None:
            config = CacheConfiguration()
        if config.enable_persistence and store is None:
            raise ValueError("enable_persistence requires a PersistentStore")
        self.config = config
        self._store = store
        self._estimate_size = size_estimator

        self._table = EntryTable(
            max_size_bytes=config.max_size_bytes, lru_enabled=config.lru_enabled
        )
        self._coalescer: RequestCoalescer[Any] = RequestCoalescer()
        self._stats = CacheStatistics()

        # --- Persistence ---
        self._persist_lock = trio.Lock()
        # Buffer of 1: a pending poke already covers any later mutation
        self._persist_send, self._persist_recv = trio.open_memory_channel[None](
            max_buffer_size=1
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def generate_key(self, params: dict[str, Any], prefix: str = "api") -> str:
        """
        Canonical key for a parameter map. Keys are sorted at every nesting level,
        so insertion order never changes the result.
        """
        canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{prefix}:{digest[:16]}"

    def get(self, key: str) -> Any | None:
        entry = self._table.lookup(key)
        if entry is None:
            self._stats.misses += 1
            return None

        now = time.time()
        if entry.is_expired(now):
            self._table.remove(key)
            self._stats.misses += 1
            self._schedule_persist()
            return None

        self._table.touch(key, now)
        self._stats.hits += 1
        return entry.data

    def set(
        self,
        key: str,
        data: Any,
        *,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
    ) -> None:
        now = time.time()
        entry = CacheEntry(
            key=key,
            data=data,
            created_at=now,
            ttl=self.config.default_ttl if ttl is None else ttl,
            size_bytes=self._estimate_size(data),
            last_accessed_at=now,
            tags=frozenset(tags or ()),
        )
        evicted = self._table.insert(entry)
        self._stats.evictions += len(evicted)
        self._stats.sets += 1
        self._schedule_persist()

    def delete(self, key: str) -> bool:
        if self._table.remove(key) is None:
            return False
        self._stats.deletes += 1
        self._schedule_persist()
        return True

    def clear(self) -> None:
        """Drops every entry. Lifetime counters (hits, misses, evictions) are kept."""
        self._stats.deletes += self._table.clear()
        self._schedule_persist()

    def clear_by_tags(self, tags: Iterable[str]) -> int:
        removed = self._table.remove_tagged(tags)
        if removed:
            self._stats.deletes += len(removed)
            self._schedule_persist()
        return len(removed)

    def purge_expired(self) -> int:
        """Explicit sweep of expired entries. Nothing calls this in the background."""
        now = time.time()
        expired = [entry.key for entry in self._table.entries() if entry.is_expired(now)]
        for key in expired:
            self._table.remove(key)
        if expired:
            self._schedule_persist()
        return len(expired)

    def entries(self) -> Iterator[CacheEntry]:
        """Live entries, least recently used first. Does not count as access."""
        return self._table.entries()

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, key: str) -> bool:
        """Live-entry check. Not counted as a hit or miss and does not touch recency."""
        entry = self._table.lookup(key)
        return entry is not None and not entry.is_expired(time.time())

    async def dedupe(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        """
        Runs fetcher once for all concurrent callers of the same key.
        Does not read or write cache entries; failures propagate to every caller.
        """
        return await self._coalescer.run(key, fetcher)

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
    ) -> T:
        """
        Read-through helper: Cache -> Coalesced fetch -> Cache.
        Only successful, non-None results are stored, and only by the caller that
        ran the fetch; coalesced callers share its entry with its ttl and tags.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        async def fetch_and_store():
            result = await fetcher()
            if result is not None:
                self.set(key, result, ttl=ttl, tags=tags)
            return result

        return await self.dedupe(key, fetch_and_store)

    def get_stats(self) -> CacheStatistics:
        return dataclasses.replace(
            self._stats,
            size_bytes=self._table.current_size,
            item_count=len(self._table),
        )

    def get_hit_rate(self) -> float:
        total = self._stats.hits + self._stats.misses
        return self._stats.hits / total if total > 0 else 0.0

    def get_metrics(self) -> dict[str, Any]:
        stats = self.get_stats()
        hit_rate = self.get_hit_rate()
        if hit_rate > 0.8:
            efficiency = "Excellent"
        elif hit_rate > 0.6:
            efficiency = "Good"
        else:
            efficiency = "Needs Optimization"
        return {
            **dataclasses.asdict(stats),
            "hit_rate": f"{hit_rate * 100:.2f}%",
            "size_formatted": f"{stats.size_bytes / 1024 / 1024:.2f}MB",
            "efficiency": efficiency,
        }

    # =========================================================================
    # Persistence
    # =========================================================================

    def run_services(self, nursery: trio.Nursery):
        """Starts the background snapshot writer."""
        if self.config.enable_persistence:
            nursery.start_soon(self._persistence_writer)

    async def load_persisted(self) -> int:
        """
        Restores the last snapshot. Any failure is logged and leaves the cache empty.
        Expired entries are loaded as-is; reads discard them lazily.
        Returns the number of entries loaded.
        """
        if not self.config.enable_persistence or self._store is None:
            return 0
        key = self.config.persistence_key
        try:
            blob = await self._store.read(key)
        except Exception as exc:
            logger.warning(f"Failed to read persisted cache {key}: {exc}")
            return 0
        if blob is None:
            return 0

        try:
            snapshot = decode_snapshot(blob)
        except SnapshotError as exc:
            logger.warning(f"Failed to load persisted cache {key}: {exc}")
            await self._remove_snapshot()
            return 0

        if time.time() - snapshot.timestamp > self.config.max_snapshot_age:
            logger.info(f"Persisted cache {key} is stale, discarding it")
            await self._remove_snapshot()
            return 0

        for entry in snapshot.entries:
            self._stats.evictions += len(self._table.insert(entry))
        logger.info(f"Loaded {len(self._table)} persisted cache entries")
        return len(self._table)

    async def flush(self) -> bool:
        """Writes a snapshot now. Returns False if persistence is off or the write failed."""
        if not self.config.enable_persistence or self._store is None:
            return False
        # Encode synchronously so the blob reflects one consistent table state
        blob = self._encode_snapshot()
        async with self._persist_lock:
            try:
                await self._store.write(self.config.persistence_key, blob)
            except Exception as exc:
                logger.warning(f"Failed to persist cache: {exc}")
                return False
        return True

    def _encode_snapshot(self) -> str:
        now = time.time()
        limit = self.config.max_persisted_entry_bytes
        persistable = (
            entry
            for entry in self._table.entries()
            if not entry.is_expired(now) and entry.size_bytes < limit
        )
        return encode_snapshot(persistable, timestamp=now)

    def _schedule_persist(self) -> None:
        if not self.config.enable_persistence:
            return
        # Non-blocking poke; if the buffer is full a write is already due.
        try:
            self._persist_send.send_nowait(None)
        except trio.WouldBlock:
            pass

    async def _persistence_writer(self):
        while True:
            await self._persist_recv.receive()
            await self.flush()

    async def _remove_snapshot(self):
        try:
            await self._store.remove(self.config.persistence_key)
        except Exception as exc:
            logger.warning(f"Failed to remove persisted cache: {exc}")


@asynccontextmanager
async def open_request_cache(
    config: CacheConfiguration | None = None,
    *,
    store: PersistentStore | None = None,
    size_estimator: SizeEstimator = estimate_size,
) -> AsyncIterator[RequestCache]:
    """
    Builds a RequestCache, restores its snapshot and runs its snapshot writer
    for the lifetime of the block. A final snapshot is written on exit.
    """
    cache = RequestCache(config, store=store, size_estimator=size_estimator)
    await cache.load_persisted()
    async with trio.open_nursery() as nursery:
        cache.run_services(nursery)
        try:
            yield cache
        finally:
            with trio.CancelScope(shield=True):
                await cache.flush()
            nursery.cancel_scope.cancel()
