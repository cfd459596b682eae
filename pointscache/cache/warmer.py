"""
Cache warming: fetches a queue of GET endpoints ahead of use so later reads are hits.
Items run in priority order, in batches that fetch concurrently. Each fetch has a
timeout, and high priority items are retried on transient failures (timeouts,
transport errors, retryable API errors).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
import trio

from pointscache.api.client import CachedApiClient
from pointscache.api.errors import ApiError

logger = logging.getLogger(__name__)

Priority = Literal["high", "normal", "low"]

_PRIORITY_ORDER: dict[str, int] = {"high": 0, "normal": 1, "low": 2}


@dataclass(frozen=True)
class WarmupConfig:
    enabled: bool = True
    priority: Priority = "normal"
    "priority for items queued without one"
    timeout: float = 10.0
    "seconds allowed for a single fetch"
    retry_attempts: int = 2
    "extra attempts for high priority items"
    retry_delay: float = 2.0
    batch_size: int = 5
    ttl: float = 30 * 60
    "TTL for warmed entries queued without one"

    def __post_init__(self):
        if self.priority not in _PRIORITY_ORDER:
            raise ValueError(f"Unknown warmup priority: {self.priority}")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts must be >= 0")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


@dataclass
class WarmupItem:
    key: str
    "cache key the fetched value is stored under"
    path: str
    params: dict[str, Any] | None
    priority: Priority
    dependencies: tuple[str, ...] = ()
    "cache keys that must be live before this item is fetched"
    ttl: float | None = None
    tags: tuple[str, ...] = ()


@dataclass
class WarmupReport:
    warmed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    "items whose dependencies were not cached"
    failed: list[str] = field(default_factory=list)


class CacheWarmer:
    def __init__(self, client: CachedApiClient, config: WarmupConfig | None = None):
        self.client = client
        self.config = config or WarmupConfig()
        self._queue: list[WarmupItem] = []
        self._is_warming = False

    def add(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        priority: Priority | None = None,
        dependencies: tuple[str, ...] | list[str] = (),
        ttl: float | None = None,
        tags: tuple[str, ...] | list[str] = (),
    ) -> str:
        """
        Queues a GET of path. Returns the cache key the result will live under,
        which later items can name as a dependency.
        """
        priority = priority or self.config.priority
        if priority not in _PRIORITY_ORDER:
            raise ValueError(f"Unknown warmup priority: {priority}")
        key = self.client.cache_key("GET", path, params)
        self._queue.append(
            WarmupItem(
                key=key,
                path=path,
                params=params,
                priority=priority,
                dependencies=tuple(dependencies),
                ttl=ttl,
                tags=tuple(tags),
            )
        )
        # Stable sort: FIFO within a priority
        self._queue.sort(key=lambda item: _PRIORITY_ORDER[item.priority])
        return key

    def get_status(self) -> dict[str, Any]:
        return {
            "is_warming": self._is_warming,
            "queue_length": len(self._queue),
            "enabled": self.config.enabled,
        }

    async def warmup(self) -> WarmupReport:
        """
        Drains the queue batch by batch. Returns immediately with an empty report
        if warming is disabled, already running or there is nothing queued.
        """
        report = WarmupReport()
        if not self.config.enabled or self._is_warming or not self._queue:
            return report

        self._is_warming = True
        try:
            while self._queue:
                batch = self._queue[: self.config.batch_size]
                del self._queue[: self.config.batch_size]
                async with trio.open_nursery() as nursery:
                    for item in batch:
                        nursery.start_soon(self._warm_item, item, report)
        finally:
            self._is_warming = False
        logger.info(
            f"Cache warmup done: {len(report.warmed)} warmed, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    async def _warm_item(self, item: WarmupItem, report: WarmupReport):
        missing = [dep for dep in item.dependencies if dep not in self.client.cache]
        if missing:
            logger.info(f"Skipping warmup for {item.key}, missing dependencies: {missing}")
            report.skipped.append(item.key)
            return

        attempts = 1 + (self.config.retry_attempts if item.priority == "high" else 0)
        for attempt in range(1, attempts + 1):
            outcome = await self._fetch(item)
            if outcome == "warmed":
                report.warmed.append(item.key)
                return
            if outcome == "failed" or attempt == attempts:
                break
            logger.debug(f"Retrying warmup for {item.key} ({attempt}/{attempts - 1})")
            await trio.sleep(self.config.retry_delay)
        report.failed.append(item.key)

    async def _fetch(self, item: WarmupItem) -> Literal["warmed", "retryable", "failed"]:
        """One attempt at fetching item into the cache."""
        ttl = self.config.ttl if item.ttl is None else item.ttl
        result = None
        with trio.move_on_after(self.config.timeout) as scope:
            try:
                result = await self.client.get_json(
                    item.path, item.params, ttl=ttl, tags=item.tags
                )
            except ApiError as e:
                logger.error(f"Failed to warmup {item.key}: {e}")
                return "retryable" if e.retryable else "failed"
            except httpx.TransportError as e:
                logger.error(f"Failed to warmup {item.key}: {e}")
                return "retryable"
        if scope.cancelled_caught:
            logger.warning(f"Warmup timeout for {item.key}")
            return "retryable"
        if result is None:
            logger.warning(f"Nothing to warm for {item.key}: empty or missing resource")
            return "failed"
        logger.debug(f"Successfully warmed cache for {item.key}")
        return "warmed"
