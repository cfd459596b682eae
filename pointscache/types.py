from dataclasses import dataclass, field
from typing import Any


@dataclass
class CacheEntry:
    key: str
    data: Any
    "opaque cached value"
    created_at: float
    "seconds since epoch, set at insertion"
    ttl: float
    "seconds the entry stays valid after created_at"
    size_bytes: int
    "estimated serialized size, computed once at insertion"
    last_accessed_at: float = 0.0
    access_count: int = 0
    tags: frozenset[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        # ttl == 0 expires the entry immediately
        return now - self.created_at >= self.ttl


@dataclass(frozen=True)
class CacheConfiguration:
    max_size_bytes: int = 50 * 1024 * 1024
    default_ttl: float = 300.0
    enable_persistence: bool = False
    persistence_key: str = "points-companion-cache-v2"
    "store key for snapshots: app name + snapshot schema version"
    lru_enabled: bool = True
    max_snapshot_age: float = 24 * 3600.0
    "snapshots older than this are discarded on load"
    max_persisted_entry_bytes: int = 1024 * 1024
    "entries larger than this are not written to snapshots"

    def __post_init__(self):
        if self.max_size_bytes < 0:
            raise ValueError("max_size_bytes must be >= 0")
        if self.default_ttl < 0:
            raise ValueError("default_ttl must be >= 0")
        if not self.persistence_key:
            raise ValueError("persistence_key must not be empty")


@dataclass
class CacheStatistics:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    sets: int = 0
    deletes: int = 0
    size_bytes: int = 0
    item_count: int = 0
