"""
Snapshot codec for the request cache.
Wire format: {"data": [[key, entry], ...], "timestamp": seconds_since_epoch}
"""

import json
import logging
from dataclasses import dataclass
from typing import Iterable

from pointscache.types import CacheEntry

logger = logging.getLogger(__name__)

_ENTRY_FIELDS = ("data", "created_at", "ttl", "size_bytes")


@dataclass
class SnapshotError(Exception):
    message: str
    key: str | None = None

    def __str__(self) -> str:
        bits = [self.message]
        if self.key:
            bits.append(f"key={self.key}")
        return " ".join(bits)


@dataclass
class Snapshot:
    entries: list[CacheEntry]
    "least recently used first"
    timestamp: float


def encode_snapshot(entries: Iterable[CacheEntry], timestamp: float) -> str:
    """
    Serializes entries in the order given.
    Entries whose data is not JSON serializable are logged and left out.
    """
    data = []
    for entry in entries:
        try:
            json.dumps(entry.data)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Skipping cache entry {entry.key} in snapshot: {exc}")
            continue
        data.append(
            [
                entry.key,
                {
                    "data": entry.data,
                    "created_at": entry.created_at,
                    "ttl": entry.ttl,
                    "access_count": entry.access_count,
                    "last_accessed_at": entry.last_accessed_at,
                    "size_bytes": entry.size_bytes,
                    "tags": sorted(entry.tags),
                },
            ]
        )
    return json.dumps({"data": data, "timestamp": timestamp})


def decode_snapshot(blob: str) -> Snapshot:
    """Parses a snapshot blob. Raises SnapshotError on any malformed content."""
    try:
        raw = json.loads(blob)
    except (TypeError, ValueError) as exc:
        raise SnapshotError(f"Snapshot is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict) or "data" not in raw or "timestamp" not in raw:
        raise SnapshotError("Snapshot must be an object with 'data' and 'timestamp'")
    if not isinstance(raw["data"], list):
        raise SnapshotError("Snapshot 'data' must be a list of [key, entry] pairs")

    entries = []
    for item in raw["data"]:
        if not (isinstance(item, list) and len(item) == 2 and isinstance(item[0], str)):
            raise SnapshotError("Malformed snapshot item, expected [key, entry]")
        key, fields = item
        if not isinstance(fields, dict) or any(f not in fields for f in _ENTRY_FIELDS):
            raise SnapshotError("Snapshot entry is missing fields", key=key)
        try:
            entries.append(
                CacheEntry(
                    key=key,
                    data=fields["data"],
                    created_at=float(fields["created_at"]),
                    ttl=float(fields["ttl"]),
                    size_bytes=int(fields["size_bytes"]),
                    last_accessed_at=float(fields.get("last_accessed_at", fields["created_at"])),
                    access_count=int(fields.get("access_count", 0)),
                    tags=frozenset(fields.get("tags") or ()),
                )
            )
        except (TypeError, ValueError) as exc:
            raise SnapshotError(f"Invalid snapshot entry: {exc}", key=key) from exc

    try:
        timestamp = float(raw["timestamp"])
    except (TypeError, ValueError) as exc:
        raise SnapshotError("Snapshot 'timestamp' must be a number") from exc
    return Snapshot(entries=entries, timestamp=timestamp)
