import json

import pytest

from pointscache.cache.snapshot import SnapshotError, decode_snapshot, encode_snapshot
from pointscache.types import CacheEntry


def test_encode_keeps_order_and_fields():
    entries = [
        CacheEntry(key="b", data={"x": 1}, created_at=1.0, ttl=5.0, size_bytes=7),
        CacheEntry(
            key="a",
            data=[1, 2],
            created_at=2.0,
            ttl=5.0,
            size_bytes=5,
            access_count=3,
            last_accessed_at=4.0,
            tags=frozenset({"cards"}),
        ),
    ]

    snapshot = decode_snapshot(encode_snapshot(entries, timestamp=10.0))

    assert snapshot.timestamp == 10.0
    assert [e.key for e in snapshot.entries] == ["b", "a"]
    assert snapshot.entries[1] == entries[1]


def test_decode_fills_optional_fields():
    blob = json.dumps(
        {"data": [["k", {"data": None, "created_at": 3, "ttl": 1, "size_bytes": 4}]], "timestamp": 5}
    )
    entry = decode_snapshot(blob).entries[0]

    assert entry.access_count == 0
    assert entry.last_accessed_at == 3.0
    assert entry.tags == frozenset()


@pytest.mark.parametrize(
    "blob",
    [
        "{not json",
        "[]",
        json.dumps({"data": []}),
        json.dumps({"data": {}, "timestamp": 1}),
        json.dumps({"data": [["k"]], "timestamp": 1}),
        json.dumps({"data": [[1, {}]], "timestamp": 1}),
        json.dumps({"data": [["k", {"data": 1, "created_at": "x", "ttl": 1, "size_bytes": 1}]], "timestamp": 1}),
        json.dumps({"data": [], "timestamp": "soon"}),
    ],
)
def test_decode_rejects_malformed(blob):
    with pytest.raises(SnapshotError):
        decode_snapshot(blob)


def test_snapshot_error_str_includes_key():
    assert str(SnapshotError("Snapshot entry is missing fields", key="k")) == (
        "Snapshot entry is missing fields key=k"
    )


def test_encode_skips_unserializable_entries():
    entries = [
        CacheEntry(key="ok", data="v", created_at=1.0, ttl=5.0, size_bytes=3),
        CacheEntry(key="set", data={1, 2}, created_at=1.0, ttl=5.0, size_bytes=5),
    ]

    snapshot = decode_snapshot(encode_snapshot(entries, timestamp=2.0))

    assert [e.key for e in snapshot.entries] == ["ok"]
