import json
from typing import Any, Callable

SizeEstimator = Callable[[Any], int]


def estimate_size(value: Any) -> int:
    """
    Approximate footprint of a value: length in bytes of its UTF-8 JSON encoding.
    Values json can't encode natively are measured through their repr().
    """
    encoded = json.dumps(value, default=repr, separators=(",", ":"), ensure_ascii=False)
    return len(encoded.encode("utf-8"))
