from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

import trio

T = TypeVar("T")


@dataclass
class _PendingRequest:
    key: str
    done: trio.Event = field(default_factory=trio.Event)
    "set once the leader's fetch settles or is abandoned"
    settled: bool = False
    result: Any = None
    error: Exception | None = None


class RequestCoalescer(Generic[T]):
    """
    Request coalescing helper.

    Tracks in-flight fetches keyed by request key.
    - the first caller for a key becomes leader and runs the fetcher
    - followers wait for the leader and get the same result, or the same exception
    - the key is unregistered as soon as the fetch settles, success or failure

    Registration has no checkpoint between the lookup and the insert, so under
    trio at most one pending request exists per key without needing a lock.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, _PendingRequest] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        while True:
            pending = self._inflight.get(key)
            if pending is None:
                break
            await pending.done.wait()
            if pending.settled:
                if pending.error is not None:
                    raise pending.error
                return pending.result
            # Leader was cancelled before settling: loop, someone leads again

        pending = _PendingRequest(key=key)
        self._inflight[key] = pending
        try:
            pending.result = await fetcher()
            pending.settled = True
            return pending.result
        except Exception as exc:
            pending.error = exc
            pending.settled = True
            raise
        finally:
            if self._inflight.get(key) is pending:
                del self._inflight[key]
            pending.done.set()
