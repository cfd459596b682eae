import pytest
import trio
import trio.testing

from pointscache.cache.coalescer import RequestCoalescer
from pointscache.cache.request_cache import RequestCache
from pointscache.types import CacheConfiguration


@pytest.fixture
def cache():
    return RequestCache(CacheConfiguration())


# --- 1. COALESCING ---

@pytest.mark.trio
async def test_concurrent_callers_share_one_fetch(cache):
    """Three concurrent dedupe() calls while the fetch is pending -> one fetcher call."""
    release = trio.Event()
    calls = 0
    payload = {"recommendations": ["card-a", "card-b"]}

    async def fetcher():
        nonlocal calls
        calls += 1
        await release.wait()
        return payload

    results = []

    async def caller():
        results.append(await cache.dedupe("dedupe-key", fetcher))

    async with trio.open_nursery() as nursery:
        for _ in range(3):
            nursery.start_soon(caller)
        await trio.testing.wait_all_tasks_blocked()
        assert "dedupe-key" in cache._coalescer
        release.set()

    assert calls == 1
    assert len(results) == 3
    assert all(r is payload for r in results)
    # Registry is empty once settled
    assert len(cache._coalescer) == 0


@pytest.mark.trio
async def test_dedupe_does_not_populate_cache(cache):
    async def fetcher():
        return "fetched-data"

    assert await cache.dedupe("k", fetcher) == "fetched-data"
    assert cache.get("k") is None


@pytest.mark.trio
async def test_sequential_calls_fetch_again(cache):
    """Once settled, the next dedupe() for the key starts a fresh fetch."""
    calls = 0

    async def fetcher():
        nonlocal calls
        calls += 1
        return calls

    assert await cache.dedupe("k", fetcher) == 1
    assert await cache.dedupe("k", fetcher) == 2


@pytest.mark.trio
async def test_different_keys_are_independent(cache):
    release = trio.Event()
    calls = []

    results = {}

    async def caller(key):
        async def fetcher():
            calls.append(key)
            await release.wait()
            return key

        results[key] = await cache.dedupe(key, fetcher)

    async with trio.open_nursery() as nursery:
        nursery.start_soon(caller, "a")
        nursery.start_soon(caller, "b")
        await trio.testing.wait_all_tasks_blocked()
        release.set()

    assert sorted(calls) == ["a", "b"]
    assert results == {"a": "a", "b": "b"}


# --- 2. FAILURES ---

@pytest.mark.trio
async def test_failure_propagates_to_all_joined_callers(cache):
    release = trio.Event()
    error = RuntimeError("Fetch failed")
    calls = 0

    async def fetcher():
        nonlocal calls
        calls += 1
        await release.wait()
        raise error

    caught = []

    async def caller():
        try:
            await cache.dedupe("error-key", fetcher)
        except RuntimeError as exc:
            caught.append(exc)

    async with trio.open_nursery() as nursery:
        for _ in range(3):
            nursery.start_soon(caller)
        await trio.testing.wait_all_tasks_blocked()
        release.set()

    assert calls == 1
    assert len(caught) == 3
    assert all(exc is error for exc in caught)
    # Should not cache the error, and a retry is possible
    assert cache.get("error-key") is None
    assert "error-key" not in cache._coalescer


@pytest.mark.trio
async def test_retry_after_failure_runs_fresh_fetch(cache):
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ConnectionError("Network Reset")
        return "ok"

    with pytest.raises(ConnectionError):
        await cache.dedupe("k", flaky)
    assert await cache.dedupe("k", flaky) == "ok"
    assert attempts == 2


# --- 3. CANCELLATION ---

@pytest.mark.trio
async def test_followers_take_over_when_leader_is_cancelled():
    """
    The leader's task is cancelled mid-fetch. The follower must not hang:
    it becomes the new leader and runs its own fetch.
    """
    coalescer = RequestCoalescer()
    never = trio.Event()
    follower_result = []

    async def stuck_fetch():
        await never.wait()

    async def good_fetch():
        return "second"

    async def follower():
        follower_result.append(await coalescer.run("k", good_fetch))

    async with trio.open_nursery() as nursery:
        leader_scope = trio.CancelScope()

        async def leader():
            with leader_scope:
                await coalescer.run("k", stuck_fetch)

        nursery.start_soon(leader)
        await trio.testing.wait_all_tasks_blocked()
        nursery.start_soon(follower)
        await trio.testing.wait_all_tasks_blocked()
        assert follower_result == []

        leader_scope.cancel()

    assert follower_result == ["second"]
    assert len(coalescer) == 0


# --- 4. READ-THROUGH ---

@pytest.mark.trio
async def test_get_or_fetch_caches_success(cache):
    calls = 0

    async def fetcher():
        nonlocal calls
        calls += 1
        return {"velocity": 1.5}

    first = await cache.get_or_fetch("bonus", fetcher, tags=["bonuses"])
    second = await cache.get_or_fetch("bonus", fetcher)

    assert first == second == {"velocity": 1.5}
    assert calls == 1
    assert cache.clear_by_tags(["bonuses"]) == 1


@pytest.mark.trio
async def test_get_or_fetch_does_not_cache_failures_or_none(cache):
    async def failing():
        raise ValueError("bad")

    async def empty():
        return None

    with pytest.raises(ValueError):
        await cache.get_or_fetch("k", failing)
    assert await cache.get_or_fetch("k", empty) is None
    assert len(cache) == 0


@pytest.mark.trio
async def test_get_or_fetch_stores_once_for_coalesced_callers(cache):
    """
    One leader and two joined callers: the entry is written once, by the leader,
    with the leader's tags.
    """
    release = trio.Event()

    async def fetcher():
        await release.wait()
        return {"cards": 3}

    results = []

    async def caller(tags):
        results.append(await cache.get_or_fetch("shared", fetcher, tags=tags))

    async with trio.open_nursery() as nursery:
        nursery.start_soon(caller, ["leader"])
        await trio.testing.wait_all_tasks_blocked()
        nursery.start_soon(caller, ["follower"])
        nursery.start_soon(caller, ["follower"])
        await trio.testing.wait_all_tasks_blocked()
        release.set()

    assert results == [{"cards": 3}] * 3
    assert cache.get_stats().sets == 1
    assert cache.clear_by_tags(["follower"]) == 0
    assert cache.clear_by_tags(["leader"]) == 1
