import asyncio
import json
import threading

import pytest

from bridge import SnapshotCache
from nhicard import PlatformError, decode_card
from conftest import make_raw


def card(n, reader="R"):
    return decode_card(make_raw(card_no=b"%012d" % n)).with_reader(reader)


def card_numbers(payload):
    return [item["card_no"] for item in json.loads(payload)]


def test_initial_snapshot_is_empty():
    cache = SnapshotCache(lambda: [])
    try:
        assert cache.fetch_cached() == "[]"
    finally:
        cache.close()


def test_fetch_fresh_publishes_new_snapshot():
    async def scenario():
        cache = SnapshotCache(lambda: [card(1)])
        try:
            payload = await cache.fetch_fresh()
            return payload, cache.fetch_cached(), cache.busy, cache.cycles
        finally:
            cache.close()

    payload, cached, busy, cycles = asyncio.run(scenario())

    assert card_numbers(payload) == ["000000000001"]
    assert cached == payload
    assert cycles == 1
    assert not busy


def test_concurrent_fetches_run_one_acquisition():
    gate = threading.Event()
    calls = []

    def acquire():
        calls.append(threading.current_thread().name)
        gate.wait(5)
        return [card(7)]

    async def scenario():
        cache = SnapshotCache(acquire)
        try:
            asyncio.get_running_loop().call_later(0.05, gate.set)
            return await asyncio.gather(*(cache.fetch_fresh() for _ in range(10)))
        finally:
            cache.close()

    results = asyncio.run(scenario())

    assert len(calls) == 1
    new = [r for r in results if r != "[]"]
    assert len(new) >= 1
    assert all(card_numbers(r) == ["000000000007"] for r in new)
    assert all(r in ("[]", new[0]) for r in results)


def test_cached_reads_do_not_block_behind_acquisition():
    gate = threading.Event()

    async def scenario():
        cache = SnapshotCache(lambda: (gate.wait(5), [card(3)])[1])
        try:
            inflight = asyncio.ensure_future(cache.fetch_fresh())
            await asyncio.sleep(0.02)
            assert cache.busy
            # Neither call may wait for the hardware
            cached = cache.fetch_cached()
            fresh = await asyncio.wait_for(cache.fetch_fresh(), timeout=0.5)
            gate.set()
            return cached, fresh, await inflight
        finally:
            gate.set()
            cache.close()

    cached, fresh, published = asyncio.run(scenario())

    assert cached == "[]"
    assert fresh == "[]"
    assert card_numbers(published) == ["000000000003"]


def test_hard_failure_keeps_previous_snapshot():
    results = iter([[card(1)], PlatformError("no service")])

    def acquire():
        result = next(results)
        if isinstance(result, Exception):
            raise result
        return result

    async def scenario():
        cache = SnapshotCache(acquire)
        try:
            first = await cache.fetch_fresh()
            second = await cache.fetch_fresh()
            return first, second, cache.fetch_cached(), cache.busy
        finally:
            cache.close()

    first, second, cached, busy = asyncio.run(scenario())

    assert second == first
    assert cached == first
    assert not busy


def test_hard_failure_before_any_snapshot_serves_empty_array():
    def acquire():
        raise PlatformError("no service")

    async def scenario():
        cache = SnapshotCache(acquire)
        try:
            return await cache.fetch_fresh()
        finally:
            cache.close()

    assert asyncio.run(scenario()) == "[]"


def test_later_calls_see_at_least_the_last_published_snapshot():
    counter = iter(range(1, 100))

    async def scenario():
        cache = SnapshotCache(lambda: [card(next(counter))])
        try:
            seen = []
            for _ in range(3):
                published = await cache.fetch_fresh()
                seen.append((published, cache.fetch_cached()))
            return seen
        finally:
            cache.close()

    for published, cached in asyncio.run(scenario()):
        assert cached == published


def test_acquisition_completes_when_caller_gives_up():
    gate = threading.Event()

    async def scenario():
        cache = SnapshotCache(lambda: (gate.wait(5), [card(9)])[1])
        try:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(cache.fetch_fresh(), timeout=0.02)
            gate.set()
            await cache.wait_idle()
            return cache.fetch_cached(), cache.busy
        finally:
            gate.set()
            cache.close()

    cached, busy = asyncio.run(scenario())

    assert card_numbers(cached) == ["000000000009"]
    assert not busy


def test_serialization_failure_keeps_previous_snapshot(monkeypatch):
    import bridge

    old = card(1)
    born_1956 = decode_card(make_raw(card_no=b"000000000002", birth=b"0450101"))
    results = iter([[old], [born_1956]])

    async def scenario():
        cache = SnapshotCache(lambda: next(results))
        try:
            first = await cache.fetch_fresh()

            def broken(records):
                raise OSError(22, "Invalid argument")

            monkeypatch.setattr(bridge, "serialize_snapshot", broken)
            second = await cache.fetch_fresh()
            return first, second, cache.busy
        finally:
            cache.close()

    first, second, busy = asyncio.run(scenario())

    assert card_numbers(first) == ["000000000001"]
    assert second == first
    assert not busy


def test_serialization_failure_before_any_snapshot_serves_empty_array(monkeypatch):
    import bridge

    def broken(records):
        raise OSError(22, "Invalid argument")

    monkeypatch.setattr(bridge, "serialize_snapshot", broken)

    async def scenario():
        cache = SnapshotCache(lambda: [card(1)])
        try:
            return await cache.fetch_fresh(), cache.cycles
        finally:
            cache.close()

    assert asyncio.run(scenario()) == ("[]", 0)
