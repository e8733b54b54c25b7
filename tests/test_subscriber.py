import asyncio

import anyio
import pytest

from lbsync.core.errors import TransientNetworkError
from lbsync.services.subscriber import EventSubscription, matches, status_patterns


def _ev(cid, status="start", **extra):
    return {"id": cid, "status": status, **extra}


def test_matches_any_pattern_on_all_of_its_keys():
    patterns = [{"status": "die"}, {"status": "start", "from": "nginx"}]

    assert matches(_ev("c1", "die"), patterns)
    assert matches(_ev("c1", "start", **{"from": "nginx"}), patterns)
    assert not matches(_ev("c1", "start", **{"from": "redis"}), patterns)
    assert not matches(_ev("c1", "pull"), patterns)
    assert not matches(_ev("c1"), [])
    assert matches(_ev("c1"), [{}])


def test_action_key_matches_status_patterns():
    patterns = status_patterns(["die"])

    assert matches({"Action": "die", "Id": "c1"}, patterns)
    assert matches({"Action": "die", "Id": "c1"}, [{"id": "c1"}])
    assert not matches({"Action": "start", "Id": "c1"}, patterns)
    # an explicit status wins over Action
    assert not matches({"status": "start", "Action": "die"}, patterns)


@pytest.mark.anyio
async def test_action_only_payloads_are_delivered():
    async def source():
        yield {"Type": "container", "Action": "destroy", "Id": "c7"}
        await asyncio.Event().wait()

    async with EventSubscription(source, status_patterns(["destroy"])) as sub:
        with anyio.fail_after(2):
            event = await sub.__anext__()

    assert (event.container_id, event.status) == ("c7", "destroy")


def test_status_patterns():
    assert status_patterns(["die", "start"]) == [{"status": "die"}, {"status": "start"}]


@pytest.mark.anyio
async def test_consumer_keeps_receiving_across_reconnect():
    connects = 0
    forever = asyncio.Event()

    async def source():
        nonlocal connects
        connects += 1
        if connects == 1:
            yield _ev("e1")
            yield _ev("e2")
            raise TransientNetworkError("connection reset")
        yield _ev("e3")
        await forever.wait()

    sub = EventSubscription(source, status_patterns(["start"]), reconnect_delay_s=0)
    received = []
    async with sub:
        with anyio.fail_after(2):
            async for event in sub:
                received.append(event.container_id)
                if len(received) == 3:
                    break

    assert received == ["e1", "e2", "e3"]
    assert sub.reconnects >= 1
    assert connects == 2


@pytest.mark.anyio
async def test_stream_that_ends_is_reopened():
    connects = 0

    async def source():
        nonlocal connects
        connects += 1
        yield _ev(f"c{connects}")

    sub = EventSubscription(source, [{"status": "start"}], reconnect_delay_s=0)
    async with sub:
        with anyio.fail_after(2):
            first = await sub.__anext__()
            second = await sub.__anext__()

    assert (first.container_id, second.container_id) == ("c1", "c2")


@pytest.mark.anyio
async def test_non_matching_events_are_filtered_out():
    async def source():
        yield _ev("c1", "pull")
        yield _ev("c2", "die")
        yield _ev("c3", "exec_start")
        yield _ev("c4", "start")
        await asyncio.Event().wait()

    async with EventSubscription(source, status_patterns(["die", "start"])) as sub:
        with anyio.fail_after(2):
            got = [(await sub.__anext__()).container_id for _ in range(2)]

    assert got == ["c2", "c4"]


@pytest.mark.anyio
async def test_close_ends_a_blocked_consumer():
    async def source():
        await asyncio.Event().wait()
        yield _ev("never")

    sub = EventSubscription(source, [{"status": "start"}])
    received = []

    async def consume():
        async for event in sub:
            received.append(event)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.02)
    await sub.close()
    with anyio.fail_after(2):
        await task

    assert received == []
    assert sub.closed
    # iterating a closed subscription ends immediately
    assert [e async for e in sub] == []


@pytest.mark.anyio
async def test_slow_consumer_applies_back_pressure():
    produced = 0

    async def source():
        nonlocal produced
        for i in range(5):
            produced += 1
            yield _ev(f"c{i}")
        await asyncio.Event().wait()

    async with EventSubscription(source, [{"status": "start"}], maxsize=1) as sub:
        await asyncio.sleep(0.02)
        # one event buffered, one held by the blocked put
        assert produced <= 2
        with anyio.fail_after(2):
            got = [(await sub.__anext__()).container_id for _ in range(5)]

    assert got == ["c0", "c1", "c2", "c3", "c4"]
