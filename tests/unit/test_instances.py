import asyncio

import pytest

from flowgate.instances import InstanceTracker, instance_key


def test_instance_key():
    assert instance_key("W1", "s1") == "W1:s1"


@pytest.mark.asyncio
async def test_node_lock_is_dropped_after_last_release():
    tracker = InstanceTracker()
    release = await tracker.lock_node("W1", "s1", "C")
    waiter = asyncio.ensure_future(tracker.lock_node("W1", "s1", "C"))
    await asyncio.sleep(0)

    assert not waiter.done()
    assert tracker.held_locks == 1

    release()
    release_second = await waiter
    assert tracker.held_locks == 1

    release_second()
    assert tracker.held_locks == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_lock():
    tracker = InstanceTracker()
    release = await tracker.lock_node("W1", "s1", "C")
    waiter = asyncio.ensure_future(tracker.lock_node("W1", "s1", "C"))
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    release()
    assert tracker.held_locks == 0


@pytest.mark.asyncio
async def test_locks_are_per_node():
    tracker = InstanceTracker()
    release_c = await tracker.lock_node("W1", "s1", "C")
    release_other = await asyncio.wait_for(tracker.lock_node("W1", "s2", "C"), timeout=1)
    assert tracker.held_locks == 2
    release_c()
    release_other()
    assert tracker.held_locks == 0
