"""Tests for the capability gate."""

import asyncio

import pytest

from screentrail.daemon.capability import CapabilityGate, GrantState, in_user_interaction, user_interaction
from screentrail.daemon.errors import CapabilityUnavailable
from screentrail.daemon.models import OperationKind


def recorder(log, name):
    async def op():
        log.append(name)
        return name
    return op


@pytest.mark.asyncio
async def test_call_passes_through_when_granted(gate, container):
    log = []
    assert await gate.call(recorder(log, "a"), kind=OperationKind.PERSIST_SAMPLE) == "a"
    assert log == ["a"]
    assert gate.state == GrantState.ACTIVE
    assert container.permission_requests == 0


@pytest.mark.asyncio
async def test_writes_queue_while_lost_and_replay_in_order(gate, container):
    """Three writes while revoked replay in order after a user gesture."""
    container.revoke()
    log = []
    for name in ("a", "b", "c"):
        with pytest.raises(CapabilityUnavailable) as excinfo:
            await gate.call(recorder(log, name), kind=OperationKind.PERSIST_SAMPLE, payload=name)
        assert excinfo.value.queued

    assert log == []
    assert gate.state == GrantState.LOST
    assert [op.payload for op in gate.pending] == ["a", "b", "c"]

    container.grant_on_request = True
    task = gate.on_user_interaction()
    assert task is not None
    assert await task

    assert log == ["a", "b", "c"]
    assert gate.state == GrantState.ACTIVE
    assert gate.pending == []
    assert gate.stats["replayed"] == 3


@pytest.mark.asyncio
async def test_replay_is_bounded_to_most_recent(gate, container):
    container.revoke()
    log = []
    for i in range(7):
        with pytest.raises(CapabilityUnavailable):
            await gate.call(recorder(log, i), kind=OperationKind.PERSIST_SAMPLE, payload=i)

    container.restore()
    assert await gate.on_user_interaction()

    assert log == [2, 3, 4, 5, 6]
    assert gate.stats["dropped"] == 2


@pytest.mark.asyncio
async def test_pending_queue_never_exceeds_replay_limit(gate, container):
    container.revoke()
    for i in range(40):
        with pytest.raises(CapabilityUnavailable):
            await gate.call(recorder([], i), kind=OperationKind.PERSIST_SAMPLE, payload=i)
        assert len(gate.pending) <= gate.replay_limit

    assert [op.payload for op in gate.pending] == [35, 36, 37, 38, 39]


@pytest.mark.asyncio
async def test_pending_queue_is_bounded(container, bus):
    gate = CapabilityGate(container, bus, pending_limit=3, replay_limit=10)
    container.revoke()
    for i in range(5):
        with pytest.raises(CapabilityUnavailable):
            await gate.call(recorder([], i), kind=OperationKind.PERSIST_SAMPLE, payload=i)

    assert [op.payload for op in gate.pending] == [2, 3, 4]
    assert gate.stats["dropped"] == 2


@pytest.mark.asyncio
async def test_newer_index_flush_supersedes_older(gate, container):
    container.revoke()
    log = []
    calls = [
        (OperationKind.FLUSH_INDEX, "index-1"),
        (OperationKind.PERSIST_SAMPLE, "sample"),
        (OperationKind.FLUSH_INDEX, "index-2"),
    ]
    for kind, name in calls:
        with pytest.raises(CapabilityUnavailable):
            await gate.call(recorder(log, name), kind=kind, payload=name)

    assert [op.payload for op in gate.pending] == ["sample", "index-2"]

    container.restore()
    assert await gate.on_user_interaction()
    assert log == ["sample", "index-2"]


@pytest.mark.asyncio
async def test_reads_fail_fast_without_queueing(gate, container):
    container.revoke()
    with pytest.raises(CapabilityUnavailable) as excinfo:
        await gate.call(recorder([], "read"))
    assert not excinfo.value.queued
    assert gate.pending == []


@pytest.mark.asyncio
async def test_no_prompt_outside_user_interaction(gate, container):
    container.revoke()
    container.grant_on_request = True

    with pytest.raises(CapabilityUnavailable):
        await gate.call(recorder([], "a"), kind=OperationKind.PERSIST_SAMPLE)
    assert container.permission_requests == 0

    # A recovery attempt outside a gesture only checks, never prompts
    assert not await gate.recover()
    assert container.permission_requests == 0
    assert gate.state == GrantState.LOST


@pytest.mark.asyncio
async def test_prompt_inside_user_interaction(gate, container):
    container.revoke()
    container.grant_on_request = True
    with pytest.raises(CapabilityUnavailable):
        await gate.call(recorder([], "a"), kind=OperationKind.PERSIST_SAMPLE)

    with user_interaction():
        assert in_user_interaction()
        assert await gate.recover()
    assert not in_user_interaction()
    assert container.permission_requests == 1


@pytest.mark.asyncio
async def test_revocation_mid_operation_is_queued(gate, container):
    """An authorization failure inside the operation marks the grant lost."""
    log = []

    async def op():
        container.revoke()
        await container.write_file("x.png", b"data")

    with pytest.raises(CapabilityUnavailable) as excinfo:
        await gate.call(op, kind=OperationKind.PERSIST_SAMPLE, payload="x")
    assert excinfo.value.queued
    assert gate.state == GrantState.LOST

    # Still queued behind the lost grant, even if the next op would succeed
    with pytest.raises(CapabilityUnavailable):
        await gate.call(recorder(log, "y"), kind=OperationKind.PERSIST_SAMPLE, payload="y")
    assert log == []


@pytest.mark.asyncio
async def test_user_interaction_is_noop_while_active(gate):
    assert gate.on_user_interaction() is None
    assert await gate.recover()
    assert gate.stats["recoveries"] == 0


@pytest.mark.asyncio
async def test_concurrent_gestures_share_one_recovery(gate, container):
    container.revoke()
    with pytest.raises(CapabilityUnavailable):
        await gate.call(recorder([], "a"), kind=OperationKind.PERSIST_SAMPLE)

    container.grant_on_request = True
    first = gate.on_user_interaction()
    second = gate.on_user_interaction()
    assert first is second
    await asyncio.gather(first, second)
    assert gate.stats["recoveries"] == 1


@pytest.mark.asyncio
async def test_failed_recovery_keeps_queue(gate, container):
    container.revoke()
    with pytest.raises(CapabilityUnavailable):
        await gate.call(recorder([], "a"), kind=OperationKind.PERSIST_SAMPLE, payload="a")

    assert not await gate.on_user_interaction()
    assert gate.state == GrantState.LOST
    assert [op.payload for op in gate.pending] == ["a"]


@pytest.mark.asyncio
async def test_events_on_loss_and_restore(gate, container, bus):
    seen = []

    async def handler(event):
        seen.append(event.name)

    bus.subscribe("capability.*", handler)
    await bus.start()

    container.revoke()
    with pytest.raises(CapabilityUnavailable):
        await gate.call(recorder([], "a"), kind=OperationKind.PERSIST_SAMPLE)
    container.restore()
    await gate.on_user_interaction()
    await asyncio.sleep(0.3)

    assert seen == ["capability.lost", "capability.restored"]
    await bus.stop()
