import asyncio

import pytest
from conftest import FakeTransport

import inscriber.constants as C
from inscriber.errors import NonceFetchError, TransportError
from inscriber.nonces import NonceTracker


def test_fast_mode_adds_round_offset(accounts) -> None:
    a0, a1 = accounts
    tracker = NonceTracker(FakeTransport({a0.address: 5, a1.address: 7}))

    asyncio.run(tracker.fetch_all(accounts))

    assert tracker.state == C.NonceTrackerState.READY
    assert [tracker.nonce_for(a.address, 2, fast_mode=True) for a in accounts] == [7, 9]


def test_synchronized_mode_leaves_nonce_to_node(accounts) -> None:
    tracker = NonceTracker(FakeTransport())

    assert tracker.nonce_for(accounts[0].address, 3, fast_mode=False) is None


def test_unknown_account_in_fast_mode_raises(accounts) -> None:
    tracker = NonceTracker(FakeTransport())

    with pytest.raises(NonceFetchError):
        tracker.nonce_for(accounts[0].address, 0, fast_mode=True)


def test_partial_failure_keeps_stale_entry(accounts) -> None:
    a0, a1 = accounts
    transport = FakeTransport({a0.address: 5, a1.address: 7})
    tracker = NonceTracker(transport)
    asyncio.run(tracker.fetch_all(accounts))

    async def flaky(address):
        if address == a1.address:
            raise TransportError("connection reset")

    transport.nonces = {a0.address: 9, a1.address: 99}
    transport.on_count = flaky
    report = asyncio.run(tracker.fetch_all(accounts))

    assert report.nonces == {a0.address: 9}
    assert report.failures == {a1.address: "connection reset"}
    assert tracker.snapshot() == {a0.address: 9, a1.address: 7}


def test_total_failure_raises_and_keeps_state(accounts) -> None:
    async def broken(address):
        raise TransportError("down")

    tracker = NonceTracker(FakeTransport(on_count=broken))

    with pytest.raises(NonceFetchError) as exc_info:
        asyncio.run(tracker.resync(accounts))

    assert set(exc_info.value.failures) == {a.address for a in accounts}
    assert tracker.state == C.NonceTrackerState.UNINITIALIZED


def test_concurrent_resyncs_share_one_fetch(accounts) -> None:
    a0, a1 = accounts

    async def scenario():
        gate = asyncio.Event()

        async def held(address):
            await gate.wait()

        transport = FakeTransport({a0.address: 5, a1.address: 7}, on_count=held)
        tracker = NonceTracker(transport)
        first = asyncio.create_task(tracker.resync(accounts))
        for _ in range(5):
            await asyncio.sleep(0)
        assert tracker.refreshing
        second = asyncio.create_task(tracker.resync(accounts))
        await asyncio.sleep(0)
        gate.set()
        r1, r2 = await asyncio.gather(first, second)
        return transport, tracker, r1, r2

    transport, tracker, r1, r2 = asyncio.run(scenario())

    assert len(transport.count_calls) == 2
    assert r1 is r2
    assert tracker.state == C.NonceTrackerState.READY


def test_resync_restarts_offset_from_resync_round(accounts) -> None:
    a0, _ = accounts
    transport = FakeTransport({a0.address: 5})
    tracker = NonceTracker(transport)
    asyncio.run(tracker.fetch_all(accounts))

    transport.nonces = {a0.address: 20}
    asyncio.run(tracker.resync(accounts, round_offset=10))

    assert tracker.nonce_for(a0.address, 10, fast_mode=True) == 20
    assert tracker.nonce_for(a0.address, 12, fast_mode=True) == 22


def test_ensure_ready_fetches_only_once(accounts) -> None:
    transport = FakeTransport()
    tracker = NonceTracker(transport)

    async def scenario():
        await tracker.ensure_ready(accounts)
        await tracker.ensure_ready(accounts)

    asyncio.run(scenario())

    assert len(transport.count_calls) == 2
    assert tracker.state == C.NonceTrackerState.READY
