import asyncio

from conftest import FakeTransport, RecordingSink

import inscriber.constants as C
from inscriber.models import Failure, RoundOutcome, Success
from inscriber.nonces import NonceTracker
from inscriber.recovery import RecoveryController, ResultClassifier, StaleNonceMatcher


def _stale(address: str, round_index: int = 0) -> RoundOutcome:
    return RoundOutcome(address, round_index, Failure(C.FailureKind.EXECUTION_REJECTED, "nonce too low"))


def test_matcher_is_case_insensitive_and_configurable() -> None:
    default = StaleNonceMatcher()
    custom = StaleNonceMatcher(["nonce too low", "OldNonce"])

    assert default("Nonce too low: next nonce 12, tx nonce 9")
    assert not default("replacement transaction underpriced")
    assert custom("err: oldnonce")
    assert not StaleNonceMatcher([])("nonce too low")


def test_success_counts_and_logs(accounts) -> None:
    sink = RecordingSink()
    tracker = NonceTracker(FakeTransport())
    classifier = ResultClassifier(sink, RecoveryController(tracker, accounts, sink), fast_mode=False)

    classifier.classify(RoundOutcome(accounts[0].address, 0, Success("0xabc")))

    assert sink.successes == 1
    level, message, address = sink.events[0]
    assert level == C.LogLevel.SUCCESS
    assert message.endswith(" 0xabc")
    assert address == accounts[0].address


def test_other_failures_are_only_reported(accounts) -> None:
    sink = RecordingSink()
    recovery = RecoveryController(NonceTracker(FakeTransport()), accounts, sink)
    classifier = ResultClassifier(sink, recovery, fast_mode=True)

    classifier.classify(RoundOutcome(accounts[0].address, 0, Failure(C.FailureKind.TRANSPORT, "timeout")))

    assert sink.failures == 1
    assert sink.events[0][0] == C.LogLevel.ERROR
    assert "TransportError: timeout" in sink.events[0][1]
    assert sink.pause_history == []
    assert recovery.resync_count == 0


def test_stale_nonce_in_sync_mode_does_not_resync(accounts) -> None:
    sink = RecordingSink()
    recovery = RecoveryController(NonceTracker(FakeTransport()), accounts, sink)
    classifier = ResultClassifier(sink, recovery, fast_mode=False)

    classifier.classify(_stale(accounts[0].address))

    assert recovery.resync_count == 0
    assert not recovery.paused


def test_stale_nonce_pauses_until_single_resync_completes(accounts) -> None:
    a0, a1 = accounts

    async def scenario():
        gate = asyncio.Event()

        async def held(address):
            await gate.wait()

        transport = FakeTransport({a0.address: 11, a1.address: 12}, on_count=held)
        sink = RecordingSink()
        tracker = NonceTracker(transport)
        recovery = RecoveryController(tracker, accounts, sink, next_round=lambda: 3)
        classifier = ResultClassifier(sink, recovery, fast_mode=True)

        # both accounts fail in the same round
        classifier.classify_all([_stale(a0.address), _stale(a1.address)])
        assert sink.paused and recovery.paused
        for _ in range(5):
            await asyncio.sleep(0)
        assert sink.paused

        gate.set()
        await recovery.join()
        return transport, sink, tracker, recovery

    transport, sink, tracker, recovery = asyncio.run(scenario())

    assert recovery.resync_count == 1
    assert len(transport.count_calls) == 2
    assert sink.pause_history == [True, False]
    assert not recovery.paused
    assert tracker.nonce_for(a0.address, 3, fast_mode=True) == 11
    assert all("resetting" in m for lvl, m, _ in sink.events if lvl == C.LogLevel.ERROR)


def test_failed_resync_still_resumes(accounts) -> None:
    async def down(address):
        raise ConnectionError("down")

    async def scenario():
        sink = RecordingSink()
        recovery = RecoveryController(NonceTracker(FakeTransport(on_count=down)), accounts, sink)
        ResultClassifier(sink, recovery, fast_mode=True).classify(_stale(accounts[0].address))
        await recovery.join()
        return sink, recovery

    sink, recovery = asyncio.run(scenario())

    assert sink.pause_history == [True, False]
    assert any(C.FailureKind.NONCE_FETCH in m for _, m, _ in sink.events)
