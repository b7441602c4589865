"""Outcome classification and automatic nonce recovery.

Every ``RoundOutcome`` becomes exactly one log event. A stale-nonce rejection
in fast mode also pauses the run and triggers a single nonce resync; the run
resumes once the resync finishes, whether or not it succeeded.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol

import inscriber.constants as C
from inscriber.errors import NonceFetchError
from inscriber.models import Failure, RoundOutcome, SignerAccount, Success, short_address
from inscriber.nonces import NonceTracker

log = logging.getLogger("inscriber.recovery")


class RunSink(Protocol):
    """What the classifier and recovery controller are allowed to change."""

    def emit(self, level: C.LogLevel, message: str, address: str | None = None) -> None: ...
    def record_success(self) -> None: ...
    def record_failure(self) -> None: ...
    def set_paused(self, paused: bool) -> None: ...


class StaleNonceMatcher:
    """Decides whether a rejection detail means "our nonce is behind the chain".

    Node software words this differently, so the patterns are configurable.
    Matching is a case-insensitive substring test.
    """

    def __init__(self, patterns: Iterable[str] = C.DEFAULT_STALE_NONCE_PATTERNS) -> None:
        self.patterns = tuple(p.lower() for p in patterns if p)

    def __call__(self, detail: str) -> bool:
        text = (detail or "").lower()
        return any(p in text for p in self.patterns)


class RecoveryController:
    def __init__(
        self,
        tracker: NonceTracker,
        accounts: Sequence[SignerAccount],
        sink: RunSink,
        *,
        next_round: Callable[[], int] = lambda: 0,
    ) -> None:
        self.tracker = tracker
        self.accounts = accounts
        self.sink = sink
        self.next_round = next_round
        self._task: asyncio.Task | None = None
        self._resumed = asyncio.Event()
        self._resumed.set()
        self.resync_count = 0

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    async def wait_resumed(self) -> None:
        await self._resumed.wait()

    def request_resync(self) -> asyncio.Task:
        """Pause and resync, unless a resync is already running; then join that one."""
        if self._task is None or self._task.done():
            self._resumed.clear()
            self.sink.set_paused(True)
            self.resync_count += 1
            self._task = asyncio.create_task(self._resync(), name="recovery_resync")
        return self._task

    async def _resync(self) -> None:
        try:
            report = await self.tracker.resync(self.accounts, round_offset=self.next_round())
            for addr, detail in report.failures.items():
                self.sink.emit(C.LogLevel.ERROR, f"{short_address(addr)} nonce resync failed: {detail}", addr)
            log.info("Nonces resynced for %s accounts", len(report.nonces))
            self.sink.emit(C.LogLevel.INFO, f"Nonces resynced ({len(report.nonces)}/{len(self.accounts)})")
        except NonceFetchError as e:
            log.warning("Nonce resync failed: %s", e)
            self.sink.emit(C.LogLevel.ERROR, f"{C.FailureKind.NONCE_FETCH}: {e}")
        finally:
            self._resumed.set()
            self.sink.set_paused(False)

    async def join(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)


class ResultClassifier:
    def __init__(
        self,
        sink: RunSink,
        recovery: RecoveryController,
        *,
        fast_mode: bool,
        matcher: StaleNonceMatcher | None = None,
    ) -> None:
        self.sink = sink
        self.recovery = recovery
        self.fast_mode = fast_mode
        self.matcher = matcher or StaleNonceMatcher()

    def is_stale_nonce(self, failure: Failure) -> bool:
        return failure.kind == C.FailureKind.EXECUTION_REJECTED and self.matcher(failure.detail)

    def classify(self, outcome: RoundOutcome) -> None:
        addr = outcome.address
        result = outcome.result
        if isinstance(result, Success):
            self.sink.record_success()
            self.sink.emit(C.LogLevel.SUCCESS, f"{short_address(addr)} {result.tx_hash}", addr)
            return

        self.sink.record_failure()
        msg = f"{short_address(addr)} {result.kind}: {result.detail}"
        if self.fast_mode and self.is_stale_nonce(result):
            msg += ", nonce out of sync, resetting..."
            self.recovery.request_resync()
        log.debug("round %s %s -> %s", outcome.round_index, addr, result)
        self.sink.emit(C.LogLevel.ERROR, msg, addr)

    def classify_all(self, outcomes: Iterable[RoundOutcome]) -> None:
        for outcome in outcomes:
            self.classify(outcome)
