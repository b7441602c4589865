"""Batch transaction broadcast engine.

``BroadcastEngine`` is the only object a presentation layer needs. It
validates a run, wires the account store, nonce tracker, classifier,
recovery controller and round scheduler together, and publishes every log
event and ``RunState`` change to subscribers.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import replace
from typing import Any

import inscriber.constants as C
from inscriber.accounts import AccountStore
from inscriber.errors import NonceFetchError, ValidationError
from inscriber.models import LogEvent, RunConfig, RunState, short_address
from inscriber.nonces import NonceTracker
from inscriber.recovery import RecoveryController, ResultClassifier, StaleNonceMatcher
from inscriber.rpc_client import ChainTransport
from inscriber.scheduler import RoundScheduler

log = logging.getLogger("inscriber.engine")


class _RunSink:
    """Classifier/recovery view of the engine, bound to one run.

    Outcomes of fast-mode rounds can land after their run was stopped; they
    are still logged but no longer touch the (reset) counters.
    """

    def __init__(self, engine: "BroadcastEngine", run_id: int) -> None:
        self.engine = engine
        self.run_id = run_id

    def _current(self) -> bool:
        return self.engine._run_id == self.run_id and self.engine.state.running

    def emit(self, level: C.LogLevel, message: str, address: str | None = None) -> None:
        self.engine.emit(level, message, address)

    def record_success(self) -> None:
        if self._current():
            self.engine._update(success_count=self.engine.state.success_count + 1)

    def record_failure(self) -> None:
        if self._current():
            self.engine._update(failure_count=self.engine.state.failure_count + 1)

    def record_round(self, count: int) -> None:
        if self._current():
            self.engine._update(round_count=count)

    def set_paused(self, paused: bool) -> None:
        if self._current() and self.engine.state.paused != paused:
            log.info("Run %s", "paused for nonce resync" if paused else "resumed")
            self.engine._update(paused=paused)


class BroadcastEngine:
    def __init__(
        self,
        transport: ChainTransport,
        *,
        matcher: StaleNonceMatcher | None = None,
        log_history: int = C.LOG_HISTORY,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
    ) -> None:
        self.transport = transport
        self.matcher = matcher or StaleNonceMatcher()
        self.submit_timeout = submit_timeout

        self._state = RunState()
        self._logs: deque[LogEvent] = deque(maxlen=log_history)
        self._subscribers: set[asyncio.Queue] = set()
        self._run_id = 0
        self._starting = False
        self._start_cancelled = False
        self._stopping = False

        # Per-run collaborators, replaced on every start()
        self.config: RunConfig | None = None
        self.store: AccountStore | None = None
        self.tracker: NonceTracker | None = None
        self.recovery: RecoveryController | None = None
        self.scheduler: RoundScheduler | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def starting(self) -> bool:
        return self._starting

    # =========================================================================
    # Event stream
    # =========================================================================

    def subscribe(self, maxsize: int = C.EVENT_QUEUE_SIZE) -> asyncio.Queue:
        """Queue receiving every ``LogEvent`` and ``RunState`` change from now on."""
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    def _publish(self, item: LogEvent | RunState) -> None:
        for q in self._subscribers:
            try:
                q.put_nowait(item)
            except asyncio.QueueFull:
                log.warning("Subscriber queue full, dropping %s", type(item).__name__)

    def _update(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        self._publish(self._state)

    def emit(self, level: C.LogLevel, message: str, address: str | None = None) -> LogEvent:
        event = LogEvent(level=level, message=message, address=address)
        self._logs.appendleft(event)
        if level == C.LogLevel.ERROR:
            log.warning(message)
        else:
            log.info(message)
        self._publish(event)
        return event

    def logs(self, limit: int | None = None) -> list[LogEvent]:
        """Log history, newest first."""
        events = list(self._logs)
        return events if limit is None else events[:limit]

    def clear_logs(self) -> None:
        self._logs.clear()

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    @staticmethod
    def _load_accounts(keys: AccountStore | str | Iterable[str]) -> AccountStore:
        if isinstance(keys, AccountStore):
            return keys
        if isinstance(keys, str):
            return AccountStore.from_text(keys)
        return AccountStore.from_lines(keys)

    async def start(
        self,
        config: RunConfig,
        keys: AccountStore | str | Iterable[str],
        *,
        transport: ChainTransport | None = None,
    ) -> RunState:
        """Validate and start a run.

        Raises:
            ValidationError: bad config, no usable keys, or a run already active
                or starting. Logged as a single error event; the engine stays idle.
            NonceFetchError: fast mode could not fetch a single starting nonce.

        Returns the idle state, without starting, if ``stop()`` was called
        while the starting nonces were being fetched.
        """
        try:
            if self._state.running:
                raise ValidationError("A run is already active; stop it first")
            if self._starting:
                raise ValidationError("A run is already starting")
            store = self._load_accounts(keys)
            if not len(store):
                raise ValidationError("No valid private keys")
            config = config.validate()
        except ValidationError as e:
            self.emit(C.LogLevel.ERROR, str(e))
            raise

        self._starting = True
        self._start_cancelled = False
        try:
            return await self._launch(config, store, transport or self.transport)
        finally:
            self._starting = False

    async def _launch(self, config: RunConfig, store: AccountStore, transport: ChainTransport) -> RunState:
        tracker = NonceTracker(transport)
        if config.fast_mode:
            try:
                report = await tracker.fetch_all(store.accounts())
            except NonceFetchError as e:
                self.emit(C.LogLevel.ERROR, f"{C.FailureKind.NONCE_FETCH}: {e}")
                raise
            for addr, detail in report.failures.items():
                self.emit(C.LogLevel.ERROR, f"{short_address(addr)} {C.FailureKind.NONCE_FETCH}: {detail}", addr)

        # stop() arrived while the starting nonces were being fetched
        if self._start_cancelled:
            self.emit(C.LogLevel.INFO, "Run start cancelled")
            return self._state

        self._run_id += 1
        sink = _RunSink(self, self._run_id)
        recovery = RecoveryController(tracker, store.accounts(), sink)
        classifier = ResultClassifier(sink, recovery, fast_mode=config.fast_mode, matcher=self.matcher)
        scheduler = RoundScheduler(
            config=config,
            accounts=store.accounts(),
            tracker=tracker,
            transport=transport,
            classifier=classifier,
            recovery=recovery,
            on_round=sink.record_round,
            submit_timeout=self.submit_timeout,
        )
        recovery.next_round = lambda: scheduler.next_round

        self.config, self.store, self.tracker = config, store, tracker
        self.recovery, self.scheduler = recovery, scheduler

        self._state = RunState(running=True)
        self._publish(self._state)
        self.emit(
            C.LogLevel.INFO,
            f"Run started: {len(store)} accounts, {config.mode}, "
            f"{'fast' if config.fast_mode else 'synchronized'} mode, delay {config.effective_delay_ms}ms",
        )
        scheduler.start()
        return self._state

    async def stop(self) -> RunState:
        """Stop the current run and reset ``RunState``. Returns the final counters.

        Idempotent. Fast-mode submissions already issued are left to finish.
        A stop during a fast-mode start cancels that start.
        """
        if self._starting:
            self._start_cancelled = True
            log.info("Stop requested while starting; start cancelled")
            return self._state
        if not self._state.running or self._stopping or self.scheduler is None:
            return self._state
        self._stopping = True
        try:
            await self.scheduler.stop()
            final = replace(self._state, running=False, paused=False)
            self._state = RunState()
            self._publish(self._state)
        finally:
            self._stopping = False
        self.emit(C.LogLevel.INFO, f"Run stopped: {final.success_count} successes in {final.round_count} rounds")
        return final

    async def drain(self) -> None:
        """Wait for in-flight fast-mode rounds and any pending resync."""
        if self.scheduler is not None:
            await self.scheduler.drain()
        if self.recovery is not None:
            await self.recovery.join()

    async def close(self) -> None:
        await self.stop()
        await self.transport.close()

    def status(self) -> dict[str, Any]:
        return {
            **self._state.to_dict(),
            "accounts": self.store.addresses() if self.store is not None else [],
            "scheduler": self.scheduler.state if self.scheduler is not None else C.SchedulerState.IDLE,
            "in_flight_rounds": self.scheduler.in_flight if self.scheduler is not None else 0,
            "nonce_state": self.tracker.state if self.tracker is not None else C.NonceTrackerState.UNINITIALIZED,
            "nonces": self.tracker.snapshot() if self.tracker is not None else {},
        }
