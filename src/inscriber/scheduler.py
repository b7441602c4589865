"""The recurring round loop.

Synchronized mode awaits every submission of a round before arming the
delay. Fast mode hands the round to a background task and arms the delay
immediately, so several rounds can be in flight at once; those tasks are
never cancelled, not even by ``stop()``. That is the throughput-over-
consistency trade-off fast mode exists for, and the stale-nonce recovery in
``inscriber.recovery`` is what cleans up after it.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence

import inscriber.constants as C
from inscriber.dispatcher import dispatch_round
from inscriber.errors import NonceFetchError
from inscriber.models import RunConfig, SignerAccount
from inscriber.nonces import NonceTracker
from inscriber.recovery import RecoveryController, ResultClassifier
from inscriber.rpc_client import ChainTransport
from inscriber.txn_factory import build_round

log = logging.getLogger("inscriber.scheduler")


class RoundScheduler:
    def __init__(
        self,
        *,
        config: RunConfig,
        accounts: Sequence[SignerAccount],
        tracker: NonceTracker,
        transport: ChainTransport,
        classifier: ResultClassifier,
        recovery: RecoveryController,
        on_round: Callable[[int], None] = lambda n: None,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
    ) -> None:
        self.config = config
        self.accounts = accounts
        self.tracker = tracker
        self.transport = transport
        self.classifier = classifier
        self.recovery = recovery
        self.on_round = on_round
        self.submit_timeout = submit_timeout

        self.state = C.SchedulerState.IDLE
        self.next_round = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self) -> asyncio.Task:
        if self.state != C.SchedulerState.IDLE:
            raise RuntimeError(f"Scheduler cannot start from {self.state}")
        self.state = C.SchedulerState.ACTIVE
        self._task = asyncio.create_task(self._loop(), name="round_scheduler")
        return self._task

    async def stop(self) -> None:
        """Stop issuing rounds. Idempotent; fast-mode rounds already issued keep running."""
        if self.state != C.SchedulerState.ACTIVE:
            return
        self.state = C.SchedulerState.STOPPED
        self._stop.set()
        if self._task is not None:
            await self._task
        log.info("Scheduler stopped after %s rounds (%s still in flight)", self.next_round, self.in_flight)

    async def drain(self) -> None:
        """Wait for fast-mode rounds that are still in flight."""
        while self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _settle(self, round_index: int, entries: list) -> None:
        outcomes = await dispatch_round(
            self.transport, self.accounts, entries, round_index, timeout=self.submit_timeout
        )
        self.classifier.classify_all(outcomes)

    def _round_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("%s failed: %r", task.get_name(), task.exception())

    async def _ensure_nonces(self, round_index: int) -> None:
        # a tracker nobody fetched yet is filled on the first fast round
        try:
            await self.tracker.ensure_ready(self.accounts, round_offset=round_index)
        except NonceFetchError as e:
            log.warning("Nonce fetch before round %s failed: %s", round_index, e)

    def _issue(self, round_index: int) -> asyncio.Task:
        entries = build_round(self.config, self.accounts, self.tracker, round_index)
        return asyncio.create_task(self._settle(round_index, entries), name=f"round_{round_index}")

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    async def _wait_resumed(self) -> None:
        resume_task = asyncio.create_task(self.recovery.wait_resumed())
        halt_task = asyncio.create_task(self._stop.wait())
        done, pending = await asyncio.wait({resume_task, halt_task}, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()

    async def _loop(self) -> None:
        delay = self.config.effective_delay_ms / 1000
        log.info(
            "Round loop starting: %s accounts, delay=%sms, fast_mode=%s",
            len(self.accounts), self.config.effective_delay_ms, self.config.fast_mode,
        )
        try:
            while not self._stop.is_set():
                if self.recovery.paused:
                    log.debug("Paused before round %s, waiting for resync", self.next_round)
                    await self._wait_resumed()
                    continue

                round_index = self.next_round
                if self.config.fast_mode:
                    await self._ensure_nonces(round_index)
                    if self._stop.is_set():
                        break
                try:
                    task = self._issue(round_index)
                    if self.config.fast_mode:
                        self._in_flight.add(task)
                        task.add_done_callback(self._round_done)
                    else:
                        await task
                except asyncio.CancelledError:
                    raise
                except Exception:
                    log.exception("Round %s failed; continuing", round_index)

                self.next_round = round_index + 1
                self.on_round(self.next_round)
                await self._sleep(delay)
        except asyncio.CancelledError:
            log.debug("Round loop cancelled")
            raise
        finally:
            log.debug("Round loop exited at round %s", self.next_round)
