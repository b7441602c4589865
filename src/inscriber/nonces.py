"""Per-account nonce tracking.

Fast mode computes nonces locally: the base nonce fetched from the chain plus
the number of rounds issued since that fetch. Synchronized mode leaves the
nonce to the node, so ``nonce_for`` returns ``None`` there.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

import inscriber.constants as C
from inscriber.errors import NonceFetchError
from inscriber.models import SignerAccount

log = logging.getLogger("inscriber.nonces")


class ChainQuery(Protocol):
    async def get_transaction_count(self, address: str) -> int: ...


@dataclass(slots=True)
class NonceFetchReport:
    nonces: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)


class NonceTracker:
    def __init__(self, client: ChainQuery, *, timeout: float = C.RPC_TIMEOUT) -> None:
        self.client = client
        self.timeout = timeout
        self.state = C.NonceTrackerState.UNINITIALIZED
        self._base: dict[str, int] = {}
        # round offset at which each base nonce was fetched
        self._origin: dict[str, int] = {}
        self._inflight: asyncio.Task | None = None
        self.fetch_count = 0

    @property
    def refreshing(self) -> bool:
        return self.state == C.NonceTrackerState.REFRESHING

    async def _query(self, address: str) -> int:
        self.fetch_count += 1
        return await asyncio.wait_for(self.client.get_transaction_count(address), timeout=self.timeout)

    async def fetch_all(self, accounts: Iterable[SignerAccount], *, round_offset: int = 0) -> NonceFetchReport:
        """Query every account's transaction count concurrently.

        Successful lookups overwrite the stored base nonce. Failed lookups keep
        whatever was stored before and are listed in the report.

        Raises:
            NonceFetchError: only if every lookup failed.
        """
        addresses = [a.address for a in accounts]
        results = await asyncio.gather(*(self._query(addr) for addr in addresses), return_exceptions=True)

        report = NonceFetchReport()
        for addr, res in zip(addresses, results):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                detail = str(res) or res.__class__.__name__
                log.warning("Nonce fetch failed for %s: %s", addr, detail)
                report.failures[addr] = detail
                continue
            self._base[addr] = int(res)
            self._origin[addr] = round_offset
            report.nonces[addr] = int(res)

        if addresses and not report.nonces:
            raise NonceFetchError(f"Nonce fetch failed for all {len(addresses)} accounts", report.failures)

        self.state = C.NonceTrackerState.READY
        log.debug("Fetched %s nonces (%s failed) at round %s", len(report.nonces), len(report.failures), round_offset)
        return report

    async def _refresh(self, accounts: list[SignerAccount], round_offset: int) -> NonceFetchReport:
        previous = self.state
        self.state = C.NonceTrackerState.REFRESHING
        try:
            return await self.fetch_all(accounts, round_offset=round_offset)
        except BaseException:
            self.state = previous
            raise

    async def resync(self, accounts: Iterable[SignerAccount], *, round_offset: int = 0) -> NonceFetchReport:
        """Re-fetch every nonce. Concurrent callers share a single in-flight fetch."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(
                self._refresh(list(accounts), round_offset), name="nonce_resync"
            )
        else:
            log.debug("Resync already in flight, joining it")
        return await asyncio.shield(self._inflight)

    async def ensure_ready(self, accounts: Iterable[SignerAccount], *, round_offset: int = 0) -> None:
        if self.state == C.NonceTrackerState.UNINITIALIZED:
            await self.resync(accounts, round_offset=round_offset)

    def nonce_for(self, address: str, round_offset: int, *, fast_mode: bool) -> int | None:
        if not fast_mode:
            return None
        try:
            base = self._base[address]
        except KeyError:
            raise NonceFetchError(f"No nonce known for {address}", {address: "missing"}) from None
        return base + round_offset - self._origin.get(address, 0)

    def snapshot(self) -> dict[str, int]:
        return dict(self._base)
