import asyncio
import logging
from collections.abc import Sequence

import httpx

import inscriber.constants as C
from inscriber.errors import ExecutionRejectedError, NonceFetchError, RPCError, TransportError
from inscriber.models import Failure, RoundOutcome, SignerAccount, Success, TransactionRequest
from inscriber.rpc_client import ChainTransport

log = logging.getLogger("inscriber.dispatch")


def failure_from_exception(e: Exception) -> Failure:
    if isinstance(e, ExecutionRejectedError):
        return Failure(C.FailureKind.EXECUTION_REJECTED, e.detail)
    if isinstance(e, NonceFetchError):
        return Failure(C.FailureKind.NONCE_FETCH, str(e))
    if isinstance(e, asyncio.TimeoutError):
        return Failure(C.FailureKind.TRANSPORT, "timeout")
    if isinstance(e, (TransportError, RPCError, httpx.HTTPError, OSError)):
        return Failure(C.FailureKind.TRANSPORT, str(e) or e.__class__.__name__)
    return Failure(C.FailureKind.UNKNOWN, f"{e.__class__.__name__}: {e}")


async def _submit(
    transport: ChainTransport,
    account: SignerAccount,
    request: TransactionRequest,
    round_index: int,
    timeout: float,
) -> RoundOutcome:
    try:
        tx_hash = await asyncio.wait_for(transport.sign_and_send(account, request), timeout=timeout)
    except Exception as e:
        log.debug("round %s %s failed: %s", round_index, account.address, e)
        return RoundOutcome(account.address, round_index, failure_from_exception(e))
    return RoundOutcome(account.address, round_index, Success(str(tx_hash)))


async def dispatch_round(
    transport: ChainTransport,
    accounts: Sequence[SignerAccount],
    requests: Sequence[TransactionRequest | Failure],
    round_index: int,
    *,
    timeout: float = C.SUBMIT_TIMEOUT,
) -> list[RoundOutcome]:
    """Submit every request concurrently; outcomes come back aligned with ``accounts``.

    Entries that are already a ``Failure`` (no nonce, for instance) are passed
    through without touching the network. Each submission catches its own
    errors, so one account never cancels another.
    """
    if len(accounts) != len(requests):
        raise ValueError(f"{len(accounts)} accounts but {len(requests)} requests")

    async def _one(account: SignerAccount, entry: TransactionRequest | Failure) -> RoundOutcome:
        if isinstance(entry, Failure):
            return RoundOutcome(account.address, round_index, entry)
        return await _submit(transport, account, entry, round_index, timeout)

    return list(await asyncio.gather(*(_one(a, r) for a, r in zip(accounts, requests))))
