import logging
from collections.abc import Sequence

import inscriber.constants as C
from inscriber.errors import NonceFetchError
from inscriber.models import Failure, RunConfig, SignerAccount, TransactionRequest
from inscriber.nonces import NonceTracker

log = logging.getLogger("inscriber.txn")


def _gas_fields(config: RunConfig) -> dict[str, int]:
    policy = config.gas_policy
    # zero means "use network defaults", same as leaving the field empty
    if policy is None or policy.amount_wei <= 0:
        return {}
    if policy.mode == C.GasMode.TOTAL:
        return {"gas_price": policy.amount_wei}
    return {"max_priority_fee_per_gas": policy.amount_wei}


def build_request(config: RunConfig, account: SignerAccount, nonce: int | None = None) -> TransactionRequest:
    """Build the unsigned request one account sends in one round.

    Pure: the same inputs always produce an equal request, so it is safe to
    call again for a retry.
    """
    to = account.address if config.mode == C.TransferMode.SELF_TRANSFER else config.target_address
    return TransactionRequest(
        to=to,
        value=0,
        data=config.payload,
        nonce=nonce,
        **_gas_fields(config),
    )


def build_round(
    config: RunConfig,
    accounts: Sequence[SignerAccount],
    tracker: NonceTracker,
    round_offset: int,
) -> list[TransactionRequest | Failure]:
    """One entry per account, aligned by index.

    Accounts whose fast-mode nonce is unknown get a ``Failure`` in place of a
    request so the rest of the round still goes out.
    """
    entries: list[TransactionRequest | Failure] = []
    for account in accounts:
        try:
            nonce = tracker.nonce_for(account.address, round_offset, fast_mode=config.fast_mode)
        except NonceFetchError as e:
            log.debug("round %s: %s", round_offset, e)
            entries.append(Failure(C.FailureKind.NONCE_FETCH, str(e)))
            continue
        entries.append(build_request(config, account, nonce))
    return entries
