"""Domain data structures shared across the engine."""

import time
from dataclasses import asdict, dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any

from eth_account.signers.local import LocalAccount
from eth_utils import is_address, to_checksum_address

import inscriber.constants as C
from inscriber.errors import ValidationError


@dataclass(frozen=True, slots=True)
class SignerAccount:
    """A signer identity derived from a private key.

    The key itself only lives inside the wrapped ``LocalAccount`` and is kept
    out of ``repr`` so accounts can be logged freely.
    """

    address: str
    signer: LocalAccount = field(repr=False, compare=False)

    @classmethod
    def from_local(cls, local: LocalAccount) -> "SignerAccount":
        return cls(address=local.address, signer=local)

    def sign_transaction(self, tx: dict[str, Any]):
        return self.signer.sign_transaction(tx)


@dataclass(frozen=True, slots=True)
class GasPolicy:
    mode: C.GasMode
    amount_gwei: Decimal

    @classmethod
    def parse(cls, mode: C.GasMode | str, amount: Decimal | float | int | str) -> "GasPolicy":
        try:
            amt = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid gas amount: {amount!r}") from e
        if not amt.is_finite() or amt < 0:
            raise ValidationError(f"Gas amount must be a non-negative number, got {amount!r}")
        try:
            mode = C.GasMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown gas mode: {mode!r}") from None
        return cls(mode=mode, amount_gwei=amt)

    @property
    def amount_wei(self) -> int:
        return int(self.amount_gwei * C.GWEI)


@dataclass(frozen=True, slots=True)
class RunConfig:
    mode: C.TransferMode
    payload: bytes
    target_address: str | None = None
    gas_policy: GasPolicy | None = None
    interval_ms: int = 0
    fast_mode: bool = False

    @classmethod
    def from_text(cls, *, payload: str, **kwargs) -> "RunConfig":
        """Build a config whose payload is the UTF-8 encoding of ``payload``."""
        return cls(payload=payload.encode("utf-8"), **kwargs)

    @property
    def effective_delay_ms(self) -> int:
        if self.fast_mode:
            return max(self.interval_ms, C.MIN_FAST_INTERVAL_MS)
        return self.interval_ms

    def validate(self) -> "RunConfig":
        """Check the run invariants and return a copy with a checksummed target.

        Raises:
            ValidationError: on the first violated invariant.
        """
        if self.mode == C.TransferMode.MANY_TO_ONE:
            if not self.target_address:
                raise ValidationError("No target address for many-to-one mode")
            if not is_address(self.target_address):
                raise ValidationError(f"Invalid target address: {self.target_address}")
        if not self.payload:
            raise ValidationError("No payload to send")
        if self.interval_ms < 0:
            raise ValidationError(f"Interval must be >= 0 ms, got {self.interval_ms}")

        target = self.target_address
        if self.mode == C.TransferMode.MANY_TO_ONE:
            target = to_checksum_address(target)
        return replace(self, target_address=target)


@dataclass(frozen=True, slots=True)
class TransactionRequest:
    """Unsigned request handed to the transport. ``None`` fields are filled by the network."""

    to: str
    data: bytes
    value: int = 0
    nonce: int | None = None
    gas_price: int | None = None
    max_priority_fee_per_gas: int | None = None


@dataclass(frozen=True, slots=True)
class Success:
    tx_hash: str


@dataclass(frozen=True, slots=True)
class Failure:
    kind: C.FailureKind
    detail: str


@dataclass(frozen=True, slots=True)
class RoundOutcome:
    address: str
    round_index: int
    result: Success | Failure

    @property
    def ok(self) -> bool:
        return isinstance(self.result, Success)


@dataclass(frozen=True, slots=True)
class RunState:
    running: bool = False
    paused: bool = False
    success_count: int = 0
    failure_count: int = 0
    round_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class LogEvent:
    level: C.LogLevel
    message: str
    address: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "address": self.address,
        }


def short_address(address: str) -> str:
    """``0x1234...abcd`` form used in log lines."""
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"
