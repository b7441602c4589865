from typing import Final
from enum import StrEnum


class TransferMode(StrEnum):
    SELF_TRANSFER = "self_transfer"
    MANY_TO_ONE   = "many_to_one"


class GasMode(StrEnum):
    TOTAL = "total"  # legacy all-inclusive gasPrice
    TIP   = "tip"    # EIP-1559 maxPriorityFeePerGas only


class FailureKind(StrEnum):
    EXECUTION_REJECTED = "ExecutionRejected"
    TRANSPORT          = "TransportError"
    NONCE_FETCH        = "NonceFetchError"
    UNKNOWN            = "Error"


class LogLevel(StrEnum):
    SUCCESS = "success"
    ERROR   = "error"
    INFO    = "info"


class SchedulerState(StrEnum):
    IDLE    = "IDLE"
    ACTIVE  = "ACTIVE"
    STOPPED = "STOPPED"


class NonceTrackerState(StrEnum):
    UNINITIALIZED = "UNINITIALIZED"
    READY         = "READY"
    REFRESHING    = "REFRESHING"


GWEI: Final = 10**9
MIN_FAST_INTERVAL_MS: Final = 100
RPC_TIMEOUT: Final = 10.0
SUBMIT_TIMEOUT: Final = 30.0
LOG_HISTORY: Final = 1000
EVENT_QUEUE_SIZE: Final = 1000
# maxFeePerGas = baseFee * multiplier + tip, same headroom wallet clients use
BASE_FEE_MULTIPLIER: Final = 1.2
DEFAULT_STALE_NONCE_PATTERNS: Final = ("nonce too low",)
EXAMPLE_PAYLOAD: Final = 'data:,{"p":"asc-20","op":"mint","tick":"aval","amt":"100000000"}'

__all__ = [
    "BASE_FEE_MULTIPLIER",
    "DEFAULT_STALE_NONCE_PATTERNS",
    "EVENT_QUEUE_SIZE",
    "EXAMPLE_PAYLOAD",
    "GWEI",
    "LOG_HISTORY",
    "MIN_FAST_INTERVAL_MS",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",

    ######
    "FailureKind",
    "GasMode",
    "LogLevel",
    "NonceTrackerState",
    "SchedulerState",
    "TransferMode",
]
