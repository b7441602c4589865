"""Error taxonomy for the broadcast engine.

Everything below ``InscriberError`` is recovered at the per-account or
per-round boundary. Only ``ValidationError`` and a total ``NonceFetchError``
ever reach the caller of ``BroadcastEngine.start()``.
"""


class InscriberError(RuntimeError):
    """Base class for all engine errors."""


class ValidationError(InscriberError):
    """Raised before a run starts when the configuration or keys are unusable."""


class TransportError(InscriberError):
    """Raised when the RPC endpoint is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RPCError(InscriberError):
    """Raised when the node answers a JSON-RPC call with an ``error`` object."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(f"RPC error {code}: {message}" if code is not None else message)
        self.code = code
        self.message = message


class ExecutionRejectedError(RPCError):
    """The node refused the transaction itself (stale nonce, insufficient funds, ...)."""

    @property
    def detail(self) -> str:
        return self.message


class NonceFetchError(InscriberError):
    """Nonce lookup failed for every account, or a fast-mode nonce is missing."""

    def __init__(self, message: str, failures: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or {}
