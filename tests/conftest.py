import asyncio

import pytest
from eth_account import Account

from inscriber.accounts import AccountStore
from inscriber.models import SignerAccount, TransactionRequest

# eth-account's documented example key and address
KEY_A = "b25c7db31feed9122727bf0939dc769a96564b2de4c4726d035b36ecf1e5b364"
ADDR_A = "0x5ce9454909639D2D17A3F753ce7d93fa0b9aB12E"
KEY_B = "0x" + "11" * 32
KEY_C = "0x" + "22" * 32


class FakeTransport:
    """In-memory chain: nonces from a dict, sends recorded in call order."""

    def __init__(self, nonces: dict[str, int] | None = None, *, on_send=None, on_count=None) -> None:
        self.nonces = dict(nonces or {})
        self.on_send = on_send
        self.on_count = on_count
        self.sent: list[tuple[str, TransactionRequest]] = []
        self.count_calls: list[str] = []
        self.closed = False

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        self.count_calls.append(address)
        if self.on_count is not None:
            await self.on_count(address)
        await asyncio.sleep(0)
        return self.nonces.get(address, 0)

    async def sign_and_send(self, account: SignerAccount, request: TransactionRequest) -> str:
        self.sent.append((account.address, request))
        n = len(self.sent)
        if self.on_send is not None:
            await self.on_send(account, request, n)
        await asyncio.sleep(0)
        return f"0x{n:064x}"

    async def close(self) -> None:
        self.closed = True

    def sent_by(self, address: str) -> list[TransactionRequest]:
        return [r for a, r in self.sent if a == address]


class RecordingSink:
    """Stands in for the engine: keeps every event and counter change."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, str | None]] = []
        self.successes = 0
        self.failures = 0
        self.paused = False
        self.pause_history: list[bool] = []

    def emit(self, level, message, address=None):
        self.events.append((level, message, address))

    def record_success(self):
        self.successes += 1

    def record_failure(self):
        self.failures += 1

    def set_paused(self, paused):
        self.paused = paused
        self.pause_history.append(paused)


async def wait_until(predicate, timeout: float = 2.0, step: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(step)


@pytest.fixture
def store() -> AccountStore:
    return AccountStore.from_lines([KEY_A, KEY_B])


@pytest.fixture
def accounts(store):
    return store.accounts()


@pytest.fixture
def addr_b() -> str:
    return Account.from_key(KEY_B).address
