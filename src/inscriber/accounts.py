"""Account store: turns raw private-key lines into signer accounts."""

import logging
import re
from collections.abc import Iterable, Iterator

from eth_account import Account

from inscriber.models import SignerAccount

log = logging.getLogger("inscriber.accounts")

_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class AccountStore:
    """Ordered, immutable set of signers for one run.

    Index order is significant: results and nonce lookups are correlated with
    it for the whole run.
    """

    def __init__(self, accounts: Iterable[SignerAccount]) -> None:
        self._accounts: tuple[SignerAccount, ...] = tuple(accounts)

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> "AccountStore":
        accounts = []
        for lineno, raw in enumerate(lines, start=1):
            line = raw.strip()
            if not _KEY_RE.match(line):
                if line:
                    log.debug("Skipping malformed key on line %s", lineno)
                continue
            key = line if line[:2].lower() == "0x" else f"0x{line}"
            try:
                local = Account.from_key(key)
            except ValueError:
                # well-formed hex but not a usable secp256k1 scalar
                log.debug("Skipping invalid key on line %s", lineno)
                continue
            accounts.append(SignerAccount.from_local(local))
        log.debug("Loaded %s accounts", len(accounts))
        return cls(accounts)

    @classmethod
    def from_text(cls, text: str) -> "AccountStore":
        return cls.from_lines(text.splitlines())

    def accounts(self) -> tuple[SignerAccount, ...]:
        return self._accounts

    def addresses(self) -> list[str]:
        return [a.address for a in self._accounts]

    def __len__(self) -> int:
        return len(self._accounts)

    def __iter__(self) -> Iterator[SignerAccount]:
        return iter(self._accounts)
