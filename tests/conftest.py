# tests/conftest.py
import asyncio
import itertools

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from bridge import VerificationStateBridge
from chain.ledger import LedgerClient, SelfCheckReport, TxHandle, TxReceipt
from store import TxKind, VerificationStore, utcnow

SIGN_IN_MESSAGE = "Sign in to GhostPass\nNonce: 42"


def sign(account, text=SIGN_IN_MESSAGE):
    """Hex signature (0x-prefixed) as a wallet would post it."""
    return "0x" + bytes(account.sign_message(encode_defunct(text=text)).signature).hex()


class FakeLedger(LedgerClient):
    """In-memory registry with knobs for slow or failing calls."""

    def __init__(self):
        self.verified = {}
        self.submissions = []
        self.reads = 0
        self.read_error = None
        self.submit_error = None
        self.confirm_error = None
        self.hold = None
        self.entered = None
        self._counter = itertools.count(1)

    async def read_verified(self, account):
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        return self.verified.get(account.lower(), False)

    async def _submit(self, kind, accounts):
        if self.submit_error is not None:
            raise self.submit_error
        batch = tuple(sorted(a.lower() for a in accounts))
        handle = TxHandle(
            tx_hash="0x%064x" % next(self._counter),
            kind=kind,
            accounts=batch,
            submitted_at=utcnow(),
        )
        self.submissions.append(handle)
        return handle

    async def submit_verify(self, accounts):
        return await self._submit(TxKind.VERIFY, accounts)

    async def submit_revoke(self, accounts):
        return await self._submit(TxKind.REVOKE, accounts)

    async def await_confirmation(self, handle):
        if self.entered is not None:
            self.entered.set()
        if self.hold is not None:
            await self.hold.wait()
        if self.confirm_error is not None:
            raise self.confirm_error
        for account in handle.accounts:
            self.verified[account] = handle.kind is TxKind.VERIFY
        return TxReceipt(tx_hash=handle.tx_hash, status=1, block_number=len(self.submissions))

    async def self_check(self):
        return SelfCheckReport(contract_address="0x" + "11" * 20, has_code=True, probe_ok=True)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store():
    return VerificationStore()


@pytest.fixture
def bridge(ledger, store):
    return VerificationStateBridge(ledger, store)


@pytest.fixture
def wallet():
    return Account.create()


@pytest.fixture
def other_wallet():
    return Account.create()


def run(coro):
    return asyncio.run(coro)
