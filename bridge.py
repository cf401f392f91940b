# bridge.py
"""
VerificationStateBridge: orchestrates signature checks, pseudonyms and ledger
transactions for one account at a time.

Per-account lifecycle:

    Unverified --verify confirmed--> Verified
    Verified   --revoke confirmed--> Unverified
    any        --submitted-------->  Pending(previous)
    Pending    --confirmed-------->  target state
    Pending    --failed/timeout--->  previous state, error surfaced

The local record only ever changes after a confirmed receipt. The ledger is
authoritative for `verified`; the record adds pseudonym and timestamp.
Nothing here retries: a timed-out confirmation is reported and the caller
may submit again.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from chain.ledger import LedgerClient, TxHandle, TxReceipt
from errors import (
    GhostPassError,
    InvalidAddress,
    LedgerError,
    RevokeNotAuthorized,
    VerificationFailed,
)
from pseudonym import PseudonymAllocator
from signature import SignatureAuthenticator
from store import PendingTransaction, TxKind, VerificationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifyResult:
    account: str
    pseudonym_id: str
    tx_hash: str


@dataclass(frozen=True)
class RevokeResult:
    account: str
    tx_hash: str


@dataclass(frozen=True)
class StatusResult:
    account: str
    verified: bool
    pseudonym_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    pending: Optional[str] = None


class VerificationStateBridge:
    def __init__(
        self,
        ledger: LedgerClient,
        store: Optional[VerificationStore] = None,
        authenticator: Optional[SignatureAuthenticator] = None,
        allocator: Optional[PseudonymAllocator] = None,
        *,
        revoke_requires_signature: bool = True,
    ):
        self.ledger = ledger
        self.store = store or VerificationStore()
        self.authenticator = authenticator or SignatureAuthenticator()
        self.allocator = allocator or PseudonymAllocator(self.store)
        self.revoke_requires_signature = revoke_requires_signature

    # ────────────────────────────────────────────────────────────
    # Helpers
    # ────────────────────────────────────────────────────────────

    @contextmanager
    def _logged(self, operation: str, account: Any):
        try:
            yield
        except GhostPassError as e:
            logger.warning(
                "%s failed for %s: [%s] %s %s", operation, account, e.code, e.message, e.details or ""
            )
            raise

    def _require_address(self, candidate: Any) -> str:
        if not self.ledger.is_address_valid(candidate):
            raise InvalidAddress(candidate)
        return self.ledger.canonical_address(candidate)

    async def _submit_and_confirm(
        self,
        pending: PendingTransaction,
        submit: Callable[[Iterable[str]], Awaitable[TxHandle]],
        failure_message: str,
    ) -> TxReceipt:
        try:
            handle = await submit({pending.account})
            pending.tx_hash = handle.tx_hash
            return await self.ledger.await_confirmation(handle)
        except LedgerError as e:
            raise VerificationFailed.from_ledger(failure_message, e, pending.tx_hash) from e

    def pending_for(self, account: str) -> Optional[PendingTransaction]:
        return self.store.pending_for(self._require_address(account))

    # ────────────────────────────────────────────────────────────
    # Operations
    # ────────────────────────────────────────────────────────────

    async def verify(self, claimed_account: Any, signature: str, message: str) -> VerifyResult:
        with self._logged("verify", claimed_account):
            account = self._require_address(claimed_account)
            self.authenticator.authenticate(account, message, signature)

            async with self.store.pending(account, TxKind.VERIFY) as pending:
                pseudonym_id = self.allocator.allocate(account)
                receipt = await self._submit_and_confirm(
                    pending, self.ledger.submit_verify, "Failed to verify user"
                )
                record = await self.store.commit(
                    account, TxKind.VERIFY, receipt.tx_hash, pseudonym_id=pseudonym_id
                )

        logger.info("User verified: %s, txHash: %s", account, receipt.tx_hash)
        return VerifyResult(account=account, pseudonym_id=record.pseudonym_id, tx_hash=receipt.tx_hash)

    async def status(self, address: Any) -> StatusResult:
        with self._logged("status", address):
            account = self._require_address(address)
            verified = await self.ledger.read_verified(account)

        record = self.store.get(account)
        pending = self.store.pending_for(account)
        return StatusResult(
            account=account,
            verified=verified,
            pseudonym_id=record.pseudonym_id if record else None,
            timestamp=record.confirmed_at if record else None,
            pending=pending.kind.value if pending else None,
        )

    async def revoke(
        self,
        address: Any,
        signature: Optional[str] = None,
        message: Optional[str] = None,
        *,
        admin: bool = False,
    ) -> RevokeResult:
        with self._logged("revoke", address):
            account = self._require_address(address)

            if self.revoke_requires_signature and not admin:
                if not signature or not message:
                    raise RevokeNotAuthorized(
                        "Revocation requires a signature from the address or an admin key",
                        {"address": account},
                    )
                self.authenticator.authenticate(account, message, signature)

            async with self.store.pending(account, TxKind.REVOKE) as pending:
                receipt = await self._submit_and_confirm(
                    pending, self.ledger.submit_revoke, "Failed to revoke verification"
                )
                await self.store.commit(account, TxKind.REVOKE, receipt.tx_hash)

        logger.info("User revoked: %s, txHash: %s", account, receipt.tx_hash)
        return RevokeResult(account=account, tx_hash=receipt.tx_hash)
