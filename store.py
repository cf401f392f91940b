# store.py
"""
Process-lifetime verification state.

Holds one VerificationRecord per account and at most one PendingTransaction
per account. Records are never deleted: a revoke flips `verified` and keeps
the pseudonym binding. Nothing here survives a restart; a RecordSink can
mirror confirmed transitions elsewhere (see db.py) but is never read back.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

from errors import AlreadyPending

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TxKind(str, Enum):
    VERIFY = "verify"
    REVOKE = "revoke"


@dataclass
class PendingTransaction:
    account: str
    kind: TxKind
    submitted_at: datetime
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    kind: TxKind
    tx_hash: str
    confirmed_at: datetime


@dataclass
class VerificationRecord:
    account: str
    verified: bool
    pseudonym_id: str
    last_tx_hash: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    history: List[Transition] = field(default_factory=list)


class RecordSink:
    """Persistence hook. The default does nothing."""

    def record_transition(self, record: VerificationRecord, transition: Transition) -> None:
        pass


class VerificationStore:
    def __init__(self, sink: Optional[RecordSink] = None):
        self._records: Dict[str, VerificationRecord] = {}
        self._pending: Dict[str, PendingTransaction] = {}
        self._sink = sink or RecordSink()

    def get(self, account: str) -> Optional[VerificationRecord]:
        return self._records.get(account)

    def pending_for(self, account: str) -> Optional[PendingTransaction]:
        return self._pending.get(account)

    @asynccontextmanager
    async def pending(self, account: str, kind: TxKind) -> AsyncIterator[PendingTransaction]:
        """
        Hold the per-account pending slot for the duration of the block.

        A second caller for the same account gets AlreadyPending instead of
        waiting. The check and the claim happen with no await between them,
        so one event loop cannot interleave two claims. The slot is released
        in `finally` without awaiting, so a timeout or task cancellation
        cannot leave it behind.
        """
        current = self._pending.get(account)
        if current is not None:
            raise AlreadyPending(
                "A transaction is already pending for this address",
                {
                    "address": account,
                    "kind": current.kind.value,
                    "submittedAt": current.submitted_at.isoformat(),
                },
            )
        tx = PendingTransaction(account=account, kind=kind, submitted_at=utcnow())
        self._pending[account] = tx

        try:
            yield tx
        finally:
            if self._pending.get(account) is tx:
                del self._pending[account]

    async def commit(
        self,
        account: str,
        kind: TxKind,
        tx_hash: str,
        pseudonym_id: Optional[str] = None,
    ) -> Optional[VerificationRecord]:
        """
        Apply a confirmed transaction to the local view.

        A revoke for an account with no local record leaves the map
        untouched and returns None. The in-memory update is done before the
        first await; the sink then runs in a worker thread so a slow
        database only delays this caller.
        """
        now = utcnow()
        transition = Transition(kind=kind, tx_hash=tx_hash, confirmed_at=now)
        record = self._records.get(account)

        if record is None:
            if kind is TxKind.REVOKE:
                return None
            if not pseudonym_id:
                raise ValueError("pseudonym_id is required for a first verification")
            record = VerificationRecord(account=account, verified=True, pseudonym_id=pseudonym_id)
            self._records[account] = record

        record.verified = kind is TxKind.VERIFY
        record.last_tx_hash = tx_hash
        record.confirmed_at = now
        record.history.append(transition)

        try:
            await asyncio.to_thread(self._sink.record_transition, record, transition)
        except Exception:
            logger.exception("Persistence hook failed for %s (non-fatal)", account)
        return record

    def __len__(self) -> int:
        return len(self._records)
