# chain/ledger.py
"""
LedgerClient: the only code that talks to the registry contract.

Pattern: submit tx -> wait for receipt -> return authoritative outcome.
web3.py is synchronous, so every network call runs in a worker thread. Reads
and receipt waits are cut off by asyncio.wait_for; broadcasts are waited out.
Failures are classified here into LedgerTimeout (the node did not answer in
time or could not be reached) and LedgerCallFailed (ABI or decode mismatch,
revert, anything else the node rejected).
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
from web3 import Web3
from web3.exceptions import (
    ABIFunctionNotFound,
    BadFunctionCallOutput,
    ContractLogicError,
    MismatchedABI,
    TimeExhausted,
    Web3ValidationError,
)

from chain.abi import (
    IS_VERIFIED,
    REVOKE_MANY,
    REVOKE_ONE,
    VERIFY_MANY,
    VERIFY_ONE,
    ZERO_ADDRESS,
    has_function,
)
from chain.wallet import Signer
from errors import LedgerCallFailed, LedgerError, LedgerTimeout
from store import TxKind, utcnow

logger = logging.getLogger(__name__)

READ_TIMEOUT = 10
SUBMIT_TIMEOUT = 30
RECEIPT_TIMEOUT = 120


@dataclass(frozen=True)
class TxHandle:
    tx_hash: str
    kind: TxKind
    accounts: Tuple[str, ...]
    submitted_at: datetime


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class SelfCheckReport:
    contract_address: str
    has_code: bool = False
    probe_ok: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.has_code and self.probe_ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract": self.contract_address,
            "hasCode": self.has_code,
            "probeOk": self.probe_ok,
            "errors": list(self.errors),
        }


def classify(err: Exception, operation: str, **context) -> LedgerError:
    """Map a web3 / transport exception onto the ledger error taxonomy."""
    details = {"operation": operation, **context}

    if isinstance(err, LedgerError):
        return err
    if isinstance(err, (asyncio.TimeoutError, TimeExhausted, requests.exceptions.Timeout)):
        return LedgerTimeout(f"Ledger did not respond in time ({operation})", details)
    if isinstance(err, requests.exceptions.ConnectionError):
        details["reason"] = "unreachable"
        return LedgerTimeout(f"Ledger node unreachable ({operation})", details)
    if isinstance(err, ContractLogicError):
        details["reason"] = "reverted"
        details["revert"] = str(err)
        return LedgerCallFailed(f"Contract call reverted ({operation})", details)
    if isinstance(err, (BadFunctionCallOutput, MismatchedABI, ABIFunctionNotFound, Web3ValidationError)):
        details["reason"] = "interface_mismatch"
        details["message"] = str(err)
        return LedgerCallFailed(f"Contract interface mismatch ({operation})", details)

    details["reason"] = type(err).__name__
    details["message"] = str(err)
    return LedgerCallFailed(f"Ledger call failed ({operation})", details)


class LedgerClient:
    """Capability interface over the registry contract."""

    def is_address_valid(self, candidate: Any) -> bool:
        return isinstance(candidate, str) and Web3.is_address(candidate)

    def canonical_address(self, candidate: str) -> str:
        """Lower-case 0x-prefixed hex; accepts any spelling is_address_valid accepts."""
        return Web3.to_checksum_address(candidate).lower()

    async def read_verified(self, account: str) -> bool:
        raise NotImplementedError

    async def submit_verify(self, accounts: Iterable[str]) -> TxHandle:
        raise NotImplementedError

    async def submit_revoke(self, accounts: Iterable[str]) -> TxHandle:
        raise NotImplementedError

    async def await_confirmation(self, handle: TxHandle) -> TxReceipt:
        raise NotImplementedError

    async def self_check(self) -> SelfCheckReport:
        raise NotImplementedError


class Web3LedgerClient(LedgerClient):
    def __init__(
        self,
        signer: Signer,
        contract_address: str,
        abi: List[Dict[str, Any]],
        *,
        read_timeout: float = READ_TIMEOUT,
        submit_timeout: float = SUBMIT_TIMEOUT,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        poll_interval: float = 2.0,
        confirmations: int = 1,
    ):
        self.w3 = signer.w3
        self.signer = signer
        self.abi = abi
        self.address = Web3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.address, abi=abi)
        self.read_timeout = read_timeout
        self.submit_timeout = submit_timeout
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.confirmations = max(1, confirmations)

    async def _run(self, fn: Callable[[], Any], timeout: float, operation: str, **context):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout)
        except LedgerError:
            raise
        except Exception as e:
            raise classify(e, operation, **context) from e

    async def _broadcast(self, send: Callable[[], str], operation: str, **context) -> str:
        """
        Run a signed broadcast to completion.

        Past `submit_timeout` the wait is logged and continues, so the caller
        keeps its pending slot until the send has either failed or produced a
        hash. Each RPC inside `send` is bounded by the provider's request
        timeout.
        """
        task = asyncio.ensure_future(asyncio.to_thread(send))
        try:
            try:
                return await asyncio.wait_for(asyncio.shield(task), self.submit_timeout)
            except asyncio.TimeoutError:
                if task.done():
                    raise
                logger.warning(
                    "%s broadcast still running after %ss; waiting for it to finish",
                    operation,
                    self.submit_timeout,
                )
                return await task
        except LedgerError:
            raise
        except Exception as e:
            raise classify(e, operation, **context) from e

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    async def read_verified(self, account: str) -> bool:
        checksum = Web3.to_checksum_address(account)
        if not has_function(self.abi, IS_VERIFIED):
            raise LedgerCallFailed(
                f"Contract ABI has no {IS_VERIFIED}()",
                {"operation": IS_VERIFIED, "reason": "interface_mismatch"},
            )

        result = await self._run(
            lambda: self.contract.functions[IS_VERIFIED](checksum).call(),
            self.read_timeout,
            IS_VERIFIED,
            address=account,
        )
        if not isinstance(result, bool):
            raise LedgerCallFailed(
                f"Unexpected {IS_VERIFIED}() result",
                {"operation": IS_VERIFIED, "reason": "interface_mismatch", "value": repr(result)},
            )
        return result

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------

    async def submit_verify(self, accounts: Iterable[str]) -> TxHandle:
        return await self._submit(TxKind.VERIFY, accounts)

    async def submit_revoke(self, accounts: Iterable[str]) -> TxHandle:
        return await self._submit(TxKind.REVOKE, accounts)

    async def _submit(self, kind: TxKind, accounts: Iterable[str]) -> TxHandle:
        batch = tuple(sorted({a.lower() for a in accounts}))
        if not batch:
            raise ValueError("at least one account is required")

        single, many = (VERIFY_ONE, VERIFY_MANY) if kind is TxKind.VERIFY else (REVOKE_ONE, REVOKE_MANY)
        checksummed = [Web3.to_checksum_address(a) for a in batch]

        if len(batch) == 1:
            name, args = single, (checksummed[0],)
        else:
            name, args = many, (checksummed,)
        if not has_function(self.abi, name):
            raise LedgerCallFailed(
                f"Contract ABI has no {name}()",
                {"operation": name, "reason": "interface_mismatch"},
            )

        def _send():
            tx = self.contract.functions[name](*args).build_transaction({"from": self.signer.address})
            return self.signer.sign_and_send(tx)

        tx_hash = await self._broadcast(_send, name, accounts=list(batch))
        logger.info("Submitted %s for %d account(s): tx=%s", name, len(batch), tx_hash)
        return TxHandle(tx_hash=tx_hash, kind=kind, accounts=batch, submitted_at=utcnow())

    async def await_confirmation(self, handle: TxHandle) -> TxReceipt:
        def _wait():
            receipt = self.w3.eth.wait_for_transaction_receipt(
                handle.tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_interval
            )
            if self.confirmations > 1 and receipt["status"] == 1:
                deadline = time.monotonic() + self.receipt_timeout
                target = receipt["blockNumber"] + self.confirmations - 1
                while self.w3.eth.block_number < target:
                    if time.monotonic() > deadline:
                        raise TimeExhausted(f"{handle.tx_hash} not final after {self.receipt_timeout}s")
                    time.sleep(self.poll_interval)
            return receipt

        receipt = await self._run(
            _wait,
            self.receipt_timeout * 2 + self.poll_interval,
            "waitForReceipt",
            transactionHash=handle.tx_hash,
        )

        result = TxReceipt(
            tx_hash=handle.tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )
        if not result.succeeded:
            logger.warning("Transaction REVERTED: tx=%s gasUsed=%s", handle.tx_hash, result.gas_used)
            raise LedgerCallFailed(
                "Transaction reverted on-chain",
                {"operation": "waitForReceipt", "reason": "reverted", "transactionHash": handle.tx_hash},
            )

        logger.info("Transaction confirmed: tx=%s block=%s", handle.tx_hash, result.block_number)
        return result

    # ------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------

    async def self_check(self) -> SelfCheckReport:
        report = SelfCheckReport(contract_address=self.address)

        try:
            code = await self._run(lambda: self.w3.eth.get_code(self.address), self.read_timeout, "getCode")
            report.has_code = len(code) > 0
            if not report.has_code:
                report.errors.append(f"No contract code at {self.address}")
        except LedgerError as e:
            report.errors.append(e.message)

        try:
            await self.read_verified(ZERO_ADDRESS)
            report.probe_ok = True
        except LedgerError as e:
            report.errors.append(e.message)

        if report.ok:
            logger.info("Ledger self-check passed for %s", self.address)
        else:
            logger.warning("Ledger self-check failed for %s: %s", self.address, "; ".join(report.errors))
        return report
