# errors.py
"""
Error taxonomy for the GhostPass gateway.

Each error knows its HTTP status and a stable machine-readable code, so the
route layer never has to guess how to present a failure.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class GhostPassError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ConfigurationMissing(GhostPassError):
    code = "configuration_missing"


class InvalidAddress(GhostPassError):
    status_code = 400
    code = "invalid_address"

    def __init__(self, address: Any):
        super().__init__("Invalid Ethereum address", {"address": str(address)})


class InvalidSignature(GhostPassError):
    status_code = 400
    code = "invalid_signature"


class RevokeNotAuthorized(GhostPassError):
    status_code = 403
    code = "revoke_not_authorized"


class AlreadyPending(GhostPassError):
    status_code = 409
    code = "already_pending"


class LedgerError(GhostPassError):
    """Base for failures classified at the LedgerClient boundary."""
    cause = "ledger"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("cause", self.cause)
        super().__init__(message, details)


class LedgerTimeout(LedgerError):
    code = "ledger_timeout"
    cause = "timeout"


class LedgerCallFailed(LedgerError):
    code = "ledger_call_failed"
    cause = "call_failed"


class VerificationFailed(GhostPassError):
    code = "verification_failed"

    @classmethod
    def from_ledger(cls, message: str, err: LedgerError, tx_hash: Optional[str] = None):
        details = dict(err.details)
        details["ledgerError"] = err.message
        if tx_hash:
            details["transactionHash"] = tx_hash
        return cls(message, details)
