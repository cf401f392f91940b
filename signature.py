# signature.py
"""
Wallet signature checks (EIP-191 personal_sign).

The wallet signs a human-readable message; we recover the signer and
compare it against the address the caller claims to control.
"""
from __future__ import annotations

import logging

from eth_account import Account
from eth_account.messages import encode_defunct

from errors import InvalidSignature

logger = logging.getLogger(__name__)


def recover_signer(message: str, signature: str) -> str:
    """Return the checksummed address that produced `signature` over `message`."""
    return Account.recover_message(encode_defunct(text=message), signature=signature)


class SignatureAuthenticator:
    """Stateless; safe to share between concurrent requests."""

    def authenticate(self, claimed_account: str, message: str, signature: str) -> str:
        """Return the lower-cased account on success, raise InvalidSignature otherwise."""
        if not message or not signature:
            raise InvalidSignature("Missing message or signature")

        try:
            recovered = recover_signer(message, signature)
        except Exception as e:
            logger.warning("Signature recovery failed for %s: %s", claimed_account, e)
            raise InvalidSignature("Signature verification failed", {"reason": str(e)})

        if recovered.lower() != str(claimed_account).lower():
            logger.warning(
                "Signature mismatch: claimed=%s recovered=%s", claimed_account, recovered
            )
            raise InvalidSignature("Invalid signature")

        return recovered.lower()
