# pseudonym.py
from __future__ import annotations

import secrets

from store import VerificationStore

PSEUDONYM_PREFIX = "ghost_"
PSEUDONYM_BYTES = 16  # 128 bits


class PseudonymAllocator:
    def __init__(self, store: VerificationStore):
        self._store = store
        self._issued = set()

    def allocate(self, account: str) -> str:
        """Existing pseudonym for a known account, otherwise a fresh one."""
        record = self._store.get(account)
        if record is not None:
            return record.pseudonym_id

        while True:
            candidate = PSEUDONYM_PREFIX + secrets.token_hex(PSEUDONYM_BYTES)
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate
