# db.py
"""
Optional audit trail for confirmed verify/revoke transitions.

Write-only: the in-memory VerificationStore stays the working state and is
never rebuilt from this table.
"""
from __future__ import annotations

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from store import RecordSink, Transition, VerificationRecord

logger = logging.getLogger(__name__)

_CREATE_AUDIT_TABLE = """
CREATE TABLE IF NOT EXISTS verification_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account TEXT NOT NULL,
    pseudonym_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    verified BOOLEAN NOT NULL,
    tx_hash TEXT NOT NULL,
    confirmed_at TEXT NOT NULL
)
"""

_CREATE_AUDIT_TABLE_PG = """
CREATE TABLE IF NOT EXISTS verification_audit (
    id BIGSERIAL PRIMARY KEY,
    account TEXT NOT NULL,
    pseudonym_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    verified BOOLEAN NOT NULL,
    tx_hash TEXT NOT NULL,
    confirmed_at TEXT NOT NULL
)
"""


def make_engine(database_url: str) -> Engine:
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set")
    return create_engine(database_url, pool_pre_ping=True, future=True)


class SqlAuditSink(RecordSink):
    def __init__(self, engine: Engine):
        self.engine = engine
        self._Session = sessionmaker(bind=engine, autoflush=False, future=True)
        self._ensure_table()

    def _ensure_table(self):
        ddl = _CREATE_AUDIT_TABLE_PG if self.engine.dialect.name == "postgresql" else _CREATE_AUDIT_TABLE
        with self.engine.begin() as conn:
            conn.execute(text(ddl))

    def record_transition(self, record: VerificationRecord, transition: Transition) -> None:
        with self._Session() as db:
            db.execute(
                text(
                    "INSERT INTO verification_audit "
                    "(account, pseudonym_id, kind, verified, tx_hash, confirmed_at) "
                    "VALUES (:a, :p, :k, :v, :h, :t)"
                ),
                {
                    "a": record.account,
                    "p": record.pseudonym_id,
                    "k": transition.kind.value,
                    "v": record.verified,
                    "h": transition.tx_hash,
                    "t": transition.confirmed_at.isoformat(),
                },
            )
            db.commit()
        logger.debug("Audit row written: %s %s", transition.kind.value, transition.tx_hash)
