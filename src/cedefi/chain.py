"""
Immutable ledger ("chain") holding the final outcome of each transaction.

A record is created once and finalized once. A second finalize raises
AlreadyFinalizedError, which callers treat as success.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

import psycopg2
from psycopg2.extras import RealDictCursor
from starlette.concurrency import run_in_threadpool

from cedefi.errors import AlreadyFinalizedError, ChainUnavailableError, NotFoundError
from cedefi.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ChainRecord:
    transaction_id: str
    sender: str
    amount: float
    timestamp: datetime
    finalized: bool = False
    approved: Optional[bool] = None


class ImmutableLedger:
    """Write-once outcome store."""

    async def get_record(self, transaction_id: str) -> Optional[ChainRecord]:
        raise NotImplementedError

    async def create_record(self, transaction_id: str, sender: str, amount: float) -> ChainRecord:
        raise NotImplementedError

    async def finalize(self, transaction_id: str, approved: bool) -> ChainRecord:
        raise NotImplementedError


class InMemoryChain(ImmutableLedger):
    def __init__(self):
        self._records: Dict[str, ChainRecord] = {}
        self._lock = asyncio.Lock()

    async def get_record(self, transaction_id: str) -> Optional[ChainRecord]:
        return self._records.get(transaction_id)

    async def create_record(self, transaction_id: str, sender: str, amount: float) -> ChainRecord:
        async with self._lock:
            record = self._records.get(transaction_id)
            if record is None:
                record = ChainRecord(
                    transaction_id=transaction_id,
                    sender=sender,
                    amount=amount,
                    timestamp=datetime.now(timezone.utc),
                )
                self._records[transaction_id] = record
            return record

    async def finalize(self, transaction_id: str, approved: bool) -> ChainRecord:
        async with self._lock:
            record = self._records.get(transaction_id)
            if record is None:
                raise NotFoundError(f"Transaction {transaction_id} does not exist on chain")
            if record.finalized:
                raise AlreadyFinalizedError(f"Transaction {transaction_id} already finalized")
            record.finalized = True
            record.approved = approved
            return record

    def __len__(self) -> int:
        return len(self._records)


SCHEMA = """
CREATE TABLE IF NOT EXISTS chain_records (
    transaction_id TEXT PRIMARY KEY,
    sender TEXT NOT NULL,
    amount NUMERIC NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    finalized BOOLEAN NOT NULL DEFAULT FALSE,
    approved BOOLEAN,
    finalized_at TIMESTAMPTZ
)
"""

_RECORD_COLUMNS = """
    transaction_id,
    sender,
    amount,
    created_at,
    finalized,
    approved
"""


def _row_to_record(row: dict) -> ChainRecord:
    return ChainRecord(
        transaction_id=row["transaction_id"],
        sender=row["sender"],
        amount=float(row["amount"]),
        timestamp=row["created_at"],
        finalized=row["finalized"],
        approved=row["approved"],
    )


class PostgresChain(ImmutableLedger):
    """Append-only table; rows are never deleted and finalized only once."""

    def __init__(self, database_url: str):
        self.database_url = database_url

    def get_db_connection(self):
        try:
            return psycopg2.connect(self.database_url)
        except psycopg2.OperationalError as e:
            raise ChainUnavailableError(f"Chain unreachable: {e}") from e

    def _init_schema(self) -> None:
        conn = self.get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA)
                conn.commit()
        finally:
            conn.close()

    async def init_schema(self) -> None:
        await run_in_threadpool(self._init_schema)

    def _get_record(self, transaction_id: str) -> Optional[ChainRecord]:
        conn = self.get_db_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM chain_records WHERE transaction_id = %s",
                    (transaction_id,)
                )
                row = cur.fetchone()
                return _row_to_record(row) if row else None
        finally:
            conn.close()

    async def get_record(self, transaction_id: str) -> Optional[ChainRecord]:
        return await run_in_threadpool(self._get_record, transaction_id)

    def _create_record(self, transaction_id: str, sender: str, amount: float) -> ChainRecord:
        conn = self.get_db_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO chain_records (transaction_id, sender, amount)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (transaction_id) DO NOTHING
                    """,
                    (transaction_id, sender, amount)
                )
                cur.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM chain_records WHERE transaction_id = %s",
                    (transaction_id,)
                )
                row = cur.fetchone()
                conn.commit()
                return _row_to_record(row)
        finally:
            conn.close()

    async def create_record(self, transaction_id: str, sender: str, amount: float) -> ChainRecord:
        return await run_in_threadpool(self._create_record, transaction_id, sender, amount)

    def _finalize(self, transaction_id: str, approved: bool) -> ChainRecord:
        conn = self.get_db_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    UPDATE chain_records
                    SET finalized = TRUE, approved = %s, finalized_at = NOW()
                    WHERE transaction_id = %s AND finalized = FALSE
                    RETURNING {_RECORD_COLUMNS}
                    """,
                    (approved, transaction_id)
                )
                row = cur.fetchone()
                conn.commit()
        finally:
            conn.close()

        if row:
            return _row_to_record(row)
        if self._get_record(transaction_id) is None:
            raise NotFoundError(f"Transaction {transaction_id} does not exist on chain")
        raise AlreadyFinalizedError(f"Transaction {transaction_id} already finalized")

    async def finalize(self, transaction_id: str, approved: bool) -> ChainRecord:
        return await run_in_threadpool(self._finalize, transaction_id, approved)


def create_chain(database_url: Optional[str]) -> ImmutableLedger:
    if database_url:
        return PostgresChain(database_url)
    logger.warning("DATABASE_URL not set; using in-memory chain")
    return InMemoryChain()
