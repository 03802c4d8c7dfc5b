from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from records import AccountType, AddressRecord, BlockStatRecord, format_balance

DEFAULT_BULK_SIZE = 300
# Batch taken from the front when more than ``bulk_size`` records remain.
DEFAULT_SPLIT_SIZE = 200

logger = logging.getLogger(__name__)

_UPSERT_ACCOUNT = (
    "INSERT INTO accounts(address, type, balance, last_scanned_block) "
    "VALUES(?, ?, ?, ?) "
    "ON CONFLICT(address) DO UPDATE SET "
    "balance=excluded.balance, "
    "last_scanned_block=excluded.last_scanned_block, "
    "type=MAX(accounts.type, excluded.type)"
)


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if they do not exist."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            address TEXT PRIMARY KEY,
            type INTEGER NOT NULL DEFAULT 0,
            balance TEXT NOT NULL,
            last_scanned_block INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS block_stats (
            number INTEGER PRIMARY KEY,
            timestamp INTEGER NOT NULL,
            difficulty TEXT NOT NULL,
            tx_count INTEGER NOT NULL,
            gas_used INTEGER NOT NULL,
            gas_limit INTEGER NOT NULL,
            miner TEXT,
            block_time REAL NOT NULL,
            uncle_count INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """
    )
    conn.commit()


def open_db(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path)
    init_db(conn)
    return conn


def load_meta(conn: sqlite3.Connection) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM meta")
    return {k: v for k, v in cur.fetchall()}


def save_meta(conn: sqlite3.Connection, meta: Dict[str, object]) -> None:
    for k, v in meta.items():
        conn.execute(
            "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
            (k, str(v)),
        )
    conn.commit()


def is_duplicate_key(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


def _account_row(record: AddressRecord) -> Tuple[str, int, str, int]:
    return (
        record.address,
        int(record.type),
        format_balance(record.balance),
        int(record.last_scanned_block),
    )


class AccountStore:
    """Persist :class:`AddressRecord` batches keyed by address.

    Each batch is first written with a single bulk insert. When that hits an
    existing address the batch is rolled back and every record is upserted
    on its own, so a single duplicate never drops the rest of the batch.
    Stored types only ever move up (see :class:`AccountType`).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        bulk_size: int = DEFAULT_BULK_SIZE,
        split_size: int = DEFAULT_SPLIT_SIZE,
    ) -> None:
        self.conn = conn
        self.bulk_size = bulk_size
        self.split_size = min(split_size, bulk_size)

    def _batches(self, rows: List[tuple]) -> Iterable[List[tuple]]:
        while rows:
            take = self.split_size if len(rows) > self.bulk_size else self.bulk_size
            batch, rows = rows[:take], rows[take:]
            yield batch

    def write(self, records: Iterable[AddressRecord]) -> int:
        """Store *records*; returns how many were written."""
        rows = [_account_row(r) for r in records]
        written = 0
        for batch in self._batches(rows):
            if self._bulk_insert(batch):
                logger.info("%d accounts successfully inserted", len(batch))
            else:
                self._upsert_each(batch)
                logger.info("%d accounts successfully updated", len(batch))
            written += len(batch)
        return written

    def _bulk_insert(self, batch: List[tuple]) -> bool:
        try:
            with self.conn:
                self.conn.executemany(
                    "INSERT INTO accounts(address, type, balance, last_scanned_block) "
                    "VALUES(?, ?, ?, ?)",
                    batch,
                )
        except sqlite3.IntegrityError as exc:
            if not is_duplicate_key(exc):
                raise
            logger.debug("bulk insert hit existing address: %s", exc)
            return False
        return True

    def _upsert_each(self, batch: List[tuple]) -> None:
        with self.conn:
            for row in batch:
                self.conn.execute(_UPSERT_ACCOUNT, row)

    def get(self, address: str) -> Optional[AddressRecord]:
        row = self.conn.execute(
            "SELECT address, type, balance, last_scanned_block FROM accounts WHERE address=?",
            (address,),
        ).fetchone()
        if row is None:
            return None
        return AddressRecord(row[0], AccountType(row[1]), Decimal(row[2]), row[3])

    def known_types(self, addresses: Iterable[str]) -> Dict[str, AccountType]:
        """Return the stored type of every address in *addresses* that exists."""
        out: Dict[str, AccountType] = {}
        addresses = list(addresses)
        for i in range(0, len(addresses), 500):
            part = addresses[i : i + 500]
            marks = ",".join("?" * len(part))
            cur = self.conn.execute(
                f"SELECT address, type FROM accounts WHERE address IN ({marks})", part
            )
            out.update({a: AccountType(t) for a, t in cur.fetchall()})
        return out

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]


class BlockStatStore:
    """Persist :class:`BlockStatRecord` rows keyed by block number."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @staticmethod
    def _row(stat: BlockStatRecord) -> tuple:
        return (
            stat.number,
            stat.timestamp,
            str(stat.difficulty),
            stat.tx_count,
            stat.gas_used,
            stat.gas_limit,
            stat.miner,
            stat.block_time,
            stat.uncle_count,
        )

    def exists(self, number: int) -> bool:
        cur = self.conn.execute("SELECT 1 FROM block_stats WHERE number=?", (number,))
        return cur.fetchone() is not None

    def insert(self, stat: BlockStatRecord) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO block_stats VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._row(stat),
            )

    def upsert(self, stat: BlockStatRecord) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO block_stats VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._row(stat),
            )

    def get(self, number: int) -> Optional[BlockStatRecord]:
        row = self.conn.execute(
            "SELECT number, timestamp, difficulty, tx_count, gas_used, gas_limit, "
            "miner, block_time, uncle_count FROM block_stats WHERE number=?",
            (number,),
        ).fetchone()
        if row is None:
            return None
        values = list(row)
        values[2] = int(values[2])
        return BlockStatRecord(*values)
