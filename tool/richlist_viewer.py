from __future__ import annotations

import argparse
import sqlite3
from decimal import Decimal
from typing import Iterator, List

from records import AccountType, AddressRecord


def iter_rich_list(db_path: str, limit: int = 50) -> Iterator[AddressRecord]:
    """Yield up to *limit* accounts ordered by balance, richest first."""
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.execute(
            "SELECT address, type, balance, last_scanned_block FROM accounts "
            "ORDER BY CAST(balance AS REAL) DESC, address LIMIT ?",
            (limit,),
        )
        for address, kind, balance, block in cur:
            yield AddressRecord(address, AccountType(kind), Decimal(balance), block)
    finally:
        conn.close()


def format_rows(records: List[AddressRecord]) -> str:
    """Format accounts as a simple table for terminal output."""
    if not records:
        return ""
    header = ("Rank", "Address", "Type", "Balance")
    kinds = {
        AccountType.UNKNOWN: "?",
        AccountType.EXTERNALLY_OWNED: "address",
        AccountType.CONTRACT: "contract",
    }
    rows = [
        (str(i), r.address, kinds[r.type], format(r.balance, "f"))
        for i, r in enumerate(records, 1)
    ]
    widths = [max(len(h), *(len(row[n]) for row in rows)) for n, h in enumerate(header)]
    lines = [
        " ".join(h.ljust(w) for h, w in zip(header, widths)).rstrip(),
        "-" * (sum(widths) + len(widths) - 1),
    ]
    for row in rows:
        lines.append(" ".join(c.ljust(w) for c, w in zip(row, widths)).rstrip())
    return "\n".join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description="Show the richest accounts of an indexed database")
    parser.add_argument("db", help="SQLite database file")
    parser.add_argument(
        "-n", "--limit", type=int, default=20, help="number of accounts to show (default: 20)"
    )
    args = parser.parse_args()

    records = list(iter_rich_list(args.db, args.limit))
    print(format_rows(records))


if __name__ == "__main__":
    main()
