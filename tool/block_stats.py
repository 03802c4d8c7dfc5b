from __future__ import annotations

import argparse
import logging
import os
import signal
import sqlite3
import threading
from typing import List, Optional, Tuple

from account_sqlite_store import BlockStatStore, open_db
from chain_readers import BlockHeader, ChainReader, RPCChainReader, retry_read
from indexer_config import DEFAULT_CONFIG_FILE, ConfigError, load_config
from records import BlockStatRecord

DEFAULT_RANGE = 1000
DEFAULT_INTERVAL = 100
STAT_INTERVAL = 60.0
EXIT_ABORTED = 9

logger = logging.getLogger(__name__)


def round_interval(interval: int) -> int:
    """Round *interval* down to a power of ten (1500 -> 1000, 7 -> 1)."""
    i = abs(int(interval))
    j = 0
    while i >= 10:
        i //= 10
        j += 1
    return 10 ** j


def parse_rescan(value: str) -> Tuple[int, int]:
    """Parse ``RESCAN=<interval>:<range>`` into ``(interval, range)``."""
    interval, range_ = DEFAULT_INTERVAL, DEFAULT_RANGE
    parts = value.split(":")
    if len(parts) > 1:
        try:
            interval = abs(int(parts[0]))
            if parts[1]:
                range_ = abs(int(parts[1]))
        except ValueError as exc:
            raise ValueError(f"invalid RESCAN value {value!r}") from exc
    return round_interval(interval), range_


def make_stat(block: BlockHeader, next_block: BlockHeader) -> BlockStatRecord:
    """Build the stat row of *block* using the next sampled block."""
    return BlockStatRecord(
        number=block.number,
        timestamp=block.timestamp,
        difficulty=block.difficulty,
        tx_count=block.tx_count,
        gas_used=block.gas_used,
        gas_limit=block.gas_limit,
        miner=block.miner,
        block_time=(next_block.timestamp - block.timestamp)
        / (next_block.number - block.number),
        uncle_count=block.uncle_count,
    )


class BlockStatsCollector:
    """Walk the chain backward every ``interval`` blocks writing block stats."""

    def __init__(
        self,
        reader: ChainReader,
        store: BlockStatStore,
        *,
        retry_delay: float = 5.0,
        max_retries: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.reader = reader
        self.store = store
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.stop_event = stop_event or threading.Event()

    def _retry(self, what: str, fn, *args):
        return retry_read(
            what,
            fn,
            *args,
            retry_delay=self.retry_delay,
            max_retries=self.max_retries,
            stop_event=self.stop_event,
        )

    def chain_head(self) -> int:
        return self._retry("chain head", self.reader.get_chain_head)

    def collect(self, top: int, floor: int, interval: int, rescan: bool = False) -> int:
        """Write stats for ``top, top - interval, ...`` while above *floor*.

        The first block read only serves as look-ahead. Outside of *rescan*
        the walk stops at the first block already stored; with *rescan*
        existing rows are replaced. Returns the number of rows written.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        floor = max(floor, 0)
        number = top
        next_block: Optional[BlockHeader] = None
        written = 0
        while number > floor and not self.stop_event.is_set():
            block = self._retry(f"get block {number}", self.reader.get_block, number)
            if block is None:
                logger.warning("null block data received for block %d", number)
                number -= interval
                continue
            if next_block is not None:
                stat = make_stat(block, next_block)
                if not self.store.exists(block.number):
                    self.store.insert(stat)
                elif rescan:
                    self.store.upsert(stat)
                    logger.info("block %d already exists in DB, rewritten", block.number)
                else:
                    logger.info("block %d already exists in DB, stopping", block.number)
                    break
                written += 1
                logger.debug("DB successfully written for block number %d", block.number)
            next_block = block
            number = block.number - interval
        return written

    def update_stats(
        self, range_: int = DEFAULT_RANGE, interval: int = DEFAULT_INTERVAL, rescan: bool = False
    ) -> int:
        """Collect ``range_`` samples below the (interval-aligned) chain head."""
        latest = self.chain_head()
        interval = abs(int(interval))
        range_ = range_ or DEFAULT_RANGE
        if interval >= 10:
            latest -= latest % interval
        written = self.collect(latest, latest - range_ * interval, interval, rescan)
        logger.info("%d block stats written", written)
        return written


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Collect sampled block statistics")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="JSON config file")
    parser.add_argument("--db", help="SQLite database (overrides config)")
    parser.add_argument("--range", type=int, default=DEFAULT_RANGE, help="number of samples")
    parser.add_argument("--interval", type=int, default=DEFAULT_INTERVAL, help="blocks between samples")
    parser.add_argument("--max-rounds", type=int, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    if cfg.quiet:
        logging.getLogger().setLevel(logging.WARNING)
        logger.warning("Quiet mode enabled")
    if args.db:
        cfg.db = args.db

    range_, interval, rescan = args.range, args.interval, False
    env = os.environ.get("RESCAN")
    if env:
        try:
            interval, range_ = parse_rescan(env)
        except ValueError as exc:
            logger.error("%s", exc)
            return 1
        logger.info("Selected interval = %d", interval)
        rescan = True

    logger.info("Connecting %s ...", cfg.node_url())
    try:
        reader = RPCChainReader(cfg.node_url(), timeout=cfg.rpc_timeout)
    except RuntimeError as exc:
        logger.error("Cannot connect to node: %s", exc)
        return 1

    stop_event = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda *_: stop_event.set())

    conn = open_db(cfg.db)
    collector = BlockStatsCollector(
        reader, BlockStatStore(conn), retry_delay=cfg.retry_delay, stop_event=stop_event
    )
    rounds = 0
    try:
        while True:
            collector.update_stats(range_, interval, rescan)
            rounds += 1
            if rescan or (args.max_rounds is not None and rounds >= args.max_rounds):
                break
            if stop_event.wait(STAT_INTERVAL):
                break
    except (sqlite3.Error, RuntimeError) as exc:
        logger.error("Aborted due to error: %s", exc)
        return EXIT_ABORTED
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
