from __future__ import annotations

import argparse
import json
import logging
import signal
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from account_sqlite_store import AccountStore, load_meta, open_db, save_meta
from address_cache import AddressCache
from balance_fetcher import BalanceFetcher
from chain_readers import (
    BigQueryChainReader,
    ChainReadError,
    ChainReader,
    ParityAccountLister,
    ParquetChainReader,
    RPCChainReader,
    retry_read,
)
from indexer_config import DEFAULT_CONFIG_FILE, ConfigError, IndexerConfig, load_config
from records import AccountType, AddressRecord, ScanWindow, iter_windows, normalize_address
from window_scanner import WindowScanner

EXIT_ABORTED = 9
PARITY_PAGE_SIZE = 500

ProgressCB = Optional[Callable[[str], None]]

logger = logging.getLogger(__name__)


class RichListIndexer:
    """Scan the chain in windows and keep the ``accounts`` table current.

    One window at a time: collect its addresses into the cache, and once
    enough new addresses are pending (or the pass ends) resolve them,
    persist them and shrink the cache. Progress of the historical pass is
    kept in the ``meta`` table as the covered range
    ``[lowest_block, highest_block)``.
    """

    def __init__(
        self,
        reader: ChainReader,
        conn: sqlite3.Connection,
        *,
        window_blocks: int = 500,
        batch_threshold: int = 100,
        chunk_size: int = 100,
        bulk_size: int = 300,
        decimals: int = 18,
        cache_max: int = 10000,
        cache_reduce: float = 0.6,
        scan_delay: float = 0.3,
        retry_delay: float = 5.0,
        max_retries: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
        progress_cb: ProgressCB = None,
    ) -> None:
        self.reader = reader
        self.conn = conn
        self.store = AccountStore(conn, bulk_size=bulk_size)
        self.cache = AddressCache()
        self.scanner = WindowScanner(reader)
        self.fetcher = BalanceFetcher(reader, chunk_size=chunk_size, decimals=decimals)
        self.window_blocks = window_blocks
        self.batch_threshold = batch_threshold
        self.cache_max = cache_max
        self.cache_reduce = cache_reduce
        self.scan_delay = scan_delay
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.stop_event = stop_event or threading.Event()
        self.progress_cb = progress_cb
        self.total_written = 0

    @classmethod
    def from_config(
        cls,
        reader: ChainReader,
        conn: sqlite3.Connection,
        cfg: IndexerConfig,
        **kwargs,
    ) -> "RichListIndexer":
        return cls(
            reader,
            conn,
            window_blocks=cfg.window_blocks,
            batch_threshold=cfg.batch_threshold,
            chunk_size=cfg.chunk_size,
            bulk_size=cfg.bulk_size,
            decimals=cfg.decimals,
            cache_max=cfg.cache_max,
            cache_reduce=cfg.cache_reduce,
            scan_delay=cfg.scan_delay,
            retry_delay=cfg.retry_delay,
            **kwargs,
        )

    def _progress(self, msg: str) -> None:
        if self.progress_cb is not None:
            self.progress_cb(msg)

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

    def client_version(self) -> str:
        return self._retry("client version", self.reader.client_version)

    def scan_window(self, window: ScanWindow) -> int:
        addresses = self._retry(
            f"scan {window.from_block}-{window.to_block}",
            self.scanner.addresses_in_window,
            window,
        )
        self.cache.observe_all(addresses)
        return len(addresses)

    def flush(self, block: int) -> int:
        """Resolve and persist pending addresses, then apply the cache bound."""
        pending = self.cache.drain_pending()
        if not pending:
            return 0
        logger.info("update %d accounts ...", len(pending))
        known = self.store.known_types(pending)
        written = 0
        resolved = set()
        for data in self.fetcher.iter_chunks(pending, block, known):
            if data:
                written += self.store.write(data.values())
                resolved.update(data)
        failed = [a for a in pending if a not in resolved]
        if failed:
            logger.warning("%d accounts left pending after failed lookups", len(failed))
            self.cache.requeue(failed)
        self.cache.evict_if_over_capacity(self.cache_max, self.cache_reduce)
        self.total_written += written
        logger.info("* %d / %d total accounts", written, self.total_written)
        return written

    def _retry_pending(self, block: int) -> None:
        """Flush again until no failed lookup is left or the run stops."""
        attempts = 0
        while self.cache.pending_count() and not self.stop_event.is_set():
            attempts += 1
            if self.max_retries is not None and attempts > self.max_retries:
                raise ChainReadError(
                    f"{self.cache.pending_count()} account lookups still failing"
                )
            logger.warning(
                "%d accounts pending, retrying in %.1fs",
                self.cache.pending_count(),
                self.retry_delay,
            )
            if self.stop_event.wait(self.retry_delay):
                break
            self.flush(block)

    def _mark_flushed(self, on_flushed: Optional[Callable[[int], None]], lowest: int) -> None:
        # Windows above ``lowest`` only count as done once nothing is pending.
        if on_flushed is not None and not self.cache.pending_count():
            on_flushed(lowest)

    def scan_range(
        self,
        top: int,
        floor: int,
        *,
        block: int,
        on_flushed: Optional[Callable[[int], None]] = None,
    ) -> bool:
        """Scan ``[floor, top)`` from *top* downward.

        *on_flushed* receives the lowest block whose addresses are all
        persisted. Addresses whose lookup failed are retried before the pass
        ends. Returns ``False`` if the stop event interrupted the pass.
        """
        windows = list(iter_windows(top, floor, self.window_blocks))
        lowest = top
        for i, window in enumerate(windows):
            if self.stop_event.is_set():
                break
            found = self.scan_window(window)
            lowest = window.from_block
            final = i == len(windows) - 1
            self._progress(
                f"scanned {window.from_block}-{window.to_block}: "
                f"{found} addresses, {self.cache.pending_count()} pending"
            )
            if final or self.cache.pending_count() >= self.batch_threshold:
                self.flush(block)
                if final:
                    self._retry_pending(block)
                self._mark_flushed(on_flushed, lowest)
            if not final:
                self.stop_event.wait(self.scan_delay)
        else:
            return not self.cache.pending_count()
        # Stopped between windows: persist what was already scanned.
        self.flush(block)
        if lowest < top:
            self._mark_flushed(on_flushed, lowest)
        return False

    def run_bounded(self, floor: int = 0, top: Optional[int] = None) -> bool:
        """Scan from the chain head (or *top*) down to *floor* once."""
        head = self.chain_head()
        if top is None:
            top = head + 1
        logger.info("scan accounts from %d down to %d", top - 1, floor)
        done = self.scan_range(top, floor, block=head)
        if done:
            logger.info("**DONE**")
        return done

    def run_continuous(
        self,
        floor: int = 0,
        *,
        poll_interval: float = 60.0,
        max_rounds: Optional[int] = None,
    ) -> None:
        """Follow the chain head until the stop event is set.

        Each round first covers blocks added since the last round, then
        continues the historical pass toward *floor*.
        """
        rounds = 0
        while not self.stop_event.is_set():
            if max_rounds is not None and rounds >= max_rounds:
                break
            self.run_round(floor)
            rounds += 1
            if max_rounds is not None and rounds >= max_rounds:
                break
            if self.stop_event.wait(poll_interval):
                break

    def run_round(self, floor: int = 0) -> None:
        head = self.chain_head()
        meta = load_meta(self.conn)
        highest = int(meta["highest_block"]) if "highest_block" in meta else None
        lowest = int(meta["lowest_block"]) if "lowest_block" in meta else None
        if highest is None or lowest is None:
            highest = lowest = head + 1
            save_meta(self.conn, {"highest_block": highest, "lowest_block": lowest})

        if head + 1 > highest:
            if self.scan_range(head + 1, highest, block=head):
                save_meta(self.conn, {"highest_block": head + 1})

        if lowest > floor and not self.stop_event.is_set():

            def _mark(low: int) -> None:
                save_meta(self.conn, {"lowest_block": low})

            self.scan_range(lowest, floor, block=head, on_flushed=_mark)

    def index_accounts(self, records: List[AddressRecord], block: int) -> int:
        """Refresh balances of pre-known accounts and store them."""
        if not records:
            return 0
        logger.info("update %d genesis accounts...", len(records))
        resolved = self.fetcher.fetch_balances_only(records, block)
        return self.store.write(resolved.values())

    def run_parity(self, lister: ParityAccountLister, page_size: int = PARITY_PAGE_SIZE) -> int:
        """Walk every account known to a FatDB-enabled Parity node."""
        head = self.chain_head()
        offset: Optional[str] = None
        total = 0
        while not self.stop_event.is_set():
            accounts = self._retry(
                "parity_listAccounts", lister.list_accounts, page_size, offset, head
            )
            if not accounts:
                logger.info("No more accounts found.")
                break
            addresses = [normalize_address(a) for a in accounts]
            known = self.store.known_types(addresses)
            resolved = self.fetcher.fetch(addresses, head, known)
            total += self.store.write(resolved.values())
            offset = accounts[-1]
            logger.info("* %d / %d accounts, offset = %s", len(resolved), total, offset)
            self.stop_event.wait(self.scan_delay)
        return total


def load_genesis_accounts(path: str | Path) -> List[AddressRecord]:
    """Read accounts from a genesis file, an address map or an address list.

    Accepted shapes: ``{"alloc": {...}}`` / ``{"accounts": {...}}``,
    ``{"0x..": {"type": 1}, ...}`` or ``["0x..", ...]``. A ``type`` of 1
    marks a contract; anything else stays unknown until resolved on chain.
    """
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        entries = data.get("alloc") or data.get("accounts") or data
    else:
        entries = {a: {} for a in data}
    records: Dict[str, AddressRecord] = {}
    for account, info in entries.items():
        key = normalize_address(account)
        kind = info.get("type") if isinstance(info, dict) else None
        records[key] = AddressRecord(
            address=key,
            type=AccountType.CONTRACT if kind == 1 else AccountType.UNKNOWN,
        )
    return list(records.values())


def build_reader(cfg: IndexerConfig, source: str = "rpc", **datasets) -> ChainReader:
    node = RPCChainReader(cfg.node_url(), timeout=cfg.rpc_timeout)
    if source == "parquet":
        kwargs = {k: v for k, v in datasets.items() if k in ("transactions_path", "blocks_path") and v}
        return ParquetChainReader(node, **kwargs)
    if source == "bigquery":
        if datasets.get("dataset"):
            return BigQueryChainReader(node, datasets["dataset"])
        return BigQueryChainReader(node)
    return node


def is_parity(version: str) -> bool:
    return "parity" in version.split("/")[0].lower()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build the account rich-list from chain activity")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="JSON config file")
    parser.add_argument("--db", help="SQLite database (overrides config)")
    parser.add_argument("--blocks", type=int, help="blocks per scan window")
    parser.add_argument("--floor", type=int, help="lowest block to scan down to")
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="keep following the chain head instead of a single pass",
    )
    parser.add_argument("--max-rounds", type=int, default=None)
    parser.add_argument(
        "--source",
        choices=("rpc", "parquet", "bigquery"),
        default="rpc",
        help="where block and transaction data is read from",
    )
    parser.add_argument("--transactions-dataset", help="Parquet transactions dataset path")
    parser.add_argument("--blocks-dataset", help="Parquet blocks dataset path")
    parser.add_argument("--bigquery-dataset", help="BigQuery crypto dataset")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    if cfg.quiet:
        logging.getLogger().setLevel(logging.WARNING)
    if args.db:
        cfg.db = args.db
    if args.blocks:
        cfg.window_blocks = args.blocks
    floor = cfg.floor_block if args.floor is None else args.floor

    logger.info("Connecting %s ...", cfg.node_url())
    try:
        reader = build_reader(
            cfg,
            args.source,
            transactions_path=args.transactions_dataset,
            blocks_path=args.blocks_dataset,
            dataset=args.bigquery_dataset,
        )
    except RuntimeError as exc:
        logger.error("Cannot connect to node: %s", exc)
        return 1

    stop_event = threading.Event()
    if args.continuous:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda *_: stop_event.set())

    conn = open_db(cfg.db)
    try:
        indexer = RichListIndexer.from_config(reader, conn, cfg, stop_event=stop_event)
        version = indexer.client_version()
        logger.info("Node version = %s", version)
        if is_parity(version):
            logger.info("Parity node detected, listing accounts from FatDB")
            node = reader if isinstance(reader, RPCChainReader) else build_reader(cfg)
            indexer.run_parity(ParityAccountLister(node.w3))
            return 0
        if cfg.genesis_address:
            try:
                genesis = load_genesis_accounts(cfg.genesis_address)
            except (OSError, ValueError) as exc:
                logger.warning("Fail to load genesis address (ignore): %s", exc)
            else:
                indexer.index_accounts(genesis, indexer.chain_head())
        if args.continuous:
            indexer.run_continuous(
                floor, poll_interval=cfg.poll_interval, max_rounds=args.max_rounds
            )
        else:
            indexer.run_bounded(floor)
    except (sqlite3.Error, RuntimeError) as exc:
        logger.error("Aborted due to error: %s", exc)
        return EXIT_ABORTED
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
