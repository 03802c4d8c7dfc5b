from __future__ import annotations

import logging
from typing import Dict, List

from chain_readers import ChainReader
from records import ScanWindow, normalize_address

DEFAULT_WINDOW_BLOCKS = 500

logger = logging.getLogger(__name__)


class WindowScanner:
    """Collect the addresses active in a block window."""

    def __init__(self, reader: ChainReader) -> None:
        self.reader = reader

    def addresses_in_window(self, window: ScanWindow) -> List[str]:
        """Return senders, receivers and miners of *window* without duplicates.

        Contract creations have no receiver and contribute only their sender.
        Addresses keep the order in which they were first seen.
        """
        if len(window) == 0:
            return []
        found: Dict[str, None] = {}
        txs = self.reader.get_transactions_in_range(window.from_block, window.to_block)
        for tx in txs:
            if tx.sender:
                found.setdefault(normalize_address(tx.sender), None)
        for tx in txs:
            if tx.receiver:
                found.setdefault(normalize_address(tx.receiver), None)
        blocks = self.reader.get_blocks_in_range(window.from_block, window.to_block)
        for block in blocks:
            if block.miner:
                found.setdefault(normalize_address(block.miner), None)
        logger.debug(
            "window %d-%d: %d txs, %d blocks, %d addresses",
            window.from_block,
            window.to_block,
            len(txs),
            len(blocks),
            len(found),
        )
        return list(found)
