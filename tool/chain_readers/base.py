from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class ChainReadError(RuntimeError):
    """A read against the chain or a chain dataset failed transiently."""


@dataclass(frozen=True)
class TransactionRef:
    sender: str
    receiver: Optional[str]
    block_number: int


@dataclass(frozen=True)
class BlockHeader:
    number: int
    miner: str
    timestamp: int
    difficulty: int = 0
    gas_used: int = 0
    gas_limit: int = 0
    tx_count: int = 0
    uncle_count: int = 0


class ChainReader:
    """Base class for chain readers.

    Range methods take a half-open ``[from_block, to_block)`` range. Any
    transient failure is raised as :class:`ChainReadError`.
    """

    def get_chain_head(self) -> int:
        raise NotImplementedError

    def get_transactions_in_range(self, from_block: int, to_block: int) -> List[TransactionRef]:
        raise NotImplementedError

    def get_blocks_in_range(self, from_block: int, to_block: int) -> List[BlockHeader]:
        raise NotImplementedError

    def get_block(self, number: int) -> Optional[BlockHeader]:
        """Return the header of block *number* or ``None`` if the node has none."""
        blocks = self.get_blocks_in_range(number, number + 1)
        return blocks[0] if blocks else None

    def get_balance(self, address: str, block: Optional[int] = None) -> int:
        """Return the balance of *address* in base units."""
        raise NotImplementedError

    def get_code(self, address: str, block: Optional[int] = None) -> bytes:
        raise NotImplementedError

    def client_version(self) -> str:
        return ""


def retry_read(
    what: str,
    fn: Callable[..., Any],
    *args: Any,
    retry_delay: float = 5.0,
    max_retries: Optional[int] = None,
    stop_event: Optional[threading.Event] = None,
) -> Any:
    """Call *fn* until it stops raising :class:`ChainReadError`.

    Waits *retry_delay* seconds between attempts. The error is re-raised
    once *max_retries* retries are used up or *stop_event* is set.
    """
    attempts = 0
    while True:
        try:
            return fn(*args)
        except ChainReadError as exc:
            attempts += 1
            if max_retries is not None and attempts > max_retries:
                raise
            if stop_event is not None and stop_event.is_set():
                raise
            logger.warning("%s failed (%s), retrying in %.1fs", what, exc, retry_delay)
            if stop_event is not None:
                stop_event.wait(retry_delay)
            else:
                time.sleep(retry_delay)
