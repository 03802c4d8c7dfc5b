from __future__ import annotations

import logging
from typing import Dict, Iterable, List

DEFAULT_CACHE_MAX = 10000
DEFAULT_REDUCE_FACTOR = 0.6

logger = logging.getLogger(__name__)


class AddressCache:
    """Touch-count cache of addresses seen across scan windows.

    An address is marked pending the first time it is observed. Draining
    hands the pending addresses to the balance fetcher but keeps their touch
    counts, so an address is only resolved again after it has been evicted
    and seen anew.
    """

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._pending: Dict[str, None] = {}

    def __len__(self) -> int:
        return len(self._counts)

    def __contains__(self, address: object) -> bool:
        return address in self._counts

    def touch_count(self, address: str) -> int:
        return self._counts.get(address, 0)

    def observe(self, address: str) -> None:
        if address in self._counts:
            self._counts[address] += 1
        else:
            self._counts[address] = 1
            self._pending[address] = None

    def observe_all(self, addresses: Iterable[str]) -> None:
        for address in addresses:
            self.observe(address)

    def pending_count(self) -> int:
        return len(self._pending)

    def drain_pending(self) -> List[str]:
        pending = list(self._pending)
        self._pending = {}
        return pending

    def requeue(self, addresses: Iterable[str]) -> None:
        """Mark *addresses* pending again, e.g. after a failed lookup."""
        for address in addresses:
            self._counts.setdefault(address, 1)
            self._pending[address] = None

    def evict_if_over_capacity(
        self,
        max_size: int = DEFAULT_CACHE_MAX,
        reduce_factor: float = DEFAULT_REDUCE_FACTOR,
    ) -> int:
        """Shrink the cache to its most touched entries when over *max_size*.

        Keeps ``int(max_size * reduce_factor)`` entries ordered by touch count,
        ties resolved by insertion order. Returns the number of evicted entries.
        """
        if len(self._counts) <= max_size:
            return 0
        keep = int(max_size * reduce_factor)
        ranked = sorted(self._counts.items(), key=lambda kv: kv[1], reverse=True)
        before = len(self._counts)
        kept = {address for address, _ in ranked[:keep]}
        self._counts = {a: c for a, c in self._counts.items() if a in kept}
        logger.info("reduced cached accounts from %d to %d", before, len(self._counts))
        return before - len(self._counts)
