from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from web3.exceptions import Web3Exception

from chain_readers import ChainReadError, ChainReader
from records import DEFAULT_DECIMALS, AccountType, AddressRecord, to_display_units

DEFAULT_CHUNK_SIZE = 100
# Errors that only lose the lookup of a single address.
LOOKUP_ERRORS = (ChainReadError, Web3Exception, ValueError)

logger = logging.getLogger(__name__)


def chunked(items: List[str], size: int) -> Iterator[List[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class BalanceFetcher:
    """Resolve balance and account type for batches of addresses.

    Lookups that fail are logged and left out of the result; the caller
    decides whether to retry them later.
    """

    def __init__(
        self,
        reader: ChainReader,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        decimals: int = DEFAULT_DECIMALS,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.reader = reader
        self.chunk_size = chunk_size
        self.decimals = decimals

    def iter_chunks(
        self,
        addresses: Iterable[str],
        block: Optional[int] = None,
        known_types: Optional[Mapping[str, AccountType]] = None,
    ) -> Iterator[Dict[str, AddressRecord]]:
        """Yield resolved records one chunk at a time."""
        for chunk in chunked(list(addresses), self.chunk_size):
            yield self._resolve_chunk(chunk, block, known_types or {})

    def fetch(
        self,
        addresses: Iterable[str],
        block: Optional[int] = None,
        known_types: Optional[Mapping[str, AccountType]] = None,
    ) -> Dict[str, AddressRecord]:
        out: Dict[str, AddressRecord] = {}
        for resolved in self.iter_chunks(addresses, block, known_types):
            out.update(resolved)
        return out

    def _resolve_chunk(
        self,
        chunk: List[str],
        block: Optional[int],
        known_types: Mapping[str, AccountType],
    ) -> Dict[str, AddressRecord]:
        data: Dict[str, AddressRecord] = {}
        for address in chunk:
            try:
                code = self.reader.get_code(address, block)
                observed = (
                    AccountType.CONTRACT if code else AccountType.EXTERNALLY_OWNED
                )
                balance = self.reader.get_balance(address, block)
            except LOOKUP_ERRORS as exc:
                logger.warning("failed to resolve %s: %s", address, exc)
                continue
            previous = known_types.get(address, AccountType.UNKNOWN)
            data[address] = AddressRecord(
                address=address,
                type=max(previous, observed),
                balance=to_display_units(balance, self.decimals),
                last_scanned_block=block or 0,
            )
        return data

    def fetch_balances_only(
        self, records: Iterable[AddressRecord], block: Optional[int] = None
    ) -> Dict[str, AddressRecord]:
        """Refresh balances of *records* leaving their type untouched."""
        out: Dict[str, AddressRecord] = {}
        for record in records:
            try:
                balance = self.reader.get_balance(record.address, block)
            except LOOKUP_ERRORS as exc:
                logger.warning("failed to get balance of %s: %s", record.address, exc)
                continue
            out[record.address] = AddressRecord(
                address=record.address,
                type=record.type,
                balance=to_display_units(balance, self.decimals),
                last_scanned_block=block or 0,
            )
        return out
