from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

import pyarrow.dataset as ds

from .base import BlockHeader, ChainReadError, ChainReader, TransactionRef

DEFAULT_TRANSACTIONS_DATASET = "s3://aws-public-blockchain/v1.0/eth/transactions/"
DEFAULT_BLOCKS_DATASET = "s3://aws-public-blockchain/v1.0/eth/blocks/"


def _epoch(value: Any) -> int:
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value or 0)


class ParquetChainReader(ChainReader):
    """Read transactions and blocks from AWS Open-Data Parquet dumps.

    The transactions dataset must contain ``from_address``, ``to_address``
    and ``block_number`` columns; the blocks dataset ``number``, ``miner``,
    ``timestamp``, ``difficulty``, ``gas_used``, ``gas_limit`` and
    ``transaction_count``. ``path`` values can point to a local directory or
    an S3 bucket (e.g. ``s3://...``). Balances, code and the chain head are
    not part of the dumps and are delegated to ``node``.
    """

    def __init__(
        self,
        node: ChainReader,
        transactions_path: str = DEFAULT_TRANSACTIONS_DATASET,
        blocks_path: str = DEFAULT_BLOCKS_DATASET,
    ) -> None:
        self._node = node
        self._transactions = ds.dataset(transactions_path, format="parquet")
        self._blocks = ds.dataset(blocks_path, format="parquet")

    @staticmethod
    def _read(dataset: ds.Dataset, **kwargs):
        try:
            return dataset.to_table(**kwargs)
        except OSError as exc:
            raise ChainReadError(f"Parquet read failed: {exc}") from exc

    def get_chain_head(self) -> int:
        return self._node.get_chain_head()

    def get_transactions_in_range(self, from_block: int, to_block: int) -> List[TransactionRef]:
        filt = (
            (ds.field("block_number") >= from_block)
            & (ds.field("block_number") < to_block)
        )
        table = self._read(
            self._transactions,
            columns=["from_address", "to_address", "block_number"],
            filter=filt,
        )
        return [
            TransactionRef(sender, receiver or None, int(blk))
            for sender, receiver, blk in zip(
                table["from_address"].to_pylist(),
                table["to_address"].to_pylist(),
                table["block_number"].to_pylist(),
            )
        ]

    def get_blocks_in_range(self, from_block: int, to_block: int) -> List[BlockHeader]:
        filt = (ds.field("number") >= from_block) & (ds.field("number") < to_block)
        table = self._read(self._blocks, filter=filt)
        rows = table.to_pylist()
        return [
            BlockHeader(
                number=int(row["number"]),
                miner=row["miner"],
                timestamp=_epoch(row.get("timestamp")),
                difficulty=int(row.get("difficulty") or 0),
                gas_used=int(row.get("gas_used") or 0),
                gas_limit=int(row.get("gas_limit") or 0),
                tx_count=int(row.get("transaction_count") or 0),
            )
            for row in rows
        ]

    def get_balance(self, address: str, block: Optional[int] = None) -> int:
        return self._node.get_balance(address, block)

    def get_code(self, address: str, block: Optional[int] = None) -> bytes:
        return self._node.get_code(address, block)

    def client_version(self) -> str:
        return self._node.client_version()
