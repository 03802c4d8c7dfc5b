from __future__ import annotations

import os
from datetime import datetime
from typing import List, Optional

from google.api_core.client_options import ClientOptions
from google.api_core.exceptions import GoogleAPICallError
from google.cloud import bigquery

from .base import BlockHeader, ChainReadError, ChainReader, TransactionRef


class BigQueryChainReader(ChainReader):
    """Read transactions and blocks from Google BigQuery.

    Parameters
    ----------
    node:
        Reader used for balances, code and the chain head, which the public
        dataset does not provide.
    dataset:
        BigQuery dataset holding ``transactions`` and ``blocks`` tables in
        the ``crypto_ethereum`` layout.
    client:
        Optional :class:`google.cloud.bigquery.Client` instance. When omitted
        one is created, authenticating with ``BIGQUERY_API_KEY`` and
        ``BIGQUERY_PROJECT_ID`` if set, default credentials otherwise.
    """

    def __init__(
        self,
        node: ChainReader,
        dataset: str = "bigquery-public-data.crypto_ethereum",
        *,
        client: bigquery.Client | None = None,
    ) -> None:
        self._node = node
        self._dataset = dataset
        if client is None:
            api_key = os.getenv("BIGQUERY_API_KEY")
            if api_key:
                client = bigquery.Client(
                    project=os.getenv("BIGQUERY_PROJECT_ID"),
                    client_options=ClientOptions(api_key=api_key),
                )
            else:
                client = bigquery.Client()
        self._client = client

    def _query(self, sql: str, from_block: int, to_block: int):
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("start", "INT64", from_block),
                bigquery.ScalarQueryParameter("end", "INT64", to_block),
            ]
        )
        try:
            return list(self._client.query(sql, job_config=job_config))
        except GoogleAPICallError as exc:
            raise ChainReadError(f"BigQuery query failed: {exc}") from exc

    def get_chain_head(self) -> int:
        return self._node.get_chain_head()

    def get_transactions_in_range(self, from_block: int, to_block: int) -> List[TransactionRef]:
        query = (
            "SELECT from_address, to_address, block_number "
            f"FROM `{self._dataset}.transactions` "
            "WHERE block_number >= @start AND block_number < @end"
        )
        return [
            TransactionRef(r.from_address, r.to_address or None, r.block_number)
            for r in self._query(query, from_block, to_block)
        ]

    def get_blocks_in_range(self, from_block: int, to_block: int) -> List[BlockHeader]:
        query = (
            "SELECT number, miner, timestamp, difficulty, gas_used, gas_limit, "
            "transaction_count "
            f"FROM `{self._dataset}.blocks` "
            "WHERE number >= @start AND number < @end "
            "ORDER BY number"
        )
        out = []
        for r in self._query(query, from_block, to_block):
            ts = r.timestamp
            out.append(
                BlockHeader(
                    number=r.number,
                    miner=r.miner,
                    timestamp=int(ts.timestamp()) if isinstance(ts, datetime) else int(ts),
                    difficulty=int(r.difficulty or 0),
                    gas_used=int(r.gas_used or 0),
                    gas_limit=int(r.gas_limit or 0),
                    tx_count=int(r.transaction_count or 0),
                )
            )
        return out

    def get_balance(self, address: str, block: Optional[int] = None) -> int:
        return self._node.get_balance(address, block)

    def get_code(self, address: str, block: Optional[int] = None) -> bytes:
        return self._node.get_code(address, block)

    def client_version(self) -> str:
        return self._node.client_version()
