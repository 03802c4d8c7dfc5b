"""Chain data sources."""

from .base import BlockHeader, ChainReadError, ChainReader, TransactionRef, retry_read
from .rpc_reader import ParityAccountLister, RPCChainReader
from .aws_parquet_reader import ParquetChainReader
from .bigquery_reader import BigQueryChainReader

__all__ = [
    "BigQueryChainReader",
    "BlockHeader",
    "ChainReadError",
    "ChainReader",
    "ParityAccountLister",
    "ParquetChainReader",
    "RPCChainReader",
    "TransactionRef",
    "retry_read",
]
