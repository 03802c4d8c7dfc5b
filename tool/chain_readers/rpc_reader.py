from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Tuple

import requests
from web3 import LegacyWebSocketProvider, Web3
from web3.exceptions import BlockNotFound, ProviderConnectionError, Web3Exception
from websockets.exceptions import ConnectionClosed

from .base import BlockHeader, ChainReadError, ChainReader, TransactionRef

DEFAULT_TIMEOUT = 30

# Web3RPCError is the node rejecting one call, not a broken connection.
TRANSIENT_ERRORS = (
    requests.exceptions.RequestException,
    ProviderConnectionError,
    Web3Exception,
    ConnectionClosed,
    asyncio.TimeoutError,
    OSError,
)

logger = logging.getLogger(__name__)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read *name* from a web3 ``AttributeDict`` or a plain object."""
    try:
        return obj[name]
    except (KeyError, TypeError):
        return getattr(obj, name, default)


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def make_provider(url: str, timeout: float = DEFAULT_TIMEOUT):
    """Return a web3 provider for an ``http(s)://`` or ``ws(s)://`` URL."""
    if url.startswith(("ws://", "wss://")):
        return LegacyWebSocketProvider(url, websocket_timeout=timeout)
    return Web3.HTTPProvider(url, request_kwargs={"timeout": timeout})


class RPCChainReader(ChainReader):
    """Read blocks, balances and code from a node through Web3."""

    def __init__(self, provider_url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.w3 = Web3(make_provider(provider_url, timeout))
        if not self.w3.is_connected():
            raise RuntimeError("Web3 provider not available")
        self._range: Optional[Tuple[int, int]] = None
        self._range_blocks: List[Any] = []

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except BlockNotFound:
            raise
        except TRANSIENT_ERRORS as exc:
            raise ChainReadError(f"{what} failed: {exc}") from exc

    def _load_range(self, from_block: int, to_block: int) -> List[Any]:
        # Transactions and miners of one window come from the same blocks.
        if self._range == (from_block, to_block):
            return self._range_blocks
        logger.debug("Reading blocks %d-%d", from_block, to_block - 1)
        blocks = []
        for num in range(from_block, to_block):
            block = self._fetch_block(num)
            if block is None:
                logger.warning("Null block data received for block %d", num)
                continue
            blocks.append(block)
        self._range = (from_block, to_block)
        self._range_blocks = blocks
        return blocks

    def _fetch_block(self, number: int):
        try:
            return self._call(
                f"get_block({number})",
                self.w3.eth.get_block,
                number,
                full_transactions=True,
            )
        except BlockNotFound:
            return None

    def get_chain_head(self) -> int:
        return self._call("eth_blockNumber", lambda: self.w3.eth.block_number)

    def get_transactions_in_range(self, from_block: int, to_block: int) -> List[TransactionRef]:
        out = []
        for block in self._load_range(from_block, to_block):
            number = _to_int(_field(block, "number"))
            for tx in _field(block, "transactions", []) or []:
                receiver = _field(tx, "to")
                out.append(TransactionRef(_field(tx, "from"), receiver or None, number))
        return out

    def get_blocks_in_range(self, from_block: int, to_block: int) -> List[BlockHeader]:
        return [self._header(b) for b in self._load_range(from_block, to_block)]

    def get_block(self, number: int) -> Optional[BlockHeader]:
        block = self._fetch_block(number)
        return self._header(block) if block is not None else None

    @staticmethod
    def _header(block: Any) -> BlockHeader:
        return BlockHeader(
            number=_to_int(_field(block, "number")),
            miner=_field(block, "miner"),
            timestamp=_to_int(_field(block, "timestamp")),
            difficulty=_to_int(_field(block, "difficulty")),
            gas_used=_to_int(_field(block, "gasUsed")),
            gas_limit=_to_int(_field(block, "gasLimit")),
            tx_count=len(_field(block, "transactions", []) or []),
            uncle_count=len(_field(block, "uncles", []) or []),
        )

    def get_balance(self, address: str, block: Optional[int] = None) -> int:
        ident = "latest" if block is None else block
        return self._call(
            f"get_balance({address})",
            self.w3.eth.get_balance,
            Web3.to_checksum_address(address),
            ident,
        )

    def get_code(self, address: str, block: Optional[int] = None) -> bytes:
        ident = "latest" if block is None else block
        code = self._call(
            f"get_code({address})",
            self.w3.eth.get_code,
            Web3.to_checksum_address(address),
            ident,
        )
        return bytes(code or b"")

    def client_version(self) -> str:
        return self._call("web3_clientVersion", lambda: self.w3.client_version)


class ParityAccountLister:
    """Page through all accounts of a Parity node with FatDB enabled."""

    def __init__(self, w3: Web3) -> None:
        self.w3 = w3

    def list_accounts(self, count: int, offset: Optional[str], block: int) -> List[str]:
        try:
            resp = self.w3.provider.make_request(
                "parity_listAccounts", [count, offset, hex(block)]
            )
        except TRANSIENT_ERRORS as exc:
            raise ChainReadError(f"parity_listAccounts failed: {exc}") from exc
        if resp.get("error"):
            raise ChainReadError(f"parity_listAccounts failed: {resp['error']}")
        result = resp.get("result")
        if result is None:
            raise RuntimeError(
                "No accounts found. Restart Parity with --fat-db=on to enable FatDB."
            )
        return list(result)
