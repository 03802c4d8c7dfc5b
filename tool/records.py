from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Iterator

DEFAULT_DECIMALS = 18


class AccountType(IntEnum):
    """Account classification, ordered by promotion rank."""

    UNKNOWN = 0
    EXTERNALLY_OWNED = 1
    CONTRACT = 2


@dataclass
class AddressRecord:
    address: str
    type: AccountType = AccountType.UNKNOWN
    balance: Decimal = Decimal(0)
    last_scanned_block: int = 0


@dataclass(frozen=True)
class ScanWindow:
    """Half-open block range ``[from_block, to_block)``."""

    from_block: int
    to_block: int

    def __post_init__(self) -> None:
        if self.from_block < 0 or self.from_block > self.to_block:
            raise ValueError(f"invalid window [{self.from_block}, {self.to_block})")

    def __len__(self) -> int:
        return self.to_block - self.from_block


@dataclass
class BlockStatRecord:
    number: int
    timestamp: int
    difficulty: int
    tx_count: int
    gas_used: int
    gas_limit: int
    miner: str
    block_time: float
    uncle_count: int


def normalize_address(address: str) -> str:
    """Return *address* lowercased with a single ``0x`` prefix."""
    key = str(address).strip().lower()
    if key.startswith("0x"):
        key = key[2:]
    return "0x" + key


def to_display_units(amount: int, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    """Convert a base-unit integer into display units without float rounding."""
    return Decimal(int(amount)).scaleb(-decimals)


def format_balance(balance: Decimal) -> str:
    """Plain decimal string for storage (no exponent notation)."""
    text = format(balance, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def iter_windows(top: int, floor: int, size: int) -> Iterator[ScanWindow]:
    """Yield windows from *top* (exclusive) down to *floor* (inclusive).

    The yielded windows exactly cover ``[floor, top)`` without overlapping.
    """
    if size <= 0:
        raise ValueError("window size must be positive")
    floor = max(floor, 0)
    upper = top
    while upper > floor:
        lower = max(upper - size, floor)
        yield ScanWindow(lower, upper)
        upper = lower
