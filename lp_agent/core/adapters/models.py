from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from lp_agent.core.utils.units import format_units, from_erc20_raw


@dataclass(frozen=True)
class TokenAmount:
    """An exact on-ledger quantity: base-unit integer plus its decimal places.

    All arithmetic and comparisons go through ``raw``; ``display`` is for humans.
    """

    raw: int
    decimals: int

    def __post_init__(self) -> None:
        if isinstance(self.raw, bool) or not isinstance(self.raw, int):
            raise TypeError(f"TokenAmount.raw must be int, got {type(self.raw).__name__}")
        if self.raw < 0:
            raise ValueError("TokenAmount.raw must be non-negative")

    @classmethod
    def zero(cls, decimals: int) -> TokenAmount:
        return cls(0, decimals)

    def is_zero(self) -> bool:
        return self.raw == 0

    def to_decimal(self) -> Decimal:
        return from_erc20_raw(self.raw, self.decimals)

    def display(self) -> str:
        return format_units(self.raw, self.decimals)

    def __str__(self) -> str:
        return self.display()


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    name: str
    decimals: int


@dataclass(frozen=True)
class PoolReference:
    token_a: str
    token_b: str
    stable: bool
    address: str


@dataclass(frozen=True)
class GaugeReference:
    pool_address: str
    address: str


@dataclass(frozen=True)
class LiquidityReceipt:
    tx_hash: str
    liquidity: TokenAmount


@dataclass(frozen=True)
class RemovalReceipt:
    tx_hash: str
    amount_a: TokenAmount
    amount_b: TokenAmount
