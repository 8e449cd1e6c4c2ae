"""Asset types used by the wallet scanner and swap pipeline.

An asset is either the chain's native gas token or a fungible ERC20 with a
known contract and decimals. Both are resolved once when a wallet is
scanned and carried through the pipeline unchanged.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from offramp.chains import TokenConfig


@dataclass(frozen=True)
class Native:
    """The chain's native gas token."""

    symbol: str = "ETH"
    decimals: int = 18

    @property
    def contract(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Fungible:
    """An ERC20 token."""

    symbol: str
    contract: str
    decimals: int

    @classmethod
    def from_config(cls, token: TokenConfig) -> "Fungible":
        return cls(symbol=token.symbol, contract=token.address, decimals=token.decimals)

    def is_same(self, other: "Asset") -> bool:
        """Compare by contract address."""
        return isinstance(other, Fungible) and other.contract.lower() == self.contract.lower()


Asset = Union[Native, Fungible]


@dataclass(frozen=True)
class TokenBalance:
    """Balance of one asset in a wallet."""

    asset: Asset
    raw_amount: int

    @property
    def amount(self) -> Decimal:
        """Human-readable amount."""
        return Decimal(self.raw_amount) / (Decimal(10) ** self.asset.decimals)

    @property
    def symbol(self) -> str:
        return self.asset.symbol

    @property
    def is_native(self) -> bool:
        return isinstance(self.asset, Native)

    def is_dust(self, threshold: Decimal) -> bool:
        """Check whether the balance is too small to be worth swapping."""
        return self.raw_amount <= 0 or self.amount < threshold
