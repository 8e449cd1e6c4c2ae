"""Abstract routing interface for swap aggregators."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)

# Sell-token address aggregators use for the chain's native gas token
NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


@dataclass
class Quote:
    """An executable swap quote from an aggregator.

    Amounts are raw token units. ``to``/``data``/``value`` form the
    transaction the taker must sign to execute the swap.
    """

    provider: str  # e.g., "0x"
    sell_token: str
    buy_token: str
    sell_amount: int
    buy_amount: int
    min_buy_amount: int
    to: str
    data: str
    value: int = 0
    gas: Optional[int] = None
    gas_price: Optional[int] = None
    allowance_target: Optional[str] = None  # None when no approval is needed
    route_details: Optional[dict] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)  # When quote was created
    ttl_seconds: int = 30  # Aggregator calldata goes stale quickly

    @property
    def effective_rate(self) -> Decimal:
        """Raw buy units per raw sell unit."""
        if self.sell_amount == 0:
            return Decimal("0")
        return Decimal(self.buy_amount) / Decimal(self.sell_amount)

    @property
    def is_expired(self) -> bool:
        """Check if quote has expired."""
        return time.time() > (self.timestamp + self.ttl_seconds)

    @property
    def seconds_until_expiry(self) -> float:
        """Get seconds until quote expires (negative if expired)."""
        return (self.timestamp + self.ttl_seconds) - time.time()

    def to_tx_params(self) -> dict:
        """Transaction parameters for signing."""
        tx: dict = {"to": self.to, "data": self.data, "value": self.value}
        if self.gas:
            tx["gas"] = self.gas
        if self.gas_price:
            tx["gasPrice"] = self.gas_price
        return tx

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "provider": self.provider,
            "sell_token": self.sell_token,
            "buy_token": self.buy_token,
            "sell_amount": str(self.sell_amount),
            "buy_amount": str(self.buy_amount),
            "min_buy_amount": str(self.min_buy_amount),
            "allowance_target": self.allowance_target,
        }


class RouteProvider(ABC):
    """Abstract base class for swap aggregators."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name identifier."""
        pass

    @abstractmethod
    async def get_quote(
        self,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        taker: str,
        slippage_percent: Decimal = Decimal("1"),
    ) -> Quote:
        """
        Get an executable quote.

        Args:
            sell_token: Contract address of the token to sell
            buy_token: Contract address of the token to buy
            sell_amount: Raw amount of sell_token
            taker: Address that will sign and send the swap
            slippage_percent: Maximum acceptable slippage (1 = 1%)

        Returns:
            Quote with transaction data

        Raises:
            SwapError: If no quote is available
        """
        pass
