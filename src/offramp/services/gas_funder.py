"""Gas funding for custodial wallets.

A custodial wallet only ever holds the user's token, so before it can
approve, swap or transfer it needs ETH from the treasury.
"""

import logging
from typing import Optional

from offramp.config import get_settings
from offramp.errors import ChainRPCError, GasFundingError
from offramp.signing.evm import EVMClient, from_wei, to_wei
from offramp.signing.treasury import TreasurySigner

logger = logging.getLogger(__name__)


class GasFunder:
    """Tops up custodial wallets from the treasury."""

    def __init__(self, client: EVMClient, treasury: TreasurySigner, top_up_wei: int):
        self.client = client
        self.treasury = treasury
        self.top_up_wei = top_up_wei

    @classmethod
    def from_settings(cls, client: EVMClient, treasury: TreasurySigner) -> "GasFunder":
        return cls(client, treasury, to_wei(get_settings().gas_top_up_eth))

    async def ensure_gas(self, address: str, estimated_cost_wei: int) -> Optional[str]:
        """Make sure ``address`` can pay ``estimated_cost_wei`` of gas.

        Returns:
            Funding transaction hash, or None if the wallet already had enough

        Raises:
            GasFundingError: If the treasury cannot fund or the transfer fails
        """
        try:
            balance = await self.client.get_balance(address)
        except ChainRPCError as e:
            raise GasFundingError(f"Could not read gas balance of {address}: {e}") from e

        if balance >= estimated_cost_wei:
            logger.info(
                f"Wallet {address} has {from_wei(balance)} ETH, enough for "
                f"{from_wei(estimated_cost_wei)} ETH of gas"
            )
            return None

        shortfall = estimated_cost_wei - balance
        amount = max(self.top_up_wei, shortfall)

        try:
            available = await self.treasury.available_wei()
        except ChainRPCError as e:
            raise GasFundingError(f"Could not read treasury balance: {e}") from e

        amount = min(amount, available)
        if amount < shortfall:
            raise GasFundingError(
                f"Treasury {self.treasury.address} has insufficient ETH: "
                f"available {from_wei(available)}, need {from_wei(shortfall)}"
            )

        try:
            tx_hash = await self.treasury.send_native(address, amount, operation="gas top-up")
        except ChainRPCError as e:
            raise GasFundingError(f"Gas funding transaction to {address} failed: {e}") from e

        logger.info(f"Funded {address} with {from_wei(amount)} ETH: {tx_hash}")
        return tx_hash
