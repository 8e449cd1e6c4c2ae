"""Return leftover gas from custodial wallets to the treasury."""

import logging
from typing import Optional

from offramp.config import get_settings
from offramp.hdwallet.base import CustodialWallet
from offramp.signing.evm import NATIVE_TRANSFER_GAS, EVMClient, from_wei, to_wei

logger = logging.getLogger(__name__)


class GasRecovery:
    """Sweeps a custodial wallet's ETH back to the treasury, minus a reserve."""

    def __init__(self, client: EVMClient, treasury_address: str, reserve_wei: int):
        self.client = client
        self.treasury_address = treasury_address
        self.reserve_wei = reserve_wei

    @classmethod
    def from_settings(cls, client: EVMClient, treasury_address: str) -> "GasRecovery":
        return cls(client, treasury_address, to_wei(get_settings().gas_recovery_reserve_eth))

    async def recover(self, wallet: CustodialWallet, reserve_wei: Optional[int] = None) -> Optional[str]:
        """Send ``balance - reserve`` to the treasury.

        The reserve is raised to the recovery transaction's own gas cost if
        the configured one is smaller, so the transfer cannot underfund itself.

        Returns:
            Transaction hash, or None if nothing was worth recovering
        """
        reserve = self.reserve_wei if reserve_wei is None else reserve_wei
        balance = await self.client.get_balance(wallet.address)
        if balance <= reserve:
            logger.debug(f"No gas to recover from {wallet.address} ({from_wei(balance)} ETH)")
            return None

        gas_price = await self.client.get_gas_price()
        reserve = max(reserve, NATIVE_TRANSFER_GAS * gas_price)
        amount = balance - reserve
        if amount <= 0:
            logger.debug(f"Gas left in {wallet.address} does not cover recovery cost")
            return None

        tx_hash = await self.client.send_native(
            wallet.account, self.treasury_address, amount, gas_price=gas_price
        )
        logger.info(f"Recovered {from_wei(amount)} ETH from {wallet.address}: {tx_hash}")
        return tx_hash
