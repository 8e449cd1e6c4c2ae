"""Treasury wallet signer.

The treasury funds gas for every custodial wallet, so it is the one
contended signer in the process. All submissions go through a single
asyncio lock (FIFO) and the nonce is tracked under that lock, so concurrent
funding requests never reuse a nonce.
"""

import asyncio
import logging
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from offramp.config import get_settings
from offramp.hdwallet.provisioner import WalletProvisioner
from offramp.signing.evm import EVMClient, from_wei, to_wei

logger = logging.getLogger(__name__)


class TreasurySigner:
    """Serialized access to the treasury account."""

    def __init__(self, client: EVMClient, account: LocalAccount, reserve_wei: int = 0):
        self.client = client
        self._account = account
        self.reserve_wei = reserve_wei
        self._lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    @classmethod
    def from_settings(
        cls, client: EVMClient, provisioner: Optional[WalletProvisioner] = None
    ) -> "TreasurySigner":
        """Build the treasury signer from TREASURY_PRIVATE_KEY or mnemonic index 0."""
        settings = get_settings()
        if settings.treasury_private_key:
            account = Account.from_key(settings.treasury_private_key.strip())
        else:
            provisioner = provisioner or WalletProvisioner.from_settings()
            account = provisioner.derive_index(0, "treasury").account
        return cls(client, account, reserve_wei=to_wei(settings.treasury_reserve_eth))

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    async def get_balance(self) -> int:
        return await self.client.get_balance(self.address)

    async def available_wei(self) -> int:
        """Spendable balance after the treasury reserve."""
        balance = await self.get_balance()
        return max(0, balance - self.reserve_wei)

    async def _next_nonce_locked(self) -> int:
        chain_nonce = await self.client.get_nonce(self.address)
        nonce = max(chain_nonce, self._next_nonce or 0)
        self._next_nonce = nonce + 1
        return nonce

    async def send_native(self, to: str, value_wei: int, operation: str = "transfer") -> str:
        """Send ETH from the treasury and wait for confirmation.

        Requests are queued on the treasury lock and executed one at a time.
        """
        async with self._lock:
            nonce = await self._next_nonce_locked()
            logger.info(
                f"Treasury {operation}: {from_wei(value_wei)} ETH -> {to} (nonce {nonce})"
            )
            try:
                return await self.client.send_native(self._account, to, value_wei, nonce=nonce)
            except Exception:
                # Fall back to the chain nonce on the next request
                self._next_nonce = None
                raise
