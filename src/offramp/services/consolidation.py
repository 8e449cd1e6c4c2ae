"""Settlement consolidation: custodial wallet -> receiver wallet."""

import logging

from offramp.hdwallet.base import CustodialWallet
from offramp.scanner.base import Fungible
from offramp.signing.evm import EVMClient

logger = logging.getLogger(__name__)


class ConsolidationTransfer:
    """Moves the settlement asset to the treasury receiver."""

    def __init__(self, client: EVMClient):
        self.client = client

    async def transfer(
        self, wallet: CustodialWallet, asset: Fungible, raw_amount: int, to: str
    ) -> str:
        """Transfer ``raw_amount`` of ``asset`` and wait for confirmation."""
        if raw_amount <= 0:
            raise ValueError(f"Nothing to consolidate from {wallet.address}")

        tx_hash = await self.client.send_erc20(wallet.account, asset.contract, to, raw_amount)
        logger.info(
            f"Consolidated {raw_amount} raw {asset.symbol} from {wallet.address} to {to}: {tx_hash}"
        )
        return tx_hash
