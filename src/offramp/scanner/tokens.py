"""Custodial wallet token scanner.

Reads the native balance and every allow-listed ERC20 balance of a wallet.
A failing RPC read for one asset is logged and skipped so one bad token
contract never hides the rest of the deposit.
"""

import logging
from decimal import Decimal
from typing import Optional

from offramp.chains import ChainConfig, get_chain
from offramp.errors import ChainRPCError
from offramp.scanner.base import Asset, Fungible, Native, TokenBalance
from offramp.signing.evm import EVMClient

logger = logging.getLogger(__name__)


class TokenScanner:
    """Scans a wallet for native and allow-listed token balances."""

    def __init__(
        self,
        client: EVMClient,
        chain: Optional[ChainConfig] = None,
        extra_tokens: Optional[list[Fungible]] = None,
    ):
        self.client = client
        self.chain = chain or get_chain("base")
        self.native = Native(symbol=self.chain.symbol, decimals=self.chain.native_decimals)
        self.tokens: list[Fungible] = [Fungible.from_config(t) for t in self.chain.tokens]
        for token in extra_tokens or []:
            if not any(t.is_same(token) for t in self.tokens):
                self.tokens.append(token)

    @property
    def settlement_asset(self) -> Fungible:
        return Fungible.from_config(self.chain.settlement_token)

    async def read_balance(self, address: str, asset: Asset) -> int:
        """Read one asset balance in raw units."""
        if isinstance(asset, Native):
            return await self.client.get_balance(address)
        return await self.client.erc20_balance(asset.contract, address)

    async def scan(self, address: str) -> list[TokenBalance]:
        """Scan a wallet.

        Returns:
            Non-zero balances, native first then tokens in allow-list order.
            An empty wallet returns an empty list.
        """
        balances: list[TokenBalance] = []

        for asset in [self.native, *self.tokens]:
            try:
                raw = await self.read_balance(address, asset)
            except (ChainRPCError, ValueError) as e:
                logger.warning(f"Skipping {asset.symbol} for {address}: {e}")
                continue

            if raw > 0:
                balances.append(TokenBalance(asset=asset, raw_amount=raw))

        if balances:
            logger.info(
                f"Scanned {address}: "
                + ", ".join(f"{b.amount} {b.symbol}" for b in balances)
            )
        else:
            logger.debug(f"Scanned {address}: empty")

        return balances

    def pick_deposits(
        self,
        balances: list[TokenBalance],
        dust_threshold: Decimal,
        native_reserve_wei: int = 0,
    ) -> list[TokenBalance]:
        """Every balance worth converting, fungibles first.

        Native ETH counts once ``native_reserve_wei`` is set aside for the gas
        its own conversion will burn; the returned native balance is already
        net of that reserve.
        """
        fungibles: list[TokenBalance] = []
        native: Optional[TokenBalance] = None

        for balance in balances:
            if balance.is_native:
                balance = TokenBalance(balance.asset, balance.raw_amount - native_reserve_wei)
            if balance.is_dust(dust_threshold):
                logger.info(
                    f"Ignoring dust {balance.amount} {balance.symbol} "
                    f"(threshold {dust_threshold})"
                )
                continue
            if balance.is_native:
                native = balance
            else:
                fungibles.append(balance)

        return fungibles + ([native] if native else [])

    def pick_deposit(
        self,
        balances: list[TokenBalance],
        dust_threshold: Decimal,
        native_reserve_wei: int = 0,
    ) -> Optional[TokenBalance]:
        """The primary deposit: the first fungible above dust, else native ETH."""
        deposits = self.pick_deposits(balances, dust_threshold, native_reserve_wei)
        return deposits[0] if deposits else None
