"""Token to settlement-asset conversion.

Executes a swap from a custodial wallet through the aggregator:

1. Quote ``asset -> USDC``
2. Approve the quote's spender if the allowance is short (wait for receipt);
   native ETH skips this and is sent as the transaction value
3. Send the quote transaction (wait for receipt)
4. Measure the USDC balance delta

Quotes go stale and swaps revert on slippage, so steps 1-3 are retried as
a unit with a fresh quote each time.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from offramp.config import get_settings
from offramp.errors import ChainRPCError, SwapError
from offramp.hdwallet.base import CustodialWallet
from offramp.routing.base import NATIVE_TOKEN_ADDRESS, Quote, RouteProvider
from offramp.scanner.base import Asset, Fungible, Native, TokenBalance
from offramp.signing import erc20
from offramp.signing.evm import EVMClient
from offramp.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class SwapOutcome:
    """Result of converting one asset."""

    asset: Asset
    sell_amount: int
    settlement_amount: int = 0
    tx_hash: Optional[str] = None
    approval_tx_hash: Optional[str] = None
    attempts: int = 0
    skipped: bool = False
    reason: Optional[str] = None

    @property
    def swapped(self) -> bool:
        return self.tx_hash is not None


class SwapOrchestrator:
    """Swaps custodial wallet tokens into the settlement asset."""

    def __init__(
        self,
        client: EVMClient,
        provider: RouteProvider,
        settlement: Fungible,
        retry_policy: Optional[RetryPolicy] = None,
        slippage_percent: Decimal = Decimal("1"),
        dust_threshold: Decimal = Decimal("0"),
    ):
        self.client = client
        self.provider = provider
        self.settlement = settlement
        self.retry_policy = retry_policy or RetryPolicy()
        self.slippage_percent = slippage_percent
        self.dust_threshold = dust_threshold

    @classmethod
    def from_settings(
        cls,
        client: EVMClient,
        provider: RouteProvider,
        settlement: Fungible,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "SwapOrchestrator":
        settings = get_settings()
        return cls(
            client,
            provider,
            settlement,
            retry_policy=retry_policy or RetryPolicy.from_settings(),
            slippage_percent=settings.swap_slippage_percent,
            dust_threshold=settings.dust_threshold,
        )

    async def _ensure_allowance(
        self, wallet: CustodialWallet, token: Fungible, quote: Quote
    ) -> Optional[str]:
        """Approve the quote's spender if needed. Returns the approval tx hash."""
        spender = quote.allowance_target
        if not spender:
            return None

        allowance = await self.client.erc20_allowance(token.contract, wallet.address, spender)
        if allowance >= quote.sell_amount:
            return None

        logger.info(f"Approving {token.symbol} for {spender} from {wallet.address}")
        return await self.client.sign_and_send(
            wallet.account,
            {"to": token.contract, "data": erc20.encode_approve(spender)},
        )

    async def swap(self, wallet: CustodialWallet, asset: Asset, raw_amount: int) -> SwapOutcome:
        """Convert ``raw_amount`` of ``asset`` into the settlement asset.

        Returns:
            SwapOutcome; ``skipped`` is set for dust

        Raises:
            SwapError: After all attempts fail
        """
        balance = TokenBalance(asset=asset, raw_amount=raw_amount)

        if balance.is_dust(self.dust_threshold):
            logger.info(
                f"Skipping {balance.amount} {asset.symbol} in {wallet.address}: below dust "
                f"threshold {self.dust_threshold}"
            )
            return SwapOutcome(asset=asset, sell_amount=raw_amount, skipped=True, reason="dust")

        native = isinstance(asset, Native)
        if not native and asset.is_same(self.settlement):
            logger.info(f"{asset.symbol} is already the settlement asset, no swap needed")
            return SwapOutcome(asset=asset, sell_amount=raw_amount, settlement_amount=raw_amount)

        try:
            before = await self.client.erc20_balance(self.settlement.contract, wallet.address)
        except ChainRPCError as e:
            raise SwapError(f"Could not read {self.settlement.symbol} balance: {e}") from e

        outcome = SwapOutcome(asset=asset, sell_amount=raw_amount)

        async def attempt() -> str:
            outcome.attempts += 1
            quote = await self.provider.get_quote(
                sell_token=NATIVE_TOKEN_ADDRESS if native else asset.contract,
                buy_token=self.settlement.contract,
                sell_amount=raw_amount,
                taker=wallet.address,
                slippage_percent=self.slippage_percent,
            )
            params = quote.to_tx_params()
            if native:
                # ETH is paid as the transaction value; nothing to approve
                params["value"] = params.get("value") or quote.sell_amount
            else:
                approval = await self._ensure_allowance(wallet, asset, quote)
                if approval:
                    outcome.approval_tx_hash = approval
            return await self.client.sign_and_send(wallet.account, params)

        description = f"Swap {asset.symbol} -> {self.settlement.symbol} for {wallet.address}"
        try:
            outcome.tx_hash = await self.retry_policy.run(
                attempt, retry_on=(SwapError, ChainRPCError), description=description
            )
        except (SwapError, ChainRPCError) as e:
            raise SwapError(
                f"Swap {asset.symbol} -> {self.settlement.symbol} failed after "
                f"{outcome.attempts} attempt(s): {e}",
                attempts=outcome.attempts,
                last_error=str(e),
            ) from e

        try:
            after = await self.client.erc20_balance(self.settlement.contract, wallet.address)
        except ChainRPCError as e:
            raise SwapError(
                f"Swap {outcome.tx_hash} confirmed but settlement balance unreadable: {e}"
            ) from e

        outcome.settlement_amount = after - before
        if outcome.settlement_amount <= 0:
            raise SwapError(
                f"Swap {outcome.tx_hash} confirmed but no {self.settlement.symbol} was received"
            )

        logger.info(
            f"Swapped {balance.amount} {asset.symbol} -> {outcome.settlement_amount} raw "
            f"{self.settlement.symbol} in {outcome.attempts} attempt(s): {outcome.tx_hash}"
        )
        return outcome
