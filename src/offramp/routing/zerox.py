"""0x Swap API integration.

Uses the v2 allowance-holder flow on Base: a plain ERC20 approve to the
spender named in the quote, then the quote transaction itself.
API docs: https://0x.org/docs/api
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx

from offramp.config import get_settings
from offramp.errors import SwapError
from offramp.routing.base import Quote, RouteProvider

logger = logging.getLogger(__name__)

ZEROX_API_URL = "https://api.0x.org/swap/allowance-holder"


def _error_reason(data: object, fallback: str) -> str:
    """Pull the most useful message out of a 0x error body."""
    if not isinstance(data, dict):
        return fallback
    validation = data.get("validationErrors") or []
    if validation and isinstance(validation[0], dict) and validation[0].get("reason"):
        return str(validation[0]["reason"])
    for key in ("reason", "message", "name"):
        if data.get(key):
            return str(data[key])
    return fallback


class ZeroXProvider(RouteProvider):
    """0x aggregator provider.

    Quotes returned by ``/quote`` already carry the calldata to execute, so
    a fresh quote is fetched for every attempt.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        chain_id: int = 8453,
        base_url: str = ZEROX_API_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize 0x provider.

        Args:
            api_key: 0x API key (required for production rate limits)
            chain_id: EVM chain ID
            base_url: API base URL
            http_client: Optional shared client (used by tests)
        """
        self.api_key = api_key
        self.chain_id = chain_id
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client

    @classmethod
    def from_settings(cls) -> "ZeroXProvider":
        settings = get_settings()
        return cls(
            api_key=settings.zerox_api_key or None,
            chain_id=settings.base_chain_id,
            base_url=settings.zerox_api_url,
        )

    @property
    def name(self) -> str:
        return "0x"

    def _get_headers(self) -> dict:
        """Get API headers with authorization."""
        headers = {"Accept": "application/json", "0x-version": "v2"}
        if self.api_key:
            headers["0x-api-key"] = self.api_key
        return headers

    async def _get(self, path: str, params: dict) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.get(
                f"{self.base_url}{path}", params=params, headers=self._get_headers()
            )
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.get(
                f"{self.base_url}{path}", params=params, headers=self._get_headers()
            )

    async def get_quote(
        self,
        sell_token: str,
        buy_token: str,
        sell_amount: int,
        taker: str,
        slippage_percent: Decimal = Decimal("1"),
    ) -> Quote:
        """Get an executable quote from 0x."""
        params = {
            "chainId": self.chain_id,
            "sellToken": sell_token,
            "buyToken": buy_token,
            "sellAmount": str(sell_amount),
            "taker": taker,
            "slippageBps": int(slippage_percent * 100),
        }

        try:
            response = await self._get("/quote", params)
        except httpx.HTTPError as e:
            raise SwapError(f"0x quote request failed: {e}", last_error=str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code != 200:
            reason = _error_reason(data, response.text or f"HTTP {response.status_code}")
            logger.warning(f"0x API error: {response.status_code} - {reason}")
            raise SwapError(f"0x quote failed: {reason}", last_error=reason)

        if not isinstance(data, dict):
            raise SwapError("0x quote failed: malformed response")

        if data.get("liquidityAvailable") is False:
            raise SwapError("0x quote failed: no liquidity", last_error="no liquidity")

        tx = data.get("transaction") or {}
        if not tx.get("to") or not tx.get("data"):
            raise SwapError("0x quote failed: response has no transaction data")

        allowance_issue = (data.get("issues") or {}).get("allowance") or {}

        quote = Quote(
            provider=self.name,
            sell_token=sell_token,
            buy_token=buy_token,
            sell_amount=int(data.get("sellAmount", sell_amount)),
            buy_amount=int(data.get("buyAmount", "0")),
            min_buy_amount=int(data.get("minBuyAmount", data.get("buyAmount", "0"))),
            to=tx["to"],
            data=tx["data"],
            value=int(tx.get("value") or 0),
            gas=int(tx["gas"]) if tx.get("gas") else None,
            gas_price=int(tx["gasPrice"]) if tx.get("gasPrice") else None,
            allowance_target=allowance_issue.get("spender") or data.get("allowanceTarget"),
            route_details={
                "chain_id": self.chain_id,
                "fills": (data.get("route") or {}).get("fills", []),
            },
        )

        logger.info(
            f"0x quote: {quote.sell_amount} {sell_token} -> {quote.buy_amount} {buy_token} "
            f"(min {quote.min_buy_amount})"
        )
        return quote
