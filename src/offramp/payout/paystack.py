"""Paystack transfer gateway.

Docs: https://paystack.com/docs/transfers/single-transfers/
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from offramp.config import get_settings
from offramp.errors import PayoutGatewayError
from offramp.payout.base import BankAccount, PayoutGateway, TransferReceipt

logger = logging.getLogger(__name__)

DEFAULT_RECIPIENT_NAME = "Off-ramp User"


def to_kobo(amount: Decimal) -> int:
    """Convert NGN to kobo."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return f"HTTP {response.status_code}"


def _is_duplicate_reference(response: httpx.Response) -> bool:
    message = _message(response).lower()
    return "duplicate" in message and "reference" in message


class PaystackGateway(PayoutGateway):
    """Paystack NUBAN transfers."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client

    @classmethod
    def from_settings(cls) -> "PaystackGateway":
        settings = get_settings()
        return cls(secret_key=settings.paystack_secret_key, base_url=settings.paystack_api_url)

    @property
    def name(self) -> str:
        return "paystack"

    def _get_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> httpx.Response:
        if not self.secret_key:
            raise PayoutGatewayError("Paystack not configured")

        url = f"{self.base_url}{path}"
        try:
            if self._http_client is not None:
                return await self._http_client.request(
                    method, url, json=json, headers=self._get_headers()
                )
            async with httpx.AsyncClient(timeout=30.0) as client:
                return await client.request(method, url, json=json, headers=self._get_headers())
        except httpx.HTTPError as e:
            raise PayoutGatewayError(f"Paystack {path} request failed: {e}") from e

    async def create_recipient(self, account: BankAccount) -> str:
        response = await self._request(
            "POST",
            "/transferrecipient",
            json={
                "type": "nuban",
                "name": account.account_name or DEFAULT_RECIPIENT_NAME,
                "account_number": account.account_number,
                "bank_code": account.bank_code,
                "currency": "NGN",
            },
        )

        try:
            data = response.json().get("data") or {}
        except (ValueError, AttributeError):
            data = {}
        recipient_code = data.get("recipient_code")

        if response.status_code in (200, 201) and recipient_code:
            logger.info(
                f"Paystack recipient {recipient_code} for account ending "
                f"{account.account_number[-4:]}"
            )
            return recipient_code

        # Paystack returns the existing recipient when details repeat
        if recipient_code and "already exist" in _message(response).lower():
            logger.info(f"Reusing existing Paystack recipient {recipient_code}")
            return recipient_code

        message = _message(response)
        raise PayoutGatewayError(f"Failed to create recipient: {message}", gateway_message=message)

    async def _verify_transfer(self, reference: str) -> Optional[dict]:
        response = await self._request("GET", f"/transfer/verify/{reference}")
        if response.status_code != 200:
            logger.warning(f"Could not verify Paystack transfer {reference}: {_message(response)}")
            return None
        try:
            return response.json().get("data") or None
        except ValueError:
            return None

    async def initiate_transfer(
        self,
        recipient_code: str,
        amount: Decimal,
        reference: str,
        reason: str = "Off-ramp token conversion",
    ) -> TransferReceipt:
        response = await self._request(
            "POST",
            "/transfer",
            json={
                "source": "balance",
                "amount": to_kobo(amount),
                "recipient": recipient_code,
                "reference": reference,
                "reason": reason,
            },
        )

        if response.status_code in (200, 201):
            try:
                data = response.json().get("data") or {}
            except ValueError:
                data = {}
            transfer_code = data.get("transfer_code")
            if not transfer_code:
                raise PayoutGatewayError(
                    f"Paystack transfer {reference} returned no transfer code"
                )
            logger.info(f"Paystack transfer {transfer_code} initiated: NGN {amount} ({reference})")
            return TransferReceipt(
                reference=reference,
                transfer_code=transfer_code,
                status=data.get("status", "pending"),
            )

        if _is_duplicate_reference(response):
            logger.warning(f"Paystack transfer {reference} already exists, treating as sent")
            existing = await self._verify_transfer(reference) or {}
            return TransferReceipt(
                reference=reference,
                transfer_code=existing.get("transfer_code"),
                status=existing.get("status", "pending"),
                duplicate=True,
            )

        message = _message(response)
        raise PayoutGatewayError(f"Failed to initiate transfer: {message}", gateway_message=message)
