"""Payout dispatch: recipient registration plus an idempotent transfer."""

import logging
from decimal import Decimal
from typing import Optional

from offramp.errors import PayoutGatewayError
from offramp.payout.base import BankAccount, PayoutGateway, PayoutResult
from offramp.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PayoutDispatcher:
    """Pays an NGN amount to a bank account through a gateway.

    The transfer reference is the transaction id, so a retried or restarted
    payout cannot pay twice: the gateway reports the earlier transfer.
    """

    def __init__(self, gateway: PayoutGateway, retry_policy: Optional[RetryPolicy] = None):
        self.gateway = gateway
        self.retry_policy = retry_policy or RetryPolicy()

    async def ensure_recipient(
        self, account: BankAccount, recipient_code: Optional[str] = None
    ) -> str:
        """Return the cached recipient code or register the account."""
        if recipient_code:
            return recipient_code
        if not account.account_number or not account.bank_code:
            raise PayoutGatewayError("Bank account number and bank code are required")
        return await self.retry_policy.run(
            lambda: self.gateway.create_recipient(account),
            retry_on=(PayoutGatewayError,),
            description=f"{self.gateway.name} recipient for {account.account_number[-4:]}",
        )

    async def payout(
        self,
        account: BankAccount,
        amount: Decimal,
        reference: str,
        recipient_code: Optional[str] = None,
        reason: str = "Off-ramp token conversion",
    ) -> PayoutResult:
        """Dispatch a payout.

        Args:
            account: Destination bank account
            amount: NGN amount to send
            reference: Idempotency reference (the transaction id)
            recipient_code: Cached gateway recipient, created if missing

        Raises:
            PayoutGatewayError: After all attempts fail
        """
        if amount <= 0:
            raise PayoutGatewayError(f"Refusing to pay out non-positive amount {amount}")

        recipient_code = await self.ensure_recipient(account, recipient_code)

        receipt = await self.retry_policy.run(
            lambda: self.gateway.initiate_transfer(recipient_code, amount, reference, reason),
            retry_on=(PayoutGatewayError,),
            description=f"{self.gateway.name} transfer {reference}",
        )

        if receipt.duplicate:
            logger.info(f"Payout {reference} was already sent via {self.gateway.name}")

        return PayoutResult(
            recipient_code=recipient_code,
            payout_reference=receipt.reference,
            transfer_code=receipt.transfer_code,
            status=receipt.status,
            duplicate=receipt.duplicate,
        )
