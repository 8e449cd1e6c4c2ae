"""Dry-run payout gateway for testing (no money moves)."""

import hashlib
import logging
from decimal import Decimal

from offramp.payout.base import BankAccount, PayoutGateway, TransferReceipt

logger = logging.getLogger(__name__)


class DryRunPayoutGateway(PayoutGateway):
    """Simulated gateway with deterministic codes and reference idempotency."""

    def __init__(self):
        self.transfers: dict[str, dict] = {}

    @property
    def name(self) -> str:
        return "dryrun"

    async def create_recipient(self, account: BankAccount) -> str:
        digest = hashlib.sha256(
            f"{account.bank_code}:{account.account_number}".encode()
        ).hexdigest()[:12]
        return f"RCP_dryrun_{digest}"

    async def initiate_transfer(
        self,
        recipient_code: str,
        amount: Decimal,
        reference: str,
        reason: str = "Off-ramp token conversion",
    ) -> TransferReceipt:
        if reference in self.transfers:
            existing = self.transfers[reference]
            return TransferReceipt(
                reference=reference,
                transfer_code=existing["transfer_code"],
                status="success",
                duplicate=True,
            )

        transfer_code = f"TRF_dryrun_{hashlib.sha256(reference.encode()).hexdigest()[:12]}"
        self.transfers[reference] = {
            "recipient_code": recipient_code,
            "amount": amount,
            "transfer_code": transfer_code,
            "reason": reason,
        }
        logger.info(f"[DRY RUN] Transfer NGN {amount} to {recipient_code} ({reference})")
        return TransferReceipt(reference=reference, transfer_code=transfer_code, status="success")
