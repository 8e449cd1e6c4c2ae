"""Fiat payout gateways."""

from offramp.config import get_settings
from offramp.payout.base import BankAccount, PayoutGateway, PayoutResult, TransferReceipt
from offramp.payout.dispatcher import PayoutDispatcher
from offramp.payout.dry_run import DryRunPayoutGateway
from offramp.payout.paystack import PaystackGateway


def get_payout_gateway() -> PayoutGateway:
    """Get the configured payout gateway.

    - DRY_RUN=true or no PAYSTACK_SECRET_KEY: simulated transfers
    - otherwise: Paystack
    """
    settings = get_settings()
    if settings.dry_run or not settings.paystack_secret_key:
        return DryRunPayoutGateway()
    return PaystackGateway.from_settings()


__all__ = [
    "BankAccount",
    "DryRunPayoutGateway",
    "PaystackGateway",
    "PayoutDispatcher",
    "PayoutGateway",
    "PayoutResult",
    "TransferReceipt",
    "get_payout_gateway",
]
