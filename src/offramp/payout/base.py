"""Payout gateway base interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class BankAccount:
    """Destination bank account for an NGN payout."""

    account_number: str
    bank_code: str
    account_name: Optional[str] = None
    bank_name: Optional[str] = None


@dataclass
class TransferReceipt:
    """Gateway acknowledgement of a transfer request."""

    reference: str
    transfer_code: Optional[str] = None
    status: str = "pending"
    duplicate: bool = False


@dataclass
class PayoutResult:
    """Outcome of a dispatched payout."""

    recipient_code: str
    payout_reference: str
    transfer_code: Optional[str] = None
    status: str = "pending"
    duplicate: bool = False


class PayoutGateway(ABC):
    """Abstract base class for fiat payout gateways."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway name."""
        raise NotImplementedError()

    @abstractmethod
    async def create_recipient(self, account: BankAccount) -> str:
        """Register a bank account with the gateway.

        Args:
            account: Destination bank account

        Returns:
            Gateway recipient code

        Raises:
            PayoutGatewayError: If the gateway rejects the account
        """
        raise NotImplementedError()

    @abstractmethod
    async def initiate_transfer(
        self,
        recipient_code: str,
        amount: Decimal,
        reference: str,
        reason: str = "Off-ramp token conversion",
    ) -> TransferReceipt:
        """Send ``amount`` NGN to a registered recipient.

        The gateway must treat ``reference`` as an idempotency key: a second
        request with the same reference reports ``duplicate=True`` instead of
        paying twice.

        Raises:
            PayoutGatewayError: If the transfer is rejected
        """
        raise NotImplementedError()
