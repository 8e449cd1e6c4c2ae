"""Exception taxonomy for the off-ramp pipeline.

Every pipeline step raises a subclass of OfframpError. The state machine
records ``str(exc)`` as the transaction's error message, so messages should
read well to an operator.
"""

from typing import Optional


class OfframpError(Exception):
    """Base class for all off-ramp errors."""

    # HTTP status used when the error reaches the API layer
    status_code: int = 400


class DerivationError(OfframpError):
    """Master seed unavailable or derivation identifier invalid."""

    status_code = 500


class InsufficientBalanceError(OfframpError):
    """No swappable tokens were detected in a custodial wallet."""


class GasFundingError(OfframpError):
    """Treasury funding transaction failed or reverted."""

    status_code = 502


class SwapError(OfframpError):
    """Aggregator quote or swap execution failed."""

    status_code = 502

    def __init__(self, message: str, attempts: int = 1, last_error: Optional[str] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class SettlementVerificationError(OfframpError):
    """Expected settlement amount was not observed at the receiver."""

    status_code = 409


class FeeTooSmallError(OfframpError):
    """Final payable amount after fees is not positive."""


class AmountLimitError(OfframpError):
    """Fiat amount is outside the configured minimum/maximum."""


class PayoutGatewayError(OfframpError):
    """Recipient or transfer creation failed at the payout gateway."""

    status_code = 502

    def __init__(self, message: str, gateway_message: Optional[str] = None):
        super().__init__(message)
        self.gateway_message = gateway_message


class OfframpDisabledError(OfframpError):
    """New off-ramp transactions are switched off."""

    status_code = 503


class TransactionNotFoundError(OfframpError):
    """No transaction with the given identifier."""

    status_code = 404


class TransactionStateError(OfframpError):
    """Operation not allowed in the transaction's current status."""

    status_code = 409


class ActiveTransactionExistsError(OfframpError):
    """Another non-terminal transaction already owns the wallet address."""

    status_code = 409


class ChainRPCError(OfframpError):
    """JSON-RPC request failed or returned an error object."""

    status_code = 502


class TransactionRevertedError(ChainRPCError):
    """A submitted transaction was mined with status 0."""

    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} failed (reverted)")
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(ChainRPCError):
    """A submitted transaction was not mined within the timeout."""

    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"Transaction {tx_hash} not confirmed after {timeout}s")
        self.tx_hash = tx_hash
