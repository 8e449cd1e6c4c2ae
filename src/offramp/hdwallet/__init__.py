"""HD wallet derivation for custodial off-ramp wallets."""

from offramp.hdwallet.base import CustodialWallet
from offramp.hdwallet.provisioner import (
    DERIVATION_PATH_TEMPLATE,
    MAX_DERIVATION_INDEX,
    WalletProvisioner,
    derivation_index,
    user_identifier,
)

__all__ = [
    "CustodialWallet",
    "WalletProvisioner",
    "derivation_index",
    "user_identifier",
    "DERIVATION_PATH_TEMPLATE",
    "MAX_DERIVATION_INDEX",
]
