"""Deterministic custodial wallet provisioning.

Derivation path: m/44'/60'/0'/0/{index}

The index is ``keccak256(identifier) mod (2^31 - 1)``, so the same
identifier always maps to the same address and key. The identifier used at
creation time is persisted on the transaction row, which makes re-deriving
the signer a single lookup instead of a search.
"""

import logging
from typing import Optional

from bip_utils import Bip39SeedGenerator, Bip44, Bip44Changes, Bip44Coins
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from offramp.config import get_settings
from offramp.errors import DerivationError
from offramp.hdwallet.base import CustodialWallet

logger = logging.getLogger(__name__)

# Largest non-hardened BIP32 child index
MAX_DERIVATION_INDEX = 2**31 - 1

DERIVATION_PATH_TEMPLATE = "m/44'/60'/0'/0/{index}"


def derivation_index(identifier: str) -> int:
    """Hash an identifier to a BIP44 address index."""
    if not identifier or not identifier.strip():
        raise DerivationError("Derivation identifier must not be empty")
    digest = keccak(text=identifier)
    return int.from_bytes(digest, "big") % MAX_DERIVATION_INDEX


def user_identifier(user_id: str) -> str:
    """Identifier for wallets owned by a signed-in user."""
    return f"user:{user_id}"


class WalletProvisioner:
    """Derives custodial wallets from the master mnemonic.

    Usage:
        provisioner = WalletProvisioner(mnemonic)
        wallet = provisioner.derive("user:42")
        signed = wallet.account.sign_transaction(tx)
    """

    def __init__(self, mnemonic: Optional[str] = None):
        self._mnemonic = mnemonic

    @classmethod
    def from_settings(cls) -> "WalletProvisioner":
        """Create a provisioner using OFFRAMP_MASTER_MNEMONIC."""
        return cls(get_settings().offramp_master_mnemonic)

    def _get_seed(self) -> bytes:
        """Rebuild the BIP39 seed. Nothing derived from the mnemonic is kept on the instance."""
        if not self._mnemonic or not self._mnemonic.strip():
            raise DerivationError(
                "OFFRAMP_MASTER_MNEMONIC is not configured; cannot derive custodial wallets"
            )

        try:
            return Bip39SeedGenerator(self._mnemonic.strip()).Generate()
        except Exception as e:
            raise DerivationError(f"Invalid master mnemonic: {e}") from e

    def derive_index(self, index: int, identifier: str = "") -> CustodialWallet:
        """Derive the wallet at a raw address index."""
        if not 0 <= index < MAX_DERIVATION_INDEX:
            raise DerivationError(f"Derivation index out of range: {index}")

        bip44 = Bip44.FromSeed(self._get_seed(), Bip44Coins.ETHEREUM)
        node = (
            bip44.Purpose()
            .Coin()
            .Account(0)
            .Change(Bip44Changes.CHAIN_EXT)
            .AddressIndex(index)
        )
        account = Account.from_key(node.PrivateKey().Raw().ToBytes())

        return CustodialWallet(
            address=to_checksum_address(account.address),
            identifier=identifier,
            index=index,
            derivation_path=DERIVATION_PATH_TEMPLATE.format(index=index),
            account=account,
        )

    def derive(self, identifier: str) -> CustodialWallet:
        """Derive the custodial wallet for an identifier.

        Raises:
            DerivationError: If the mnemonic is missing/invalid or the
                identifier is empty
        """
        index = derivation_index(identifier)
        wallet = self.derive_index(index, identifier)
        logger.debug(f"Derived custodial wallet {wallet.address} at {wallet.derivation_path}")
        return wallet

    def derive_for_address(self, identifier: str, expected_address: str) -> CustodialWallet:
        """Re-derive a wallet and check it still owns the stored address.

        Raises:
            DerivationError: If the derived address does not match
        """
        wallet = self.derive(identifier)
        if not wallet.matches(expected_address):
            raise DerivationError(
                f"Derived address {wallet.address} does not match stored address "
                f"{expected_address}; the master mnemonic may have changed"
            )
        return wallet

    def verify(self, address: str, identifier: str) -> bool:
        """Check whether an address was derived from this seed and identifier."""
        try:
            return self.derive(identifier).matches(address)
        except DerivationError as e:
            logger.warning(f"Wallet verification failed for {address}: {e}")
            return False
