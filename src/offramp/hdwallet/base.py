"""Derived custodial wallet types."""

from dataclasses import dataclass, field

from eth_account.signers.local import LocalAccount


@dataclass(frozen=True)
class CustodialWallet:
    """A custodial wallet reconstructed from the master seed.

    The account holds the private key, so instances are meant to be
    short-lived: derive, sign, drop. They are never cached or persisted.
    """

    address: str
    identifier: str
    index: int
    derivation_path: str
    account: LocalAccount = field(repr=False, compare=False)

    def matches(self, address: str) -> bool:
        """Check whether this wallet owns the given address."""
        return self.address.lower() == address.lower()
