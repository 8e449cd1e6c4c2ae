"""Chain access and transaction signing."""

from offramp.signing.evm import EVMClient, from_units, from_wei, to_units, to_wei
from offramp.signing.treasury import TreasurySigner

__all__ = [
    "EVMClient",
    "TreasurySigner",
    "from_units",
    "from_wei",
    "to_units",
    "to_wei",
]
