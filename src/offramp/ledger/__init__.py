"""Ledger module for off-ramp transaction tracking."""

from offramp.ledger.database import close_db, get_db, init_db
from offramp.ledger.models import (
    FeeTierRecord,
    OfframpRevenue,
    OfframpStatus,
    OfframpTransaction,
    PlatformSetting,
)
from offramp.ledger.repository import OfframpRepository, new_transaction_id

__all__ = [
    # Models
    "OfframpTransaction",
    "FeeTierRecord",
    "PlatformSetting",
    "OfframpRevenue",
    # Enums
    "OfframpStatus",
    # Database
    "get_db",
    "init_db",
    "close_db",
    "OfframpRepository",
    "new_transaction_id",
]
