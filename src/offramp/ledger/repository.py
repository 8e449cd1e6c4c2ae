"""Repository for off-ramp ledger operations."""

import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from offramp.errors import (
    ActiveTransactionExistsError,
    TransactionNotFoundError,
    TransactionStateError,
)
from offramp.fees import FeeTier
from offramp.ledger.models import (
    TERMINAL_STATUSES,
    FeeTierRecord,
    OfframpRevenue,
    OfframpStatus,
    OfframpTransaction,
    PlatformSetting,
)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


def new_transaction_id() -> str:
    """Generate an opaque transaction identifier."""
    return f"offramp_{secrets.token_hex(12)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OfframpRepository:
    """Repository for all off-ramp database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Transaction operations
    async def create_transaction(
        self,
        transaction_id: str,
        deposit_address: str,
        derivation_identifier: str,
        derivation_path: Optional[str] = None,
        user_id: Optional[str] = None,
        network: str = "base",
        **bank_details,
    ) -> OfframpTransaction:
        """Create a pending transaction.

        Raises:
            ActiveTransactionExistsError: If the address already has an active transaction
        """
        existing = await self.get_active_by_address(deposit_address)
        if existing is not None:
            raise ActiveTransactionExistsError(
                f"Wallet {deposit_address} already has active transaction "
                f"{existing.transaction_id} ({existing.status})"
            )

        tx = OfframpTransaction(
            transaction_id=transaction_id,
            user_id=user_id,
            deposit_address=deposit_address,
            derivation_identifier=derivation_identifier,
            derivation_path=derivation_path,
            network=network,
            status=OfframpStatus.PENDING.value,
            attempt_count=0,
            restart_count=0,
            **bank_details,
        )
        self.session.add(tx)
        await self.session.flush()
        await self.session.refresh(tx)
        return tx

    async def get_transaction(self, transaction_id: str) -> Optional[OfframpTransaction]:
        """Get transaction by its public identifier."""
        stmt = select(OfframpTransaction).where(OfframpTransaction.transaction_id == transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_transaction(self, transaction_id: str) -> OfframpTransaction:
        """Get transaction or raise TransactionNotFoundError."""
        tx = await self.get_transaction(transaction_id)
        if tx is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return tx

    async def get_active_by_address(self, address: str) -> Optional[OfframpTransaction]:
        """Get the non-terminal transaction for a deposit address, if any."""
        stmt = select(OfframpTransaction).where(
            func.lower(OfframpTransaction.deposit_address) == address.lower(),
            OfframpTransaction.status.notin_(_TERMINAL_VALUES),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_by_address(self, address: str) -> Optional[OfframpTransaction]:
        """Get the most recent transaction for a deposit address."""
        stmt = (
            select(OfframpTransaction)
            .where(func.lower(OfframpTransaction.deposit_address) == address.lower())
            .order_by(OfframpTransaction.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_stranded_by_address(self, address: str) -> Optional[OfframpTransaction]:
        """Get a failed transaction whose deposit is still in the wallet.

        That is a failed row with a detected deposit that was neither
        consolidated nor refunded.
        """
        stmt = (
            select(OfframpTransaction)
            .where(
                func.lower(OfframpTransaction.deposit_address) == address.lower(),
                OfframpTransaction.status == OfframpStatus.FAILED.value,
                OfframpTransaction.token_amount_raw.is_not(None),
                OfframpTransaction.consolidation_tx_hash.is_(None),
                OfframpTransaction.refund_tx_hash.is_(None),
            )
            .order_by(OfframpTransaction.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        status: Optional[OfframpStatus] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[OfframpTransaction]:
        """List transactions, newest first."""
        stmt = select(OfframpTransaction)
        if status is not None:
            stmt = stmt.where(OfframpTransaction.status == OfframpStatus(status).value)
        if user_id is not None:
            stmt = stmt.where(OfframpTransaction.user_id == user_id)
        stmt = stmt.order_by(OfframpTransaction.id.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_active(self, limit: int = 100) -> list[OfframpTransaction]:
        """List non-terminal transactions, oldest first."""
        stmt = (
            select(OfframpTransaction)
            .where(OfframpTransaction.status.notin_(_TERMINAL_VALUES))
            .order_by(OfframpTransaction.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_transaction(self, tx: OfframpTransaction, **fields) -> OfframpTransaction:
        """Apply field updates. Completion must go through mark_completed."""
        status = fields.get("status")
        if status is not None:
            status = OfframpStatus(status)
            if status == OfframpStatus.COMPLETED:
                raise TransactionStateError("Use mark_completed to complete a transaction")
            fields["status"] = status.value

        for key, value in fields.items():
            if not hasattr(OfframpTransaction, key):
                raise AttributeError(f"OfframpTransaction has no column {key}")
            setattr(tx, key, value)
        tx.updated_at = utcnow()
        await self.session.flush()
        return tx

    async def mark_completed(self, tx: OfframpTransaction, **fields) -> OfframpTransaction:
        """Complete a transaction.

        Raises:
            TransactionStateError: If the swap hash or payout reference is missing
        """
        for key, value in fields.items():
            setattr(tx, key, value)

        if not tx.swap_tx_hash or not tx.payout_reference:
            raise TransactionStateError(
                f"Cannot complete {tx.transaction_id} without swap hash and payout reference"
            )

        tx.status = OfframpStatus.COMPLETED.value
        tx.completed_at = utcnow()
        tx.updated_at = tx.completed_at
        tx.error_message = None
        await self.session.flush()
        return tx

    async def mark_failed(self, tx: OfframpTransaction, error_message: str) -> OfframpTransaction:
        """Fail a transaction, keeping detected token data for restart."""
        tx.status = OfframpStatus.FAILED.value
        tx.error_message = error_message[:2000]
        tx.updated_at = utcnow()
        await self.session.flush()
        return tx

    async def find_completed_violations(self) -> list[OfframpTransaction]:
        """Completed rows missing a swap hash or payout reference."""
        stmt = select(OfframpTransaction).where(
            OfframpTransaction.status == OfframpStatus.COMPLETED.value,
            (OfframpTransaction.swap_tx_hash.is_(None))
            | (OfframpTransaction.payout_reference.is_(None)),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(OfframpTransaction.status, func.count()).group_by(OfframpTransaction.status)
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}

    # Fee tier operations
    async def get_fee_tiers(self) -> list[FeeTierRecord]:
        stmt = select(FeeTierRecord).order_by(FeeTierRecord.min_amount)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def replace_fee_tiers(self, tiers: Iterable[FeeTier]) -> list[FeeTierRecord]:
        """Replace the whole tier table. Callers validate with FeeSchedule first."""
        await self.session.execute(delete(FeeTierRecord))
        records = [
            FeeTierRecord(
                min_amount=t.min_amount,
                max_amount=t.max_amount,
                percentage=t.percentage,
                tier_name=t.name or None,
            )
            for t in tiers
        ]
        self.session.add_all(records)
        await self.session.flush()
        return records

    # Platform settings
    async def get_setting(self, key: str) -> Optional[str]:
        setting = await self.session.get(PlatformSetting, key)
        return setting.value if setting else None

    async def get_all_settings(self) -> dict[str, str]:
        result = await self.session.execute(select(PlatformSetting))
        return {s.key: s.value for s in result.scalars().all()}

    async def set_setting(self, key: str, value: str) -> PlatformSetting:
        setting = await self.session.get(PlatformSetting, key)
        if setting is None:
            setting = PlatformSetting(key=key, value=value)
            self.session.add(setting)
        else:
            setting.value = value
        await self.session.flush()
        return setting

    # Revenue
    async def record_revenue(
        self, transaction_id: str, fee_ngn: Decimal, fee_in_token: Optional[Decimal]
    ) -> OfframpRevenue:
        """Record the fee for a payout. Idempotent per transaction."""
        stmt = select(OfframpRevenue).where(OfframpRevenue.transaction_id == transaction_id)
        result = await self.session.execute(stmt)
        revenue = result.scalar_one_or_none()
        if revenue is not None:
            return revenue

        revenue = OfframpRevenue(
            transaction_id=transaction_id,
            fee_ngn=fee_ngn,
            fee_in_token=fee_in_token,
        )
        self.session.add(revenue)
        await self.session.flush()
        return revenue

    async def get_total_revenue(self) -> Decimal:
        result = await self.session.execute(select(func.sum(OfframpRevenue.fee_ngn)))
        total = result.scalar_one_or_none()
        return Decimal(str(total)) if total is not None else Decimal("0")
