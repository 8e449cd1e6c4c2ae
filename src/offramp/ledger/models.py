"""SQLAlchemy models for the off-ramp ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, Text, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class OfframpStatus(str, Enum):
    """Status of an off-ramp transaction."""

    PENDING = "pending"                # Address issued, waiting for a deposit
    TOKEN_RECEIVED = "token_received"  # Deposit detected
    SWAPPING = "swapping"              # Gas, swap and consolidation in progress
    USDC_RECEIVED = "usdc_received"    # Settlement verified at the receiver
    PAYING = "paying"                  # Payout dispatched
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OfframpStatus.COMPLETED, OfframpStatus.FAILED})

_ACTIVE_WHERE = text("status NOT IN ('completed', 'failed')")


class OfframpTransaction(Base):
    """One deposit-to-payout conversion.

    Private keys are never stored: the custodial wallet is re-derived from
    the master seed and ``derivation_identifier`` whenever it must sign.
    """

    __tablename__ = "offramp_transactions"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        # At most one in-flight transaction per custodial wallet
        Index(
            "ix_offramp_active_deposit_address",
            "deposit_address",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Wallet binding
    deposit_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    # Fernet encrypted when MASTER_KEY is set
    derivation_identifier: Mapped[str] = mapped_column(Text, nullable=False)
    derivation_path: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    network: Mapped[str] = mapped_column(String(20), default="base", nullable=False)

    # Deposit
    token_symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    token_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    token_decimals: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    token_amount_raw: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    token_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    # Every balance being converted, with its swap progress; token_* is the primary one
    detected_assets: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Settlement
    usdc_amount_raw: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    usdc_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    swap_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    consolidation_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    gas_funding_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    gas_recovery_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    refund_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # Fiat
    ngn_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    fee_ngn: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    fee_in_token: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 6), nullable=True)
    payable_ngn: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)

    # Payout
    account_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bank_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recipient_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payout_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    transfer_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Lifecycle
    status: Mapped[OfframpStatus] = mapped_column(
        String(20), default=OfframpStatus.PENDING, nullable=False, index=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    restart_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    token_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    swap_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    usdc_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payout_initiated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def current_status(self) -> OfframpStatus:
        return OfframpStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.current_status.is_terminal

    @property
    def has_token(self) -> bool:
        return bool(self.token_symbol and self.token_amount_raw)

    @property
    def is_native_deposit(self) -> bool:
        """True when the primary deposit is the chain's gas token."""
        return self.has_token and not self.token_address

    def to_dict(self) -> dict:
        """Public view of the transaction. Never includes the derivation identifier."""

        def _str(value):
            return str(value) if value is not None else None

        def _ts(value):
            return value.isoformat() if value is not None else None

        return {
            "transaction_id": self.transaction_id,
            "status": self.current_status.value,
            "network": self.network,
            "deposit_address": self.deposit_address,
            "token": {
                "symbol": self.token_symbol,
                "address": self.token_address,
                "amount": _str(self.token_amount),
            },
            "deposits": [
                {"symbol": entry.get("symbol"), "amount": entry.get("amount")}
                for entry in self.detected_assets or []
            ],
            "usdc_amount": _str(self.usdc_amount),
            "ngn_amount": _str(self.ngn_amount),
            "fee_ngn": _str(self.fee_ngn),
            "payable_ngn": _str(self.payable_ngn),
            "exchange_rate": _str(self.exchange_rate),
            "bank": {
                "account_number": self.account_number,
                "account_name": self.account_name,
                "bank_name": self.bank_name,
            },
            "tx_hashes": {
                "gas_funding": self.gas_funding_tx_hash,
                "swap": self.swap_tx_hash,
                "consolidation": self.consolidation_tx_hash,
                "gas_recovery": self.gas_recovery_tx_hash,
                "refund": self.refund_tx_hash,
            },
            "payout_reference": self.payout_reference,
            "error_message": self.error_message,
            "restart_count": self.restart_count,
            "timestamps": {
                "created_at": _ts(self.created_at),
                "token_received_at": _ts(self.token_received_at),
                "swap_started_at": _ts(self.swap_started_at),
                "usdc_received_at": _ts(self.usdc_received_at),
                "payout_initiated_at": _ts(self.payout_initiated_at),
                "completed_at": _ts(self.completed_at),
                "updated_at": _ts(self.updated_at),
            },
        }


class FeeTierRecord(Base):
    """Admin-configured fee tier. When none exist the built-in tiers apply."""

    __tablename__ = "fee_tiers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    min_amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    max_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    tier_name: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class PlatformSetting(Base):
    """Key/value override for runtime off-ramp settings."""

    __tablename__ = "platform_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OfframpRevenue(Base):
    """Fee earned on a completed payout."""

    __tablename__ = "offramp_revenue"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    fee_ngn: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    fee_in_token: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
