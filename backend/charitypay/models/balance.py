"""
Organization balance and its append-only transaction ledger.
"""
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import String, Text, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, UTCDateTime, enum_column, money_column
from charitypay.models.donation import DonationType


class OrganizationBalance(BaseModel):
    """
    OrganizationBalance model.

    Credits land in ``pending_balance`` and move to ``available_balance``
    once the clearing period has passed.
    """
    __tablename__ = "organization_balances"

    organization_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )

    pending_balance: Mapped[Decimal] = money_column()
    available_balance: Mapped[Decimal] = money_column()
    reserved_balance: Mapped[Decimal] = money_column()

    # Pending balance split by origin
    pending_one_time: Mapped[Decimal] = money_column()
    pending_recurring: Mapped[Decimal] = money_column()
    pending_round_up: Mapped[Decimal] = money_column()

    # Cleared funds split by origin
    available_one_time: Mapped[Decimal] = money_column()
    available_recurring: Mapped[Decimal] = money_column()
    available_round_up: Mapped[Decimal] = money_column()

    lifetime_earnings: Mapped[Decimal] = money_column()
    lifetime_paid_out: Mapped[Decimal] = money_column()
    lifetime_refunded: Mapped[Decimal] = money_column()

    clearing_period_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    last_transaction_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def total_balance(self) -> Decimal:
        return self.pending_balance + self.available_balance + self.reserved_balance

    def __repr__(self) -> str:
        return f"<OrganizationBalance {self.organization_id} pending={self.pending_balance} available={self.available_balance}>"


class BalanceEntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class BalanceEntryCategory(str, Enum):
    DONATION_RECEIVED = "donation_received"
    DONATION_CLEARED = "donation_cleared"
    REFUND = "refund"
    PAYOUT_FAILED = "payout_failed"


class BalanceTransaction(BaseModel):
    """
    BalanceTransaction model.

    One immutable ledger row. ``idempotency_key`` keeps a donation from being
    credited or debited twice. ``cleared_at`` is the one field set after
    insert: it marks a donation credit as settled (moved to available by the
    clearing job, or taken back out of pending by a refund).
    """
    __tablename__ = "balance_transactions"

    organization_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    entry_type: Mapped[BalanceEntryType] = enum_column(
        BalanceEntryType, "balanceentrytype", nullable=False
    )
    category: Mapped[BalanceEntryCategory] = enum_column(
        BalanceEntryCategory, "balanceentrycategory", nullable=False
    )
    amount: Mapped[Decimal] = money_column()

    # Snapshot after applying this entry
    pending_after: Mapped[Decimal] = money_column()
    available_after: Mapped[Decimal] = money_column()
    reserved_after: Mapped[Decimal] = money_column()

    donation_id: Mapped[Optional[str]] = mapped_column(
        String(15),
        ForeignKey("donations.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    donation_type: Mapped[Optional[DonationType]] = enum_column(
        DonationType, "donationtype", nullable=True
    )
    payout_id: Mapped[Optional[str]] = mapped_column(
        String(15),
        ForeignKey("payouts.id", ondelete="SET NULL"),
        nullable=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    cleared_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<BalanceTransaction {self.entry_type.value} {self.amount} ({self.category.value})>"
