"""
Round-up configuration and accumulated spare-change transactions.
"""
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import String, Text, Boolean, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, UTCDateTime, enum_column, money_column


class RoundUpStatus(str, Enum):
    """
    Batch lock on a round-up config.

    ``processing`` means a batch has been claimed and charged and is waiting
    for the processor outcome.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    CANCELLED = "cancelled"


class RoundUpTransactionStatus(str, Enum):
    ACCUMULATED = "accumulated"
    PROCESSED = "processed"
    DONATED = "donated"


class RoundUpConfig(BaseModel):
    """
    RoundUpConfig model.

    ``current_total`` always equals the sum of the config's accumulated
    transactions outside of a single statement.
    """
    __tablename__ = "round_up_configs"

    donor_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("donors.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    organization_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    cause_id: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)

    # None means no limit: donate whatever accumulated at month end
    monthly_threshold: Mapped[Optional[Decimal]] = money_column(nullable=True, default=None)
    cover_fees: Mapped[bool] = mapped_column(Boolean, default=False)
    currency: Mapped[str] = mapped_column(String(3), default="aud", nullable=False)

    stripe_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method_id: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[RoundUpStatus] = enum_column(
        RoundUpStatus,
        "roundupstatus",
        default=RoundUpStatus.PENDING,
        nullable=False,
        index=True
    )
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    current_total: Mapped[Decimal] = money_column()
    total_donated: Mapped[Decimal] = money_column()

    last_donation_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_donation_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<RoundUpConfig {self.id} {self.current_total} ({self.status.value})>"


class RoundUpTransaction(BaseModel):
    """Spare change from one card purchase."""
    __tablename__ = "round_up_transactions"
    __table_args__ = (
        Index("ix_round_up_transactions_batch", "round_up_id", "status"),
    )

    round_up_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("round_up_configs.id", ondelete="CASCADE"),
        nullable=False
    )
    donor_id: Mapped[str] = mapped_column(String(15), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(15), nullable=False)

    # Purchase that produced the spare change
    source_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    original_amount: Mapped[Decimal] = money_column()
    round_up_amount: Mapped[Decimal] = money_column()
    currency: Mapped[str] = mapped_column(String(3), default="aud", nullable=False)
    transaction_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    status: Mapped[RoundUpTransactionStatus] = enum_column(
        RoundUpTransactionStatus,
        "rounduptransactionstatus",
        default=RoundUpTransactionStatus.ACCUMULATED,
        nullable=False
    )

    # Set together with status=processed, cleared again if the charge fails
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    donation_id: Mapped[Optional[str]] = mapped_column(
        String(15),
        ForeignKey("donations.id", ondelete="SET NULL"),
        nullable=True
    )
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    donation_attempted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    donated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<RoundUpTransaction {self.round_up_amount} ({self.status.value})>"
