"""
Donation model - one payment attempt and its lifecycle.
"""
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    String, Text, Boolean, Integer, ForeignKey, CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, UTCDateTime, enum_column, money_column


class DonationType(str, Enum):
    """How the donation was initiated."""
    ONE_TIME = "one-time"
    RECURRING = "recurring"
    ROUND_UP = "round-up"


class DonationStatus(str, Enum):
    """
    Payment lifecycle status.

    pending -> processing -> completed -> refunding -> refunded
    pending/processing -> failed | canceled
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDING = "refunding"
    REFUNDED = "refunded"


# Statuses a payment can still leave through a webhook
IN_FLIGHT_STATUSES = (DonationStatus.PENDING, DonationStatus.PROCESSING)
# Statuses a refund confirmation applies to
REFUNDABLE_STATUSES = (DonationStatus.COMPLETED, DonationStatus.REFUNDING)


class Donation(BaseModel):
    """
    Donation model.

    Fee columns are computed by the fee calculator before insert and never
    recomputed afterwards. ``payment_intent_id`` is set once and then fixed.
    """
    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint(
            "status NOT IN ('completed', 'refunding', 'refunded') "
            "OR payment_intent_id IS NOT NULL",
            name="settled_requires_intent",
        ),
        UniqueConstraint("donor_id", "idempotency_key", name="uq_donations_donor_idempotency"),
        Index("ix_donations_status_created", "status", "created"),
    )

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

    donation_type: Mapped[DonationType] = enum_column(
        DonationType,
        "donationtype",
        default=DonationType.ONE_TIME,
        nullable=False
    )

    # Fee breakdown (dollars)
    base_amount: Mapped[Decimal] = money_column()
    cover_fees: Mapped[bool] = mapped_column(Boolean, default=False)
    platform_fee: Mapped[Decimal] = money_column()
    gst_on_fee: Mapped[Decimal] = money_column()
    processor_fee: Mapped[Decimal] = money_column()
    total_amount: Mapped[Decimal] = money_column()
    net_amount: Mapped[Decimal] = money_column()
    currency: Mapped[str] = mapped_column(String(3), default="aud", nullable=False)

    status: Mapped[DonationStatus] = enum_column(
        DonationStatus,
        "donationstatus",
        default=DonationStatus.PENDING,
        nullable=False,
        index=True
    )

    # Processor linkage
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_payment_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Origin
    scheduled_donation_id: Mapped[Optional[str]] = mapped_column(
        String(15),
        ForeignKey("scheduled_donations.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    round_up_id: Mapped[Optional[str]] = mapped_column(
        String(15),
        ForeignKey("round_up_configs.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Post-success bookkeeping
    donated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    receipt_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    receipt_id: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    points_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Refunds
    refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    special_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Donation {self.id} {self.total_amount} {self.currency} ({self.status.value})>"
