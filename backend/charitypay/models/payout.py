"""
Payout from an organization balance to its bank account.
"""
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import String, Text, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, UTCDateTime, enum_column, money_column


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Payout(BaseModel):
    """Payout model."""
    __tablename__ = "payouts"

    organization_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    payout_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    requested_amount: Mapped[Decimal] = money_column()
    net_amount: Mapped[Decimal] = money_column()
    currency: Mapped[str] = mapped_column(String(3), default="aud", nullable=False)

    stripe_payout_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    status: Mapped[PayoutStatus] = enum_column(
        PayoutStatus,
        "payoutstatus",
        default=PayoutStatus.PENDING,
        nullable=False
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<Payout {self.payout_number} {self.net_amount} ({self.status.value})>"
