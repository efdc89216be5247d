"""
Scheduled (recurring) donation template.
"""
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import String, Text, Boolean, Integer, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, UTCDateTime, enum_column, money_column


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class IntervalUnit(str, Enum):
    """Unit for custom frequencies."""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class ExecutionLockStatus(str, Enum):
    """
    Execution lock on a template.

    ``processing`` means a run owns the template; only one Donation may be in
    flight for it at a time.
    """
    ACTIVE = "active"
    PROCESSING = "processing"
    PAUSED = "paused"


class ScheduledDonation(BaseModel):
    """
    ScheduledDonation model.

    Template the background executor uses to create one charge per period.
    """
    __tablename__ = "scheduled_donations"
    __table_args__ = (
        Index("ix_scheduled_donations_due", "is_active", "status", "next_run_at"),
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

    amount: Mapped[Decimal] = money_column()
    cover_fees: Mapped[bool] = mapped_column(Boolean, default=False)
    currency: Mapped[str] = mapped_column(String(3), default="aud", nullable=False)

    # Schedule
    frequency: Mapped[Frequency] = enum_column(
        Frequency, "frequency", default=Frequency.MONTHLY, nullable=False
    )
    custom_interval_value: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    custom_interval_unit: Mapped[Optional[IntervalUnit]] = enum_column(
        IntervalUnit, "intervalunit", nullable=True
    )
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    total_executions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Saved payment method used off-session
    stripe_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Execution lock
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[ExecutionLockStatus] = enum_column(
        ExecutionLockStatus,
        "executionlockstatus",
        default=ExecutionLockStatus.ACTIVE,
        nullable=False
    )
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    special_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ScheduledDonation {self.id} {self.amount} {self.frequency.value} ({self.status.value})>"
