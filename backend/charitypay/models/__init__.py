"""
SQLAlchemy models for CharityPay.
"""
from charitypay.models.base import BaseModel, TimestampMixin, generate_id, utcnow
from charitypay.models.organization import Organization, AccountStatus
from charitypay.models.donor import Donor
from charitypay.models.donation import (
    Donation,
    DonationStatus,
    DonationType,
    IN_FLIGHT_STATUSES,
    REFUNDABLE_STATUSES,
)
from charitypay.models.scheduled_donation import (
    ScheduledDonation,
    Frequency,
    IntervalUnit,
    ExecutionLockStatus,
)
from charitypay.models.round_up import (
    RoundUpConfig,
    RoundUpStatus,
    RoundUpTransaction,
    RoundUpTransactionStatus,
)
from charitypay.models.payout import Payout, PayoutStatus
from charitypay.models.balance import (
    OrganizationBalance,
    BalanceTransaction,
    BalanceEntryType,
    BalanceEntryCategory,
)
from charitypay.models.receipt import Receipt
from charitypay.models.points import PointsTransaction

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "generate_id",
    "utcnow",
    "Organization",
    "AccountStatus",
    "Donor",
    "Donation",
    "DonationStatus",
    "DonationType",
    "IN_FLIGHT_STATUSES",
    "REFUNDABLE_STATUSES",
    "ScheduledDonation",
    "Frequency",
    "IntervalUnit",
    "ExecutionLockStatus",
    "RoundUpConfig",
    "RoundUpStatus",
    "RoundUpTransaction",
    "RoundUpTransactionStatus",
    "Payout",
    "PayoutStatus",
    "OrganizationBalance",
    "BalanceTransaction",
    "BalanceEntryType",
    "BalanceEntryCategory",
    "Receipt",
    "PointsTransaction",
]
