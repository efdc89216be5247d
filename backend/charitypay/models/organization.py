"""
Organization (charity) model.
"""
from typing import Optional
from enum import Enum
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, enum_column


class AccountStatus(str, Enum):
    """Status of the organization's connected payment account."""
    PENDING = "pending"
    ACTIVE = "active"
    RESTRICTED = "restricted"


class Organization(BaseModel):
    """
    Organization model.

    A charity that receives donations through a connected processor account.
    """
    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Connected account (processor destination for transfers)
    stripe_connect_account_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    stripe_account_status: Mapped[AccountStatus] = enum_column(
        AccountStatus,
        "accountstatus",
        default=AccountStatus.PENDING,
        nullable=False
    )
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    @property
    def can_receive_payments(self) -> bool:
        return (
            self.is_active
            and self.stripe_connect_account_id is not None
            and self.stripe_account_status == AccountStatus.ACTIVE
        )

    def __repr__(self) -> str:
        return f"<Organization {self.name} ({self.stripe_account_status.value})>"
