"""
Tax receipt issued for a completed donation.
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, UTCDateTime, money_column


class Receipt(BaseModel):
    """Receipt model - at most one per donation."""
    __tablename__ = "receipts"

    donation_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("donations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    donor_id: Mapped[str] = mapped_column(String(15), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(String(15), nullable=False, index=True)

    receipt_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    base_amount: Mapped[Decimal] = money_column()
    platform_fee: Mapped[Decimal] = money_column()
    gst_on_fee: Mapped[Decimal] = money_column()
    processor_fee: Mapped[Decimal] = money_column()
    total_amount: Mapped[Decimal] = money_column()
    currency: Mapped[str] = mapped_column(String(3), default="aud", nullable=False)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<Receipt {self.receipt_number}>"
