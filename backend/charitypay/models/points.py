"""
Reward points awarded per completed donation.
"""
from decimal import Decimal
from sqlalchemy import String, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from charitypay.models.base import BaseModel, money_column


class PointsTransaction(BaseModel):
    """PointsTransaction model - at most one per donation."""
    __tablename__ = "points_transactions"

    donor_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("donors.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    donation_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("donations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    base_amount: Mapped[Decimal] = money_column()

    def __repr__(self) -> str:
        return f"<PointsTransaction {self.points} for {self.donation_id}>"
