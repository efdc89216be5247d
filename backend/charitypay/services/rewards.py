"""
Donor rewards: points per completed donation and badge tiers.
"""
import logging
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.core.config import settings
from charitypay.models.donation import Donation, DonationStatus
from charitypay.models.points import PointsTransaction

logger = logging.getLogger(__name__)

# (tier, minimum completed donations, minimum lifetime base amount)
BADGE_TIERS = [
    ("champion", 50, Decimal("5000")),
    ("gold", 20, Decimal("1000")),
    ("silver", 5, Decimal("250")),
    ("bronze", 1, Decimal("0")),
]


def points_for_amount(base_amount: Decimal, points_per_dollar: Optional[int] = None) -> int:
    """Points are earned on the base amount only, never on fees."""
    rate = points_per_dollar if points_per_dollar is not None else settings.POINTS_PER_DOLLAR
    return int((Decimal(base_amount) * rate).to_integral_value(rounding=ROUND_FLOOR))


def badge_tier(donation_count: int, lifetime_amount: Decimal) -> Optional[str]:
    for tier, min_count, min_amount in BADGE_TIERS:
        if donation_count >= min_count and lifetime_amount >= min_amount:
            return tier
    return None


class PointsService:
    def __init__(self, db: AsyncSession, points_per_dollar: Optional[int] = None):
        self.db = db
        self.points_per_dollar = points_per_dollar

    async def award(self, donor_id: str, donation_id: str, base_amount: Decimal) -> int:
        """Record the donation's points once; a repeat call returns the stored value."""
        result = await self.db.execute(
            select(PointsTransaction).where(PointsTransaction.donation_id == donation_id)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing.points

        points = points_for_amount(base_amount, self.points_per_dollar)
        self.db.add(PointsTransaction(
            donor_id=donor_id,
            donation_id=donation_id,
            points=points,
            base_amount=base_amount,
        ))
        await self.db.flush()
        logger.info(f"Awarded {points} points to donor {donor_id} for donation {donation_id}")
        return points

    async def total_points(self, donor_id: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(PointsTransaction.points), 0))
            .where(PointsTransaction.donor_id == donor_id)
        )
        return int(result.scalar_one())


class BadgeService:
    """Evaluates which badge tier a donor has reached."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def evaluate(self, donor_id: str, donation_id: str) -> Optional[str]:
        result = await self.db.execute(
            select(
                func.count(Donation.id),
                func.coalesce(func.sum(Donation.base_amount), 0),
            ).where(
                Donation.donor_id == donor_id,
                Donation.status == DonationStatus.COMPLETED,
            )
        )
        count, lifetime = result.one()
        tier = badge_tier(int(count), Decimal(str(lifetime)))
        if tier:
            logger.info(f"Donor {donor_id} is at badge tier '{tier}' ({count} donations, {lifetime} total)")
        return tier
