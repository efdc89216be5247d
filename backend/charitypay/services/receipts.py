"""
Receipt generation for completed donations.
"""
import logging
import secrets
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.core.config import settings
from charitypay.models.base import utcnow
from charitypay.models.donation import Donation
from charitypay.models.receipt import Receipt
from charitypay.services.fees import FeeBreakdown

logger = logging.getLogger(__name__)


def generate_receipt_number() -> str:
    """Receipt number like RCP-20260105-3F9A1C."""
    return f"RCP-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


class ReceiptService:
    """Issues one receipt per donation and links it back to the donation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_donation(self, donation_id: str) -> Optional[Receipt]:
        result = await self.db.execute(select(Receipt).where(Receipt.donation_id == donation_id))
        return result.scalar_one_or_none()

    async def generate(
        self,
        donation_id: str,
        donor_id: str,
        organization_id: str,
        breakdown: FeeBreakdown,
        currency: Optional[str] = None,
    ) -> Optional[str]:
        """Create the receipt if the donation has none yet. Returns the receipt id."""
        existing = await self.get_for_donation(donation_id)
        if existing is not None:
            return existing.id

        receipt = Receipt(
            donation_id=donation_id,
            donor_id=donor_id,
            organization_id=organization_id,
            receipt_number=generate_receipt_number(),
            base_amount=breakdown.base_amount,
            platform_fee=breakdown.platform_fee,
            gst_on_fee=breakdown.gst_on_fee,
            processor_fee=breakdown.processor_fee,
            total_amount=breakdown.total_charge,
            currency=currency or settings.DEFAULT_CURRENCY,
            issued_at=utcnow(),
        )
        self.db.add(receipt)
        await self.db.flush()

        await self.db.execute(
            update(Donation)
            .where(Donation.id == donation_id)
            .values(receipt_generated=True, receipt_id=receipt.id)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Issued receipt {receipt.receipt_number} for donation {donation_id}")
        return receipt.id
