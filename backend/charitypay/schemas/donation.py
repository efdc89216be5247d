"""
Pydantic schemas for Donation endpoints.
"""
from typing import Optional
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field

from charitypay.models.donation import DonationStatus, DonationType
from charitypay.services.fees import FeeBreakdown


class FeeQuoteRequest(BaseModel):
    """Quote the fees for a prospective donation."""
    amount: Decimal = Field(..., ge=Decimal("1.00"), decimal_places=2)
    cover_fees: bool = False


class FeeQuoteResponse(BaseModel):
    base_amount: Decimal
    cover_fees: bool
    platform_fee: Decimal
    gst_on_fee: Decimal
    application_fee: Decimal
    processor_fee: Decimal
    total_charge: Decimal
    net_to_org: Decimal

    @classmethod
    def from_breakdown(cls, breakdown: FeeBreakdown) -> "FeeQuoteResponse":
        return cls(
            base_amount=breakdown.base_amount,
            cover_fees=breakdown.cover_fees,
            platform_fee=breakdown.platform_fee,
            gst_on_fee=breakdown.gst_on_fee,
            application_fee=breakdown.application_fee,
            processor_fee=breakdown.processor_fee,
            total_charge=breakdown.total_charge,
            net_to_org=breakdown.net_to_org,
        )


class DonationCreate(BaseModel):
    """Start a one-time donation."""
    donor_id: str
    organization_id: str
    amount: Decimal = Field(..., ge=Decimal("1.00"), decimal_places=2)
    cover_fees: bool = False
    cause_id: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    special_message: Optional[str] = Field(None, max_length=500)
    idempotency_key: Optional[str] = Field(None, max_length=255)


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class DonationResponse(BaseModel):
    """Donation response schema."""
    id: str
    donor_id: str
    organization_id: str
    cause_id: Optional[str] = None
    donation_type: DonationType
    status: DonationStatus
    base_amount: Decimal
    cover_fees: bool
    platform_fee: Decimal
    gst_on_fee: Decimal
    processor_fee: Decimal
    total_amount: Decimal
    net_amount: Decimal
    currency: str
    payment_intent_id: Optional[str] = None
    payment_attempts: int
    receipt_generated: bool
    points_earned: int
    donated_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created: datetime
    updated: datetime

    class Config:
        from_attributes = True


class DonationStartResponse(BaseModel):
    donation: DonationResponse
    client_secret: Optional[str] = None
