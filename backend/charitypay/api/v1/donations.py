"""
Donation endpoints: fee quotes, one-time donations and refunds.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.api.deps import get_processor
from charitypay.core.exceptions import (
    NotFoundError,
    OrganizationNotPayableError,
    ProcessorError,
    ValidationError,
)
from charitypay.db.base import get_db
from charitypay.schemas.donation import (
    DonationCreate,
    DonationResponse,
    DonationStartResponse,
    FeeQuoteRequest,
    FeeQuoteResponse,
    RefundRequest,
)
from charitypay.services import donations as donation_service
from charitypay.services.fees import FeeRates, compute_fees
from charitypay.services.processor import PaymentProcessor

router = APIRouter()


def _raise_http(e: Exception):
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, OrganizationNotPayableError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, ProcessorError):
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
    raise e


@router.post("/fee-quote", response_model=FeeQuoteResponse)
async def fee_quote(data: FeeQuoteRequest):
    """Fee breakdown for an amount, with or without the donor covering fees."""
    breakdown = compute_fees(data.amount, data.cover_fees, FeeRates.from_settings())
    return FeeQuoteResponse.from_breakdown(breakdown)


@router.post("", response_model=DonationStartResponse, status_code=status.HTTP_201_CREATED)
async def start_donation(
    data: DonationCreate,
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Create a one-time donation and return the client secret to confirm it."""
    try:
        donation, intent = await donation_service.start_one_time_donation(
            db,
            processor,
            donor_id=data.donor_id,
            organization_id=data.organization_id,
            base_amount=data.amount,
            cover_fees=data.cover_fees,
            cause_id=data.cause_id,
            currency=data.currency,
            special_message=data.special_message,
            idempotency_key=data.idempotency_key,
        )
    except (NotFoundError, OrganizationNotPayableError, ValidationError, ProcessorError) as e:
        _raise_http(e)

    return DonationStartResponse(
        donation=DonationResponse.model_validate(donation),
        client_secret=intent.client_secret if intent else None,
    )


@router.get("/{donation_id}", response_model=DonationResponse)
async def get_donation(donation_id: str, db: AsyncSession = Depends(get_db)):
    donation = await donation_service.get_donation(db, donation_id)
    if not donation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Donation not found"
        )
    return DonationResponse.model_validate(donation)


@router.post("/{donation_id}/refund", response_model=DonationResponse)
async def refund_donation(
    donation_id: str,
    data: RefundRequest,
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """Start a refund; the donation becomes refunded when the processor confirms."""
    try:
        donation = await donation_service.request_refund(db, processor, donation_id, data.reason)
    except (NotFoundError, ValidationError, ProcessorError) as e:
        _raise_http(e)
    return DonationResponse.model_validate(donation)
