"""
Donation record store.

All status changes go through conditional UPDATEs whose WHERE clause carries
the expected current status, so a change applies at most once no matter how
many times (or how concurrently) the triggering event is delivered.
"""
import logging
import secrets
import time
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.core.config import settings
from charitypay.core.exceptions import (
    InvalidAmountError,
    NotFoundError,
    OrganizationNotPayableError,
    ProcessorError,
    ValidationError,
)
from charitypay.models.base import utcnow
from charitypay.models.donation import Donation, DonationStatus, DonationType
from charitypay.models.donor import Donor
from charitypay.models.organization import Organization
from charitypay.services.fees import FeeBreakdown, FeeRates, compute_fees, round2
from charitypay.services.processor import PaymentIntentResult, PaymentProcessor

logger = logging.getLogger(__name__)


def new_idempotency_key(prefix: str, reference: str) -> str:
    """Key like ``scheduled_<id>_<epoch ms>_<random>``."""
    return f"{prefix}_{reference}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def validate_amount(amount: Any) -> Decimal:
    try:
        value = round2(amount)
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise InvalidAmountError(f"Invalid donation amount: {amount!r}") from exc
    if value < Decimal(settings.MIN_DONATION_AMOUNT):
        raise InvalidAmountError(
            f"Donation amount must be at least {settings.MIN_DONATION_AMOUNT}, got {value}"
        )
    return value


def fee_columns(breakdown: FeeBreakdown) -> dict[str, Any]:
    """Donation column values for a fee breakdown."""
    return {
        "base_amount": breakdown.base_amount,
        "cover_fees": breakdown.cover_fees,
        "platform_fee": breakdown.platform_fee,
        "gst_on_fee": breakdown.gst_on_fee,
        "processor_fee": breakdown.processor_fee,
        "total_amount": breakdown.total_charge,
        "net_amount": breakdown.net_to_org,
    }


def breakdown_from_donation(donation: Donation) -> FeeBreakdown:
    return FeeBreakdown(
        base_amount=donation.base_amount,
        cover_fees=donation.cover_fees,
        platform_fee=donation.platform_fee,
        gst_on_fee=donation.gst_on_fee,
        application_fee=donation.platform_fee + donation.gst_on_fee,
        processor_fee=donation.processor_fee,
        total_charge=donation.total_amount,
        net_to_org=donation.net_amount,
    )


def payment_metadata(donation: Donation, breakdown: FeeBreakdown, **extra: str) -> dict[str, str]:
    metadata = {
        "donationId": donation.id,
        "donorId": donation.donor_id,
        "organizationId": donation.organization_id,
        "donationType": donation.donation_type.value,
        **breakdown.to_metadata(),
    }
    metadata.update({k: v for k, v in extra.items() if v is not None})
    return metadata


# =============================================================================
# Reads
# =============================================================================

async def get_donation(db: AsyncSession, donation_id: str) -> Optional[Donation]:
    result = await db.execute(
        select(Donation)
        .where(Donation.id == donation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_donation_by_payment_intent(db: AsyncSession, payment_intent_id: str) -> Optional[Donation]:
    result = await db.execute(
        select(Donation)
        .where(Donation.payment_intent_id == payment_intent_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_donations_for_scheduled_donation(db: AsyncSession, scheduled_donation_id: str) -> List[Donation]:
    result = await db.execute(
        select(Donation)
        .where(Donation.scheduled_donation_id == scheduled_donation_id)
        .order_by(Donation.created)
    )
    return list(result.scalars().all())


async def list_donor_donations(
    db: AsyncSession,
    donor_id: str,
    status: Optional[DonationStatus] = None,
    limit: int = 100,
) -> List[Donation]:
    query = select(Donation).where(Donation.donor_id == donor_id)
    if status is not None:
        query = query.where(Donation.status == status)
    result = await db.execute(query.order_by(Donation.created.desc()).limit(limit))
    return list(result.scalars().all())


async def ensure_organization_payable(db: AsyncSession, organization_id: str) -> Organization:
    """Load the organization and check its connected account can take payments."""
    result = await db.execute(
        select(Organization)
        .where(Organization.id == organization_id)
        .execution_options(populate_existing=True)
    )
    organization = result.scalar_one_or_none()
    if organization is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    if not organization.can_receive_payments:
        raise OrganizationNotPayableError(organization_id, organization.stripe_account_status.value)
    return organization


# =============================================================================
# Conditional transitions
# =============================================================================

async def transition_donation(
    db: AsyncSession,
    *,
    payment_intent_id: str,
    from_statuses: Iterable[DonationStatus],
    values: dict[str, Any],
    donation_id: Optional[str] = None,
) -> Optional[Donation]:
    """
    Apply ``values`` to the donation for ``payment_intent_id`` if its status
    is one of ``from_statuses``.

    When no donation carries the intent id yet (the event beat the id write),
    fall back to ``donation_id`` from the event metadata and attach the intent
    id in the same statement. Returns the updated donation, or None when the
    precondition did not hold (already applied, or unknown payment).
    """
    from_statuses = list(from_statuses)
    result = await db.execute(
        update(Donation)
        .where(
            Donation.payment_intent_id == payment_intent_id,
            Donation.status.in_(from_statuses),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        return await get_donation_by_payment_intent(db, payment_intent_id)

    if not donation_id:
        return None
    if await get_donation_by_payment_intent(db, payment_intent_id) is not None:
        # Some donation already owns this intent; its status just didn't match
        return None

    result = await db.execute(
        update(Donation)
        .where(
            Donation.id == donation_id,
            Donation.status.in_(from_statuses),
            or_(
                Donation.payment_intent_id.is_(None),
                Donation.payment_intent_id == payment_intent_id,
            ),
        )
        .values(payment_intent_id=payment_intent_id, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Matched donation {donation_id} by metadata and attached payment intent {payment_intent_id}")
        return await get_donation(db, donation_id)
    return None


async def attach_payment_intent(
    db: AsyncSession,
    donation_id: str,
    payment_intent_id: str,
    to_status: Optional[DonationStatus] = None,
    attempts: Optional[int] = None,
) -> bool:
    """Record the intent id on a donation that has none yet (the id is write-once)."""
    values: dict[str, Any] = {
        "payment_intent_id": payment_intent_id,
        "payment_attempts": attempts if attempts is not None else Donation.payment_attempts + 1,
        "last_payment_attempt_at": utcnow(),
    }
    if to_status is not None:
        values["status"] = to_status
    result = await db.execute(
        update(Donation)
        .where(
            Donation.id == donation_id,
            Donation.payment_intent_id.is_(None),
            Donation.status == DonationStatus.PENDING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def mark_donation_failed(
    db: AsyncSession,
    donation_id: str,
    reason: str,
    attempts: Optional[int] = None,
) -> bool:
    """Fail a donation that never got a payment intent attached."""
    values: dict[str, Any] = {
        "status": DonationStatus.FAILED,
        "failure_reason": reason,
        "last_payment_attempt_at": utcnow(),
    }
    if attempts is not None:
        values["payment_attempts"] = attempts
    result = await db.execute(
        update(Donation)
        .where(Donation.id == donation_id, Donation.status == DonationStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


# =============================================================================
# Operations
# =============================================================================

async def start_one_time_donation(
    db: AsyncSession,
    processor: PaymentProcessor,
    *,
    donor_id: str,
    organization_id: str,
    base_amount: Any,
    cover_fees: bool = False,
    cause_id: Optional[str] = None,
    currency: Optional[str] = None,
    special_message: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    rates: Optional[FeeRates] = None,
) -> Tuple[Donation, Optional[PaymentIntentResult]]:
    """
    Create a pending one-time donation and its payment intent.

    The client confirms the intent with the returned client secret; the
    outcome arrives by webhook. A repeated ``idempotency_key`` for the same
    donor returns the existing donation instead of charging again.
    """
    amount = validate_amount(base_amount)

    if idempotency_key:
        result = await db.execute(
            select(Donation).where(
                Donation.donor_id == donor_id,
                Donation.idempotency_key == idempotency_key,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            logger.info(f"Reusing donation {existing.id} for idempotency key {idempotency_key}")
            intent = None
            if existing.payment_intent_id:
                intent = await processor.retrieve_payment_intent(existing.payment_intent_id)
            return existing, intent

    donor = await db.get(Donor, donor_id)
    if donor is None:
        raise NotFoundError(f"Donor {donor_id} not found")
    organization = await ensure_organization_payable(db, organization_id)

    breakdown = compute_fees(amount, cover_fees, rates or FeeRates.from_settings())
    key = idempotency_key or new_idempotency_key("donation", donor.id)
    donation = Donation(
        donor_id=donor.id,
        organization_id=organization.id,
        cause_id=cause_id,
        donation_type=DonationType.ONE_TIME,
        currency=(currency or settings.DEFAULT_CURRENCY).lower(),
        status=DonationStatus.PENDING,
        idempotency_key=key,
        special_message=special_message,
        **fee_columns(breakdown),
    )
    db.add(donation)
    await db.commit()

    try:
        intent = await processor.create_payment_intent(
            amount_cents=breakdown.total_charge_cents,
            currency=donation.currency,
            destination_account_id=organization.stripe_connect_account_id,
            application_fee_cents=breakdown.application_fee_cents,
            idempotency_key=key,
            metadata=payment_metadata(donation, breakdown),
            customer_id=donor.stripe_customer_id,
            description=f"Donation to {organization.name}",
        )
    except ProcessorError as exc:
        await mark_donation_failed(db, donation.id, str(exc))
        await db.commit()
        logger.warning(f"Payment intent creation failed for donation {donation.id}: {exc}")
        raise

    await attach_payment_intent(db, donation.id, intent.id, to_status=DonationStatus.PROCESSING)
    await db.commit()
    logger.info(f"Started one-time donation {donation.id} ({breakdown.total_charge} {donation.currency}) intent {intent.id}")
    return await get_donation(db, donation.id), intent


async def request_refund(
    db: AsyncSession,
    processor: PaymentProcessor,
    donation_id: str,
    reason: Optional[str] = None,
) -> Donation:
    """
    Move a completed donation to refunding and ask the processor to refund it.

    The refund is confirmed (and the ledger debited) by the charge.refunded
    webhook. A donation never moves back to completed: when the processor
    call fails it stays refunding with the error in ``failure_reason`` and the
    request can be repeated (the refund idempotency key is per donation).
    """
    donation = await get_donation(db, donation_id)
    if donation is None:
        raise NotFoundError(f"Donation {donation_id} not found")

    values: dict[str, Any] = {"status": DonationStatus.REFUNDING}
    if reason:
        values["refund_reason"] = reason
    result = await db.execute(
        update(Donation)
        .where(
            Donation.id == donation_id,
            or_(
                Donation.status == DonationStatus.COMPLETED,
                and_(Donation.status == DonationStatus.REFUNDING, Donation.refund_id.is_(None)),
            ),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ValidationError(
            f"Donation {donation_id} cannot be refunded from status '{donation.status.value}'"
        )
    await db.commit()

    try:
        refund_id = await processor.create_refund(
            donation.payment_intent_id,
            idempotency_key=f"refund_{donation.id}",
            reason=reason or donation.refund_reason,
        )
    except ProcessorError as exc:
        await db.execute(
            update(Donation)
            .where(Donation.id == donation_id, Donation.status == DonationStatus.REFUNDING)
            .values(failure_reason=f"Refund request failed: {exc}")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.warning(f"Refund request for donation {donation_id} failed: {exc}")
        raise

    await db.execute(
        update(Donation)
        .where(Donation.id == donation_id)
        .values(refund_id=refund_id, failure_reason=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info(f"Refund {refund_id} requested for donation {donation_id}")
    return await get_donation(db, donation_id)
