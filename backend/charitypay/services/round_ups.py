"""
Round-up reconciler.

Card purchases contribute their spare change (up to the next whole dollar)
to a donor's round-up config. When a batch is due it is charged as one
donation; the batch's transactions are marked ``processed`` and tied to the
payment intent in the same statement, then settled as ``donated`` or rolled
back to ``accumulated`` by the processor outcome.
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal, ROUND_CEILING
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from charitypay.core.config import settings
from charitypay.core.exceptions import NotFoundError, ProcessorError, ValidationError
from charitypay.models.base import utcnow
from charitypay.models.donation import Donation, DonationStatus, DonationType
from charitypay.models.donor import Donor
from charitypay.models.round_up import (
    RoundUpConfig,
    RoundUpStatus,
    RoundUpTransaction,
    RoundUpTransactionStatus,
)
from charitypay.services.donations import (
    attach_payment_intent,
    ensure_organization_payable,
    fee_columns,
    get_donation,
    mark_donation_failed,
    new_idempotency_key,
    payment_metadata,
)
from charitypay.services.fees import ZERO, FeeRates, compute_fees, round2
from charitypay.services.job_tracker import JobResult
from charitypay.services.processor import PaymentProcessor

logger = logging.getLogger(__name__)


def calculate_round_up(amount: Any) -> Decimal:
    """Spare change up to the next whole dollar; zero for whole-dollar amounts."""
    value = round2(amount)
    return round2(value.to_integral_value(rounding=ROUND_CEILING) - value)


def is_round_up_due(config: RoundUpConfig, now: Optional[datetime] = None) -> bool:
    """
    A batch is due when the monthly threshold is reached, or on the first of
    the month for whatever accumulated (always the case with no threshold).
    """
    now = now or utcnow()
    if not config.is_active or config.status != RoundUpStatus.PENDING:
        return False
    total = config.current_total or ZERO
    if total < Decimal(settings.MIN_DONATION_AMOUNT):
        return False
    if config.monthly_threshold is not None and total >= config.monthly_threshold:
        return True
    return now.day == 1


async def get_round_up_config(db: AsyncSession, round_up_id: str) -> Optional[RoundUpConfig]:
    result = await db.execute(
        select(RoundUpConfig)
        .where(RoundUpConfig.id == round_up_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_round_up_transactions(
    db: AsyncSession,
    round_up_id: str,
    status: Optional[RoundUpTransactionStatus] = None,
) -> List[RoundUpTransaction]:
    query = select(RoundUpTransaction).where(RoundUpTransaction.round_up_id == round_up_id)
    if status is not None:
        query = query.where(RoundUpTransaction.status == status)
    result = await db.execute(
        query.order_by(RoundUpTransaction.transaction_date)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def create_round_up_config(
    db: AsyncSession,
    *,
    donor_id: str,
    organization_id: str,
    payment_method_id: str,
    monthly_threshold: Optional[Any] = None,
    cover_fees: bool = False,
    cause_id: Optional[str] = None,
    currency: Optional[str] = None,
    processor: Optional[PaymentProcessor] = None,
) -> RoundUpConfig:
    donor = await db.get(Donor, donor_id)
    if donor is None:
        raise NotFoundError(f"Donor {donor_id} not found")
    if not donor.stripe_customer_id:
        raise ValidationError(f"Donor {donor_id} has no saved payment customer")
    await ensure_organization_payable(db, organization_id)
    if processor is not None:
        await processor.attach_payment_method(payment_method_id, donor.stripe_customer_id)

    threshold = round2(monthly_threshold) if monthly_threshold is not None else None
    if threshold is not None and threshold <= 0:
        raise ValidationError("Monthly threshold must be positive")

    config = RoundUpConfig(
        donor_id=donor_id,
        organization_id=organization_id,
        cause_id=cause_id,
        monthly_threshold=threshold,
        cover_fees=cover_fees,
        currency=(currency or settings.DEFAULT_CURRENCY).lower(),
        stripe_customer_id=donor.stripe_customer_id,
        payment_method_id=payment_method_id,
        status=RoundUpStatus.PENDING,
        is_active=True,
        current_total=ZERO,
        total_donated=ZERO,
    )
    db.add(config)
    await db.commit()
    logger.info(f"Created round-up config {config.id} for donor {donor_id}")
    return config


async def cancel_round_up_config(db: AsyncSession, round_up_id: str) -> RoundUpConfig:
    """Stop accumulating. An in-flight batch still settles normally."""
    result = await db.execute(
        update(RoundUpConfig)
        .where(RoundUpConfig.id == round_up_id, RoundUpConfig.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ValidationError(f"Round-up config {round_up_id} is already cancelled")
    await db.execute(
        update(RoundUpConfig)
        .where(RoundUpConfig.id == round_up_id, RoundUpConfig.status == RoundUpStatus.PENDING)
        .values(status=RoundUpStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await get_round_up_config(db, round_up_id)


async def record_round_up(
    db: AsyncSession,
    round_up_id: str,
    *,
    source_transaction_id: str,
    original_amount: Any,
    transaction_date: Optional[datetime] = None,
) -> Optional[RoundUpTransaction]:
    """
    Accumulate the spare change from one purchase.

    Returns None for whole-dollar purchases and for a purchase that was
    already recorded.
    """
    spare = calculate_round_up(original_amount)
    if spare <= 0:
        return None

    config = await get_round_up_config(db, round_up_id)
    if config is None:
        raise NotFoundError(f"Round-up config {round_up_id} not found")
    if not config.is_active:
        raise ValidationError(f"Round-up config {round_up_id} is not active")

    result = await db.execute(
        select(RoundUpTransaction.id).where(
            RoundUpTransaction.source_transaction_id == source_transaction_id
        )
    )
    if result.scalar_one_or_none() is not None:
        logger.info(f"Purchase {source_transaction_id} already rounded up")
        return None

    transaction = RoundUpTransaction(
        round_up_id=config.id,
        donor_id=config.donor_id,
        organization_id=config.organization_id,
        source_transaction_id=source_transaction_id,
        original_amount=round2(original_amount),
        round_up_amount=spare,
        currency=config.currency,
        transaction_date=transaction_date or utcnow(),
        status=RoundUpTransactionStatus.ACCUMULATED,
    )
    db.add(transaction)
    await db.flush()
    await db.execute(
        update(RoundUpConfig)
        .where(RoundUpConfig.id == config.id)
        .values(current_total=RoundUpConfig.current_total + spare)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return transaction


async def _release_config(
    db: AsyncSession,
    round_up_id: str,
    failure_reason: Optional[str] = None,
) -> bool:
    values: dict[str, Any] = {"status": RoundUpStatus.PENDING, "locked_at": None}
    if failure_reason:
        values["last_failure_reason"] = failure_reason
        values["last_failure_at"] = utcnow()
    result = await db.execute(
        update(RoundUpConfig)
        .where(RoundUpConfig.id == round_up_id, RoundUpConfig.status == RoundUpStatus.PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def _batch_for_intent(
    db: AsyncSession,
    round_up_id: str,
    payment_intent_id: str,
) -> List[RoundUpTransaction]:
    result = await db.execute(
        select(RoundUpTransaction)
        .where(
            RoundUpTransaction.round_up_id == round_up_id,
            RoundUpTransaction.payment_intent_id == payment_intent_id,
            RoundUpTransaction.status == RoundUpTransactionStatus.PROCESSED,
        )
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def reconcile_round_up_success(
    db: AsyncSession,
    round_up_id: str,
    *,
    donation_id: str,
    payment_intent_id: str,
    charge_id: Optional[str] = None,
) -> int:
    """
    Mark the charged batch donated and release the config. Caller commits.

    Returns the number of transactions settled. Zero means the batch has not
    been linked to the intent yet; the trigger settles it once it is.
    """
    batch = await _batch_for_intent(db, round_up_id, payment_intent_id)
    if not batch:
        logger.info(f"No processed round-ups linked to intent {payment_intent_id} yet")
        return 0

    now = utcnow()
    settled = await db.execute(
        update(RoundUpTransaction)
        .where(
            RoundUpTransaction.id.in_([t.id for t in batch]),
            RoundUpTransaction.status == RoundUpTransactionStatus.PROCESSED,
        )
        .values(
            status=RoundUpTransactionStatus.DONATED,
            donation_id=donation_id,
            charge_id=charge_id,
            donated_at=now,
        )
        .returning(RoundUpTransaction.round_up_amount)
        .execution_options(synchronize_session=False)
    )
    amounts = list(settled.scalars().all())
    if not amounts:
        logger.info(f"Round-up batch for intent {payment_intent_id} was already settled")
        return 0
    donated_total = round2(sum(amounts, ZERO))
    await db.execute(
        update(RoundUpConfig)
        .where(RoundUpConfig.id == round_up_id)
        .values(
            total_donated=RoundUpConfig.total_donated + donated_total,
            last_donation_at=now,
            last_failure_reason=None,
        )
        .execution_options(synchronize_session=False)
    )
    await _release_config(db, round_up_id)
    logger.info(f"Round-up {round_up_id}: {len(amounts)} transaction(s) donated ({donated_total})")
    return len(amounts)


async def reconcile_round_up_failure(
    db: AsyncSession,
    round_up_id: str,
    *,
    payment_intent_id: str,
    reason: Optional[str] = None,
) -> int:
    """
    Return a failed batch to ``accumulated`` and restore the config total by
    the sum of the rows this call moved, so a repeated or concurrent
    reconcile adds nothing. Caller commits. Returns the number restored.
    """
    batch = await _batch_for_intent(db, round_up_id, payment_intent_id)
    if not batch:
        return 0

    now = utcnow()
    reason = reason or "Payment failed"
    restored = await db.execute(
        update(RoundUpTransaction)
        .where(
            RoundUpTransaction.id.in_([t.id for t in batch]),
            RoundUpTransaction.status == RoundUpTransactionStatus.PROCESSED,
        )
        .values(
            status=RoundUpTransactionStatus.ACCUMULATED,
            payment_intent_id=None,
            donation_id=None,
            last_failure_at=now,
            last_failure_reason=reason,
        )
        .returning(RoundUpTransaction.round_up_amount)
        .execution_options(synchronize_session=False)
    )
    amounts = list(restored.scalars().all())
    if not amounts:
        logger.info(f"Round-up batch for intent {payment_intent_id} was already restored")
        return 0
    restored_total = round2(sum(amounts, ZERO))
    await db.execute(
        update(RoundUpConfig)
        .where(RoundUpConfig.id == round_up_id)
        .values(current_total=RoundUpConfig.current_total + restored_total)
        .execution_options(synchronize_session=False)
    )
    await _release_config(db, round_up_id, reason)
    logger.warning(f"Round-up {round_up_id}: {len(amounts)} transaction(s) restored ({restored_total}) after failure: {reason}")
    return len(amounts)


async def trigger_round_up_donation(
    db: AsyncSession,
    processor: PaymentProcessor,
    round_up_id: str,
    *,
    rates: Optional[FeeRates] = None,
    now: Optional[datetime] = None,
) -> Optional[Donation]:
    """
    Charge the config's accumulated batch as one round-up donation.

    Returns None when the config is locked, inactive or has nothing to
    donate; otherwise the donation (processing, or failed when the processor
    refused the charge).
    """
    now = now or utcnow()
    claimed = await db.execute(
        update(RoundUpConfig)
        .where(
            RoundUpConfig.id == round_up_id,
            RoundUpConfig.is_active.is_(True),
            RoundUpConfig.status == RoundUpStatus.PENDING,
        )
        .values(status=RoundUpStatus.PROCESSING, locked_at=now, last_donation_attempt_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if not claimed.rowcount:
        logger.info(f"Round-up {round_up_id} is locked or inactive; skipping")
        return None

    charged = False
    donation_id: Optional[str] = None
    try:
        config = await get_round_up_config(db, round_up_id)
        batch = await list_round_up_transactions(db, round_up_id, RoundUpTransactionStatus.ACCUMULATED)
        batch_total = round2(sum((t.round_up_amount for t in batch), ZERO))
        if batch_total < Decimal(settings.MIN_DONATION_AMOUNT):
            await _release_config(db, round_up_id)
            await db.commit()
            logger.info(f"Round-up {round_up_id} has only {batch_total} accumulated; nothing to charge")
            return None

        organization = await ensure_organization_payable(db, config.organization_id)
        breakdown = compute_fees(batch_total, config.cover_fees, rates or FeeRates.from_settings())
        key = new_idempotency_key("roundup", config.id)
        donation = Donation(
            donor_id=config.donor_id,
            organization_id=config.organization_id,
            cause_id=config.cause_id,
            donation_type=DonationType.ROUND_UP,
            currency=config.currency,
            status=DonationStatus.PENDING,
            idempotency_key=key,
            round_up_id=config.id,
            **fee_columns(breakdown),
        )
        db.add(donation)
        await db.commit()
        donation_id = donation.id

        try:
            intent = await processor.create_payment_intent(
                amount_cents=breakdown.total_charge_cents,
                currency=config.currency,
                destination_account_id=organization.stripe_connect_account_id,
                application_fee_cents=breakdown.application_fee_cents,
                idempotency_key=key,
                metadata=payment_metadata(donation, breakdown, roundUpId=config.id),
                customer_id=config.stripe_customer_id,
                payment_method_id=config.payment_method_id,
                off_session=True,
                description=f"Round-up donation to {organization.name}",
            )
        except ProcessorError as exc:
            await mark_donation_failed(db, donation.id, str(exc), attempts=1)
            await _release_config(db, round_up_id, str(exc))
            await db.commit()
            logger.warning(f"Round-up {round_up_id} charge failed: {exc}")
            return await get_donation(db, donation.id)

        charged = True
        await db.execute(
            update(RoundUpTransaction)
            .where(
                RoundUpTransaction.id.in_([t.id for t in batch]),
                RoundUpTransaction.status == RoundUpTransactionStatus.ACCUMULATED,
            )
            .values(
                status=RoundUpTransactionStatus.PROCESSED,
                payment_intent_id=intent.id,
                donation_id=donation.id,
                donation_attempted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(RoundUpConfig)
            .where(RoundUpConfig.id == round_up_id)
            .values(current_total=RoundUpConfig.current_total - batch_total)
            .execution_options(synchronize_session=False)
        )
        await attach_payment_intent(
            db, donation.id, intent.id, to_status=DonationStatus.PROCESSING, attempts=1
        )
        await db.commit()
    except Exception as exc:
        if not charged:
            await db.rollback()
            if donation_id is not None:
                await mark_donation_failed(db, donation_id, str(exc))
            await _release_config(db, round_up_id, "Round-up trigger failed before charge")
            await db.commit()
        raise

    logger.info(f"Round-up {round_up_id}: charged {batch_total} across {len(batch)} transaction(s), intent {intent.id}")

    # The webhook may have settled the donation before the batch was linked
    donation = await get_donation(db, donation.id)
    if donation.status == DonationStatus.COMPLETED:
        await reconcile_round_up_success(
            db, round_up_id,
            donation_id=donation.id,
            payment_intent_id=intent.id,
            charge_id=donation.charge_id,
        )
        await db.commit()
    elif donation.status in (DonationStatus.FAILED, DonationStatus.CANCELED):
        await reconcile_round_up_failure(
            db, round_up_id,
            payment_intent_id=intent.id,
            reason=donation.failure_reason,
        )
        await db.commit()
    return donation


async def get_due_round_up_configs(db: AsyncSession, now: Optional[datetime] = None) -> List[RoundUpConfig]:
    result = await db.execute(
        select(RoundUpConfig).where(
            RoundUpConfig.is_active.is_(True),
            RoundUpConfig.status == RoundUpStatus.PENDING,
            RoundUpConfig.current_total > 0,
        )
    )
    return [c for c in result.scalars().all() if is_round_up_due(c, now)]


async def process_due_round_ups(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    *,
    now: Optional[datetime] = None,
    rates: Optional[FeeRates] = None,
) -> JobResult:
    """Trigger every due round-up batch, one session per config."""
    now = now or utcnow()
    async with session_factory() as db:
        due_ids = [c.id for c in await get_due_round_up_configs(db, now)]

    result = JobResult()
    if not due_ids:
        return result
    logger.info(f"Found {len(due_ids)} round-up batch(es) due")

    async def run_one(round_up_id: str) -> Optional[Donation]:
        async with session_factory() as session:
            return await trigger_round_up_donation(session, processor, round_up_id, rates=rates, now=now)

    outcomes = await asyncio.gather(*(run_one(i) for i in due_ids), return_exceptions=True)
    for round_up_id, outcome in zip(due_ids, outcomes):
        result.processed += 1
        if isinstance(outcome, BaseException):
            logger.error(f"Round-up {round_up_id} errored: {outcome}")
            result.record_error(round_up_id, outcome)
        elif outcome is None:
            result.skipped += 1
        elif outcome.status == DonationStatus.FAILED:
            result.record_error(round_up_id, ProcessorError(outcome.failure_reason or "failed"))
        else:
            result.succeeded += 1
    return result
