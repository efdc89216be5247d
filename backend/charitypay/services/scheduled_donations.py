"""
Scheduled (recurring) donation executor.

A run owns a template through its execution lock (status ``processing``).
Once a charge is created the lock is handed to the webhook path, which
releases it on success (schedule advanced) or failure. A run that never got
a charge out releases the lock itself. Stale locks are swept by
``recover_stale_locks``.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from charitypay.core.config import settings
from charitypay.core.exceptions import NotFoundError, ProcessorError, ValidationError
from charitypay.models.base import utcnow
from charitypay.models.donation import IN_FLIGHT_STATUSES, Donation, DonationStatus, DonationType
from charitypay.models.donor import Donor
from charitypay.models.round_up import RoundUpConfig, RoundUpStatus, RoundUpTransaction, RoundUpTransactionStatus
from charitypay.models.scheduled_donation import (
    ExecutionLockStatus,
    Frequency,
    IntervalUnit,
    ScheduledDonation,
)
from charitypay.services.donations import (
    attach_payment_intent,
    ensure_organization_payable,
    fee_columns,
    get_donation,
    mark_donation_failed,
    new_idempotency_key,
    payment_metadata,
    transition_donation,
    validate_amount,
)
from charitypay.services.fees import FeeRates, compute_fees
from charitypay.services.job_tracker import JobResult
from charitypay.services.processor import PaymentProcessor

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# Intent states that mean an off-session charge did not go through
UNSUCCESSFUL_INTENT_STATUSES = {
    "requires_payment_method": DonationStatus.FAILED,
    "canceled": DonationStatus.CANCELED,
}

FIXED_INTERVALS = {
    Frequency.DAILY: relativedelta(days=1),
    Frequency.WEEKLY: relativedelta(weeks=1),
    Frequency.MONTHLY: relativedelta(months=1),
    Frequency.QUARTERLY: relativedelta(months=3),
    Frequency.YEARLY: relativedelta(years=1),
}


def compute_next_run(
    anchor: datetime,
    frequency: Frequency,
    custom_interval_value: Optional[int] = None,
    custom_interval_unit: Optional[IntervalUnit] = None,
) -> datetime:
    """Next run date one period after ``anchor``. Month arithmetic clamps to month end."""
    if frequency != Frequency.CUSTOM:
        return anchor + FIXED_INTERVALS[frequency]
    if not custom_interval_value or custom_interval_value < 1 or custom_interval_unit is None:
        raise ValidationError("Custom frequency needs a positive interval value and a unit")
    return anchor + relativedelta(**{custom_interval_unit.value: custom_interval_value})


# =============================================================================
# Template management
# =============================================================================

async def get_scheduled_donation(db: AsyncSession, scheduled_donation_id: str) -> Optional[ScheduledDonation]:
    result = await db.execute(
        select(ScheduledDonation)
        .where(ScheduledDonation.id == scheduled_donation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_scheduled_donation(
    db: AsyncSession,
    *,
    donor_id: str,
    organization_id: str,
    amount: Any,
    frequency: Frequency,
    payment_method_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    cover_fees: bool = False,
    custom_interval_value: Optional[int] = None,
    custom_interval_unit: Optional[IntervalUnit] = None,
    cause_id: Optional[str] = None,
    currency: Optional[str] = None,
    special_message: Optional[str] = None,
    processor: Optional[PaymentProcessor] = None,
) -> ScheduledDonation:
    """
    Create an active template whose first run is due at ``start_date`` (default now).

    With a processor given, the payment method is first saved on the donor's
    customer so it can be charged off-session.
    """
    amount = validate_amount(amount)
    if frequency == Frequency.CUSTOM:
        # Raises for a bad custom interval
        compute_next_run(utcnow(), frequency, custom_interval_value, custom_interval_unit)

    donor = await db.get(Donor, donor_id)
    if donor is None:
        raise NotFoundError(f"Donor {donor_id} not found")
    if not donor.stripe_customer_id:
        raise ValidationError(f"Donor {donor_id} has no saved payment customer")
    await ensure_organization_payable(db, organization_id)
    if processor is not None:
        await processor.attach_payment_method(payment_method_id, donor.stripe_customer_id)

    start = start_date or utcnow()
    template = ScheduledDonation(
        donor_id=donor_id,
        organization_id=organization_id,
        cause_id=cause_id,
        amount=amount,
        cover_fees=cover_fees,
        currency=(currency or settings.DEFAULT_CURRENCY).lower(),
        frequency=frequency,
        custom_interval_value=custom_interval_value,
        custom_interval_unit=custom_interval_unit,
        start_date=start,
        end_date=end_date,
        next_run_at=start,
        stripe_customer_id=donor.stripe_customer_id,
        payment_method_id=payment_method_id,
        is_active=True,
        status=ExecutionLockStatus.ACTIVE,
        special_message=special_message,
    )
    db.add(template)
    await db.commit()
    logger.info(f"Created {frequency.value} scheduled donation {template.id} of {amount} for donor {donor_id}")
    return template


async def pause_scheduled_donation(db: AsyncSession, scheduled_donation_id: str) -> ScheduledDonation:
    result = await db.execute(
        update(ScheduledDonation)
        .where(
            ScheduledDonation.id == scheduled_donation_id,
            ScheduledDonation.is_active.is_(True),
            ScheduledDonation.status == ExecutionLockStatus.ACTIVE,
        )
        .values(status=ExecutionLockStatus.PAUSED)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ValidationError(f"Scheduled donation {scheduled_donation_id} is not active or is mid-run")
    await db.commit()
    return await get_scheduled_donation(db, scheduled_donation_id)


async def resume_scheduled_donation(db: AsyncSession, scheduled_donation_id: str) -> ScheduledDonation:
    template = await get_scheduled_donation(db, scheduled_donation_id)
    if template is None:
        raise NotFoundError(f"Scheduled donation {scheduled_donation_id} not found")
    # Missed periods are not made up; the next run is due now at the earliest
    next_run_at = max(template.next_run_at, utcnow())
    result = await db.execute(
        update(ScheduledDonation)
        .where(
            ScheduledDonation.id == scheduled_donation_id,
            ScheduledDonation.is_active.is_(True),
            ScheduledDonation.status == ExecutionLockStatus.PAUSED,
        )
        .values(status=ExecutionLockStatus.ACTIVE, next_run_at=next_run_at)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ValidationError(f"Scheduled donation {scheduled_donation_id} is not paused")
    await db.commit()
    return await get_scheduled_donation(db, scheduled_donation_id)


async def cancel_scheduled_donation(db: AsyncSession, scheduled_donation_id: str) -> ScheduledDonation:
    """Deactivate a template. A charge already in flight still settles normally."""
    result = await db.execute(
        update(ScheduledDonation)
        .where(ScheduledDonation.id == scheduled_donation_id, ScheduledDonation.is_active.is_(True))
        .values(is_active=False, end_date=utcnow())
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ValidationError(f"Scheduled donation {scheduled_donation_id} is already cancelled")
    await db.commit()
    logger.info(f"Cancelled scheduled donation {scheduled_donation_id}")
    return await get_scheduled_donation(db, scheduled_donation_id)


# =============================================================================
# Execution lock
# =============================================================================

async def get_due_scheduled_donations(
    db: AsyncSession,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[ScheduledDonation]:
    """Active, unlocked templates whose next run is due."""
    query = (
        select(ScheduledDonation)
        .where(
            ScheduledDonation.is_active.is_(True),
            ScheduledDonation.status == ExecutionLockStatus.ACTIVE,
            ScheduledDonation.next_run_at <= (now or utcnow()),
        )
        .order_by(ScheduledDonation.next_run_at)
    )
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def acquire_execution_lock(db: AsyncSession, scheduled_donation_id: str, now: Optional[datetime] = None) -> bool:
    """Atomically move an active template to processing. Exactly one caller wins."""
    result = await db.execute(
        update(ScheduledDonation)
        .where(
            ScheduledDonation.id == scheduled_donation_id,
            ScheduledDonation.is_active.is_(True),
            ScheduledDonation.status == ExecutionLockStatus.ACTIVE,
        )
        .values(status=ExecutionLockStatus.PROCESSING, locked_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def release_execution_lock(
    db: AsyncSession,
    scheduled_donation_id: str,
    failure_reason: Optional[str] = None,
) -> bool:
    values: dict[str, Any] = {"status": ExecutionLockStatus.ACTIVE, "locked_at": None}
    if failure_reason:
        values["last_failure_reason"] = failure_reason
    result = await db.execute(
        update(ScheduledDonation)
        .where(
            ScheduledDonation.id == scheduled_donation_id,
            ScheduledDonation.status == ExecutionLockStatus.PROCESSING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def advance_after_success(
    db: AsyncSession,
    scheduled_donation_id: str,
    executed_at: datetime,
) -> bool:
    """
    Record a successful run: bump the counter, move next_run_at one period
    past the execution time and release the lock. Caller commits.
    """
    template = await get_scheduled_donation(db, scheduled_donation_id)
    if template is None:
        logger.warning(f"Completed recurring donation references missing template {scheduled_donation_id}")
        return False

    next_run_at = compute_next_run(
        executed_at,
        template.frequency,
        template.custom_interval_value,
        template.custom_interval_unit,
    )
    values: dict[str, Any] = {
        "status": ExecutionLockStatus.ACTIVE,
        "locked_at": None,
        "last_executed_at": executed_at,
        "next_run_at": next_run_at,
        "total_executions": ScheduledDonation.total_executions + 1,
        "last_failure_reason": None,
    }
    if template.end_date is not None and next_run_at > template.end_date:
        values["is_active"] = False

    result = await db.execute(
        update(ScheduledDonation)
        .where(
            ScheduledDonation.id == scheduled_donation_id,
            ScheduledDonation.status.in_([ExecutionLockStatus.PROCESSING, ExecutionLockStatus.ACTIVE]),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Scheduled donation {scheduled_donation_id} advanced; next run {next_run_at.isoformat()}")
    return bool(result.rowcount)


# =============================================================================
# Executor
# =============================================================================

async def settle_missed_failure(
    db: AsyncSession,
    processor: PaymentProcessor,
    donation_id: str,
    payment_intent_id: str,
) -> Optional[DonationStatus]:
    """
    Apply a failure the processor reported that no webhook has applied.

    Failure events for recurring runs only match by intent id, since earlier
    attempts of the same run decline under the same donation id. An event for
    the winning intent that arrived before the executor recorded it was
    therefore dropped; reading the intent back closes that window. The stale
    lock sweep uses the same read for webhooks that never arrive. Whichever
    of this and a later webhook performs the transition releases the lock.
    """
    try:
        intent = await processor.retrieve_payment_intent(payment_intent_id)
    except ProcessorError as exc:
        logger.warning(f"Could not read back intent {payment_intent_id} for donation {donation_id}: {exc}")
        return None
    status = UNSUCCESSFUL_INTENT_STATUSES.get(intent.status)
    if status is None:
        return None

    default = "Payment failed" if status == DonationStatus.FAILED else "Payment canceled"
    reason = intent.failure_message or default
    donation = await transition_donation(
        db,
        payment_intent_id=payment_intent_id,
        from_statuses=IN_FLIGHT_STATUSES,
        values={
            "status": status,
            "failure_reason": reason,
            "last_payment_attempt_at": utcnow(),
        },
    )
    if donation is None:
        return None
    scheduled_donation_id = donation.scheduled_donation_id
    await db.commit()
    await release_execution_lock(db, scheduled_donation_id, reason)
    logger.warning(f"Recurring donation {donation_id} was {status.value} before its intent was recorded: {reason}")
    return status


async def execute_scheduled_donation(
    db: AsyncSession,
    processor: PaymentProcessor,
    scheduled_donation_id: str,
    *,
    rates: Optional[FeeRates] = None,
    now: Optional[datetime] = None,
    sleep: Sleep = asyncio.sleep,
) -> Optional[Donation]:
    """
    Run one template.

    Returns None when another run holds the lock, the processing Donation
    when a charge was created, or a failed Donation when retries ran out.
    Unrecoverable errors (missing template, organization cannot receive
    payments) release the lock and propagate.
    """
    now = now or utcnow()
    if not await acquire_execution_lock(db, scheduled_donation_id, now):
        logger.info(f"Scheduled donation {scheduled_donation_id} is locked by another run; skipping")
        return None

    handed_off = False
    failure_reason: Optional[str] = None
    donation_id: Optional[str] = None
    try:
        template = await get_scheduled_donation(db, scheduled_donation_id)
        if template is None:
            raise NotFoundError(f"Scheduled donation {scheduled_donation_id} not found")
        organization = await ensure_organization_payable(db, template.organization_id)
        breakdown = compute_fees(template.amount, template.cover_fees, rates or FeeRates.from_settings())

        run_key = new_idempotency_key("scheduled", template.id)
        donation = Donation(
            donor_id=template.donor_id,
            organization_id=template.organization_id,
            cause_id=template.cause_id,
            donation_type=DonationType.RECURRING,
            currency=template.currency,
            status=DonationStatus.PENDING,
            idempotency_key=run_key,
            scheduled_donation_id=template.id,
            special_message=template.special_message,
            **fee_columns(breakdown),
        )
        db.add(donation)
        await db.commit()
        donation_id = donation.id

        max_attempts = settings.CHARGE_MAX_ATTEMPTS
        attempt_key = f"{run_key}_1"
        last_error: Optional[ProcessorError] = None
        attempt = 0
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = settings.CHARGE_RETRY_BASE_SECONDS * 2 ** (attempt - 1)
                logger.info(f"Retrying scheduled donation {template.id} in {delay:.1f}s (attempt {attempt}/{max_attempts})")
                await sleep(delay)
            try:
                intent = await processor.create_payment_intent(
                    amount_cents=breakdown.total_charge_cents,
                    currency=template.currency,
                    destination_account_id=organization.stripe_connect_account_id,
                    application_fee_cents=breakdown.application_fee_cents,
                    idempotency_key=attempt_key,
                    metadata=payment_metadata(donation, breakdown, scheduledDonationId=template.id),
                    customer_id=template.stripe_customer_id,
                    payment_method_id=template.payment_method_id,
                    off_session=True,
                    description=f"Recurring donation to {organization.name}",
                )
            except ProcessorError as exc:
                last_error = exc
                logger.warning(f"Scheduled donation {template.id} attempt {attempt}/{max_attempts} failed: {exc}")
                if not exc.retryable:
                    break
                if not exc.connection_error:
                    # The processor saw and declined this key; a retry needs a new one
                    attempt_key = f"{run_key}_{attempt + 1}"
                continue

            # Lock ownership passes to the webhook from here on
            handed_off = True
            await attach_payment_intent(
                db, donation.id, intent.id, to_status=DonationStatus.PROCESSING, attempts=attempt
            )
            await db.commit()
            logger.info(f"Scheduled donation {template.id} charged: donation {donation.id}, intent {intent.id}")
            await settle_missed_failure(db, processor, donation.id, intent.id)
            return await get_donation(db, donation.id)

        failure_reason = str(last_error) if last_error else "charge not attempted"
        await mark_donation_failed(db, donation.id, failure_reason, attempts=attempt)
        await db.commit()
        await release_execution_lock(db, scheduled_donation_id, failure_reason)
        logger.error(f"Scheduled donation {scheduled_donation_id} failed after {attempt} attempt(s): {failure_reason}")
        return await get_donation(db, donation.id)
    except Exception as exc:
        if not handed_off:
            await db.rollback()
            failure_reason = failure_reason or str(exc)
            if donation_id is not None:
                await mark_donation_failed(db, donation_id, failure_reason)
                await db.commit()
            await release_execution_lock(db, scheduled_donation_id, failure_reason)
        raise


async def run_due_scheduled_donations(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    rates: Optional[FeeRates] = None,
    sleep: Sleep = asyncio.sleep,
) -> JobResult:
    """Execute every due template, one session per template, a batch at a time."""
    now = now or utcnow()
    batch_size = batch_size or settings.SCHEDULED_DONATIONS_BATCH_SIZE
    async with session_factory() as db:
        due_ids = [t.id for t in await get_due_scheduled_donations(db, now)]

    result = JobResult()
    if not due_ids:
        return result
    logger.info(f"Found {len(due_ids)} scheduled donation(s) due")

    async def run_one(scheduled_donation_id: str) -> Optional[Donation]:
        async with session_factory() as session:
            return await execute_scheduled_donation(
                session, processor, scheduled_donation_id, rates=rates, now=now, sleep=sleep
            )

    for start in range(0, len(due_ids), batch_size):
        batch = due_ids[start:start + batch_size]
        outcomes = await asyncio.gather(*(run_one(i) for i in batch), return_exceptions=True)
        for scheduled_donation_id, outcome in zip(batch, outcomes):
            result.processed += 1
            if isinstance(outcome, BaseException):
                logger.error(f"Scheduled donation {scheduled_donation_id} errored: {outcome}")
                result.record_error(scheduled_donation_id, outcome)
            elif outcome is None:
                result.skipped += 1
            elif outcome.status == DonationStatus.FAILED:
                result.record_error(scheduled_donation_id, ProcessorError(outcome.failure_reason or "failed"))
            else:
                result.succeeded += 1
    return result


# =============================================================================
# Stale lock recovery
# =============================================================================

async def _settle_held_runs(
    db: AsyncSession,
    processor: PaymentProcessor,
    scheduled_donation_ids: List[str],
) -> List[str]:
    """Read back the charges behind held locks. Returns the ids still held."""
    result = await db.execute(
        select(Donation.id, Donation.scheduled_donation_id, Donation.payment_intent_id).where(
            Donation.scheduled_donation_id.in_(scheduled_donation_ids),
            Donation.status == DonationStatus.PROCESSING,
            Donation.payment_intent_id.is_not(None),
        )
    )
    still_held = set(scheduled_donation_ids)
    for donation_id, scheduled_donation_id, payment_intent_id in result.all():
        if await settle_missed_failure(db, processor, donation_id, payment_intent_id):
            still_held.discard(scheduled_donation_id)
    return [i for i in scheduled_donation_ids if i in still_held]


async def recover_stale_locks(
    session_factory: async_sessionmaker,
    *,
    processor: Optional[PaymentProcessor] = None,
    now: Optional[datetime] = None,
    stale_minutes: Optional[int] = None,
) -> JobResult:
    """
    Release locks held longer than the stale window (a crashed run, or a
    webhook that never arrived).

    A template whose run still has a pending or processing donation keeps its
    lock: the charge may yet succeed, and releasing it would let the next
    tick charge the same period again. With a processor, the charge behind such
    a lock is read back and a failure the webhook never delivered is applied.
    Round-up configs are only released when no transactions of theirs are
    still tied to a charge.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=stale_minutes or settings.STALE_LOCK_MINUTES)
    result = JobResult()
    in_flight_runs = select(Donation.scheduled_donation_id).where(
        Donation.scheduled_donation_id.is_not(None),
        Donation.status.in_(IN_FLIGHT_STATUSES),
    )
    async with session_factory() as db:
        held = await db.execute(
            select(ScheduledDonation.id).where(
                ScheduledDonation.status == ExecutionLockStatus.PROCESSING,
                ScheduledDonation.locked_at < cutoff,
                ScheduledDonation.id.in_(in_flight_runs),
            )
        )
        held_ids = list(held.scalars().all())
        if processor is not None and held_ids:
            held_ids = await _settle_held_runs(db, processor, held_ids)
        released = await db.execute(
            update(ScheduledDonation)
            .where(
                ScheduledDonation.status == ExecutionLockStatus.PROCESSING,
                ScheduledDonation.locked_at < cutoff,
                ScheduledDonation.id.not_in(in_flight_runs),
            )
            .values(
                status=ExecutionLockStatus.ACTIVE,
                locked_at=None,
                last_failure_reason="Execution lock expired",
            )
            .execution_options(synchronize_session=False)
        )
        charged_batches = select(RoundUpTransaction.round_up_id).where(
            RoundUpTransaction.status == RoundUpTransactionStatus.PROCESSED
        )
        released_round_ups = await db.execute(
            update(RoundUpConfig)
            .where(
                RoundUpConfig.status == RoundUpStatus.PROCESSING,
                RoundUpConfig.locked_at < cutoff,
                RoundUpConfig.id.not_in(charged_batches),
            )
            .values(status=RoundUpStatus.PENDING, locked_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    result.processed = released.rowcount + released_round_ups.rowcount
    result.succeeded = result.processed
    result.skipped = len(held_ids)
    for scheduled_donation_id in held_ids:
        logger.warning(f"Scheduled donation {scheduled_donation_id} is past the lock window but still has a charge in flight; keeping its lock")
    if result.processed:
        logger.warning(
            f"Released {released.rowcount} stale scheduled donation lock(s) and "
            f"{released_round_ups.rowcount} stale round-up lock(s)"
        )
    return result
