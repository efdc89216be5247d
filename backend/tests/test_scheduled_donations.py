"""
Tests for scheduled (recurring) donations.

Covers:
- Next run date arithmetic
- Template management (create, pause, resume, cancel)
- The executor: lock, charge, retries, terminal declines
- Concurrency between runs and with the webhook
- Batch runs and stale lock recovery
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.core.exceptions import (
    InvalidAmountError,
    OrganizationNotPayableError,
    ValidationError,
)
from charitypay.models.donation import Donation, DonationStatus, DonationType
from charitypay.models.donor import Donor
from charitypay.models.organization import Organization
from charitypay.models.round_up import RoundUpConfig, RoundUpStatus, RoundUpTransactionStatus
from charitypay.models.scheduled_donation import (
    ExecutionLockStatus,
    Frequency,
    IntervalUnit,
    ScheduledDonation,
)
from charitypay.services.donations import list_donations_for_scheduled_donation
from charitypay.services.scheduled_donations import (
    acquire_execution_lock,
    advance_after_success,
    cancel_scheduled_donation,
    compute_next_run,
    create_scheduled_donation,
    execute_scheduled_donation,
    get_due_scheduled_donations,
    pause_scheduled_donation,
    recover_stale_locks,
    resume_scheduled_donation,
    run_due_scheduled_donations,
)
from charitypay.services.webhooks import WebhookDispatcher
from tests.factories import add_round_up, reload
from tests.fakes import FakeProcessor, card_declined, connection_error, intent_event


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


async def make_template(db: AsyncSession, donor: Donor, org: Organization, **overrides) -> ScheduledDonation:
    now = datetime.now(timezone.utc)
    values = dict(
        donor_id=donor.id,
        organization_id=org.id,
        amount=Decimal("20.00"),
        currency="aud",
        frequency=Frequency.WEEKLY,
        start_date=now - timedelta(days=7),
        next_run_at=now - timedelta(hours=1),
        stripe_customer_id=donor.stripe_customer_id,
        payment_method_id="pm_test_card",
    )
    values.update(overrides)
    template = ScheduledDonation(**values)
    db.add(template)
    await db.commit()
    return template


# ============================================================================
# NEXT RUN DATES
# ============================================================================

class TestComputeNextRun:
    """Test next run date arithmetic."""

    def test_month_end_clamps(self):
        assert compute_next_run(utc(2026, 1, 31, 9, 30), Frequency.MONTHLY) == utc(2026, 2, 28, 9, 30)

    def test_leap_year(self):
        assert compute_next_run(utc(2028, 1, 31), Frequency.MONTHLY) == utc(2028, 2, 29)
        assert compute_next_run(utc(2028, 2, 29), Frequency.YEARLY) == utc(2029, 2, 28)

    @pytest.mark.parametrize("frequency,expected", [
        (Frequency.DAILY, utc(2026, 3, 16)),
        (Frequency.WEEKLY, utc(2026, 3, 22)),
        (Frequency.MONTHLY, utc(2026, 4, 15)),
        (Frequency.QUARTERLY, utc(2026, 6, 15)),
        (Frequency.YEARLY, utc(2027, 3, 15)),
    ])
    def test_fixed_frequencies(self, frequency, expected):
        assert compute_next_run(utc(2026, 3, 15), frequency) == expected

    def test_custom_intervals(self):
        anchor = utc(2026, 3, 15)
        assert compute_next_run(anchor, Frequency.CUSTOM, 10, IntervalUnit.DAYS) == utc(2026, 3, 25)
        assert compute_next_run(anchor, Frequency.CUSTOM, 2, IntervalUnit.WEEKS) == utc(2026, 3, 29)
        assert compute_next_run(anchor, Frequency.CUSTOM, 6, IntervalUnit.MONTHS) == utc(2026, 9, 15)

    @pytest.mark.parametrize("value,unit", [(None, IntervalUnit.DAYS), (0, IntervalUnit.DAYS), (3, None)])
    def test_invalid_custom_interval(self, value, unit):
        with pytest.raises(ValidationError):
            compute_next_run(utc(2026, 3, 15), Frequency.CUSTOM, value, unit)


# ============================================================================
# TEMPLATE MANAGEMENT
# ============================================================================

class TestTemplateManagement:
    """Test creating, pausing, resuming and cancelling templates."""

    @pytest.mark.asyncio
    async def test_create_attaches_payment_method(
        self, db_session: AsyncSession, processor: FakeProcessor,
        test_donor: Donor, test_org: Organization
    ):
        start = datetime.now(timezone.utc) + timedelta(days=1)
        template = await create_scheduled_donation(
            db_session,
            donor_id=test_donor.id,
            organization_id=test_org.id,
            amount="25",
            frequency=Frequency.MONTHLY,
            payment_method_id="pm_new_card",
            start_date=start,
            processor=processor,
        )
        assert processor.attached == [("pm_new_card", "cus_test_donor")]
        assert template.amount == Decimal("25.00")
        assert template.next_run_at == start
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.is_active is True

    @pytest.mark.asyncio
    async def test_create_rejects_bad_input(
        self, db_session: AsyncSession, test_donor: Donor, test_org: Organization,
        restricted_org: Organization
    ):
        common = dict(donor_id=test_donor.id, payment_method_id="pm_x")
        with pytest.raises(InvalidAmountError):
            await create_scheduled_donation(
                db_session, organization_id=test_org.id, amount="0.50",
                frequency=Frequency.MONTHLY, **common,
            )
        with pytest.raises(ValidationError):
            await create_scheduled_donation(
                db_session, organization_id=test_org.id, amount="10",
                frequency=Frequency.CUSTOM, **common,
            )
        with pytest.raises(OrganizationNotPayableError):
            await create_scheduled_donation(
                db_session, organization_id=restricted_org.id, amount="10",
                frequency=Frequency.MONTHLY, **common,
            )

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, db_session: AsyncSession, scheduled_donation: ScheduledDonation):
        paused = await pause_scheduled_donation(db_session, scheduled_donation.id)
        assert paused.status == ExecutionLockStatus.PAUSED
        assert await get_due_scheduled_donations(db_session) == []
        with pytest.raises(ValidationError):
            await pause_scheduled_donation(db_session, scheduled_donation.id)

        before = datetime.now(timezone.utc)
        resumed = await resume_scheduled_donation(db_session, scheduled_donation.id)
        assert resumed.status == ExecutionLockStatus.ACTIVE
        # Missed periods are skipped, not charged in a burst
        assert resumed.next_run_at >= before

    @pytest.mark.asyncio
    async def test_cancel(self, db_session: AsyncSession, scheduled_donation: ScheduledDonation):
        cancelled = await cancel_scheduled_donation(db_session, scheduled_donation.id)
        assert cancelled.is_active is False
        assert cancelled.end_date is not None
        assert await acquire_execution_lock(db_session, scheduled_donation.id) is False
        with pytest.raises(ValidationError):
            await cancel_scheduled_donation(db_session, scheduled_donation.id)

    @pytest.mark.asyncio
    async def test_advance_past_end_date_deactivates(
        self, db_session: AsyncSession, test_donor: Donor, test_org: Organization
    ):
        now = datetime.now(timezone.utc)
        template = await make_template(
            db_session, test_donor, test_org,
            frequency=Frequency.MONTHLY, end_date=now + timedelta(days=3),
        )
        assert await acquire_execution_lock(db_session, template.id)
        assert await advance_after_success(db_session, template.id, now)
        await db_session.commit()

        template = await reload(db_session, ScheduledDonation, template.id)
        assert template.is_active is False
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.total_executions == 1


# ============================================================================
# EXECUTOR
# ============================================================================

class TestExecuteScheduledDonation:
    """Test a single executor run."""

    @pytest.mark.asyncio
    async def test_charge_hands_lock_to_webhook(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        )
        assert donation.status == DonationStatus.PROCESSING
        assert donation.donation_type == DonationType.RECURRING
        assert donation.scheduled_donation_id == scheduled_donation.id
        assert donation.payment_intent_id == "pi_test_1"
        assert donation.payment_attempts == 1
        assert donation.base_amount == Decimal("50.00")
        assert sleep.delays == []

        call = processor.last_call
        assert call["amount_cents"] == 5000
        assert call["application_fee_cents"] == 275
        assert call["destination_account_id"] == "acct_test_harbour"
        assert call["customer_id"] == "cus_test_donor"
        assert call["payment_method_id"] == "pm_test_card"
        assert call["off_session"] is True
        assert call["metadata"]["donationId"] == donation.id
        assert call["metadata"]["scheduledDonationId"] == scheduled_donation.id
        assert call["idempotency_key"] == f"{donation.idempotency_key}_1"

        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        assert template.status == ExecutionLockStatus.PROCESSING
        assert template.total_executions == 0

    @pytest.mark.asyncio
    async def test_charge_then_success_webhook_advances(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        )
        outcome = await WebhookDispatcher(db_session, processor).dispatch(
            intent_event("payment_intent.succeeded", donation.payment_intent_id)
        )
        assert outcome == "completed"

        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        donation = await reload(db_session, Donation, donation.id)
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.total_executions == 1
        assert template.next_run_at == compute_next_run(donation.created, Frequency.MONTHLY)
        assert await get_due_scheduled_donations(db_session) == []

    @pytest.mark.asyncio
    async def test_retries_with_backoff_and_new_keys(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        processor.errors = [card_declined(), card_declined()]
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        )
        assert donation.status == DonationStatus.PROCESSING
        assert donation.payment_attempts == 3
        assert sleep.delays == [2.0, 4.0]

        keys = [call["idempotency_key"] for call in processor.calls]
        assert len(set(keys)) == 3
        assert keys == [f"{donation.idempotency_key}_{n}" for n in (1, 2, 3)]

    @pytest.mark.asyncio
    async def test_connection_error_reuses_key(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        processor.errors = [connection_error()]
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        )
        assert donation.status == DonationStatus.PROCESSING
        first, second = processor.calls
        assert first["idempotency_key"] == second["idempotency_key"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_and_release(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        next_run_at = scheduled_donation.next_run_at
        processor.errors = [card_declined() for _ in range(3)]
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        )
        assert donation.status == DonationStatus.FAILED
        assert donation.payment_intent_id is None
        assert donation.payment_attempts == 3
        assert "insufficient_funds" in donation.failure_reason
        assert len(processor.calls) == 3
        assert sleep.delays == [2.0, 4.0]

        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.locked_at is None
        assert "insufficient_funds" in template.last_failure_reason
        assert template.next_run_at == next_run_at
        assert template.total_executions == 0

    @pytest.mark.asyncio
    async def test_terminal_decline_does_not_retry(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        processor.errors = [card_declined("stolen_card", retryable=False)]
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        )
        assert donation.status == DonationStatus.FAILED
        assert donation.payment_attempts == 1
        assert len(processor.calls) == 1
        assert sleep.delays == []

        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        assert template.status == ExecutionLockStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unpayable_organization_releases_and_raises(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        test_donor: Donor, restricted_org: Organization
    ):
        template = await make_template(db_session, test_donor, restricted_org)
        template_id = template.id
        with pytest.raises(OrganizationNotPayableError):
            await execute_scheduled_donation(db_session, processor, template_id, sleep=sleep)

        assert processor.calls == []
        assert await list_donations_for_scheduled_donation(db_session, template_id) == []
        template = await reload(db_session, ScheduledDonation, template_id)
        assert template.status == ExecutionLockStatus.ACTIVE
        assert "cannot receive payments" in template.last_failure_reason

    @pytest.mark.asyncio
    async def test_locked_template_is_skipped(
        self, db_session: AsyncSession, processor: FakeProcessor, scheduled_donation: ScheduledDonation
    ):
        assert await acquire_execution_lock(db_session, scheduled_donation.id)
        assert await execute_scheduled_donation(db_session, processor, scheduled_donation.id) is None
        assert processor.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_donation_and_releases(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        async def crash(call):
            raise RuntimeError("processor client crashed")

        processor.on_create = crash
        with pytest.raises(RuntimeError):
            await execute_scheduled_donation(db_session, processor, scheduled_donation.id, sleep=sleep)

        donations = await list_donations_for_scheduled_donation(db_session, scheduled_donation.id)
        assert len(donations) == 1
        donation = await reload(db_session, Donation, donations[0].id)
        assert donation.status == DonationStatus.FAILED
        assert donation.failure_reason == "processor client crashed"
        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.last_failure_reason == "processor client crashed"

    @pytest.mark.asyncio
    async def test_decline_before_intent_recorded_is_read_back(
        self, db_session: AsyncSession, processor: FakeProcessor, sleep: RecordingSleep,
        scheduled_donation: ScheduledDonation
    ):
        """A decline whose event was dropped before the intent id was stored still fails the run."""
        processor.after_create = lambda intent: processor.fail_intent(
            intent.id, "Your card has insufficient funds."
        )
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        )

        assert donation.status == DonationStatus.FAILED
        assert donation.payment_intent_id == "pi_test_1"
        assert donation.failure_reason == "Your card has insufficient funds."
        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.last_failure_reason == "Your card has insufficient funds."
        assert template.total_executions == 0

        # The late webhook for the same intent changes nothing
        outcome = await WebhookDispatcher(db_session, processor).dispatch(
            intent_event("payment_intent.payment_failed", "pi_test_1")
        )
        assert outcome == "no-op"
        donation = await reload(db_session, Donation, donation.id)
        assert donation.status == DonationStatus.FAILED


class TestExecutorConcurrency:
    """Test runs racing each other and the webhook."""

    @pytest.mark.asyncio
    async def test_concurrent_run_is_skipped(
        self, db_session: AsyncSession, session_factory, processor: FakeProcessor,
        sleep: RecordingSleep, scheduled_donation: ScheduledDonation
    ):
        """A second run started mid-charge finds the lock taken."""
        template_id = scheduled_donation.id
        second_runs = []

        async def start_second_run(call):
            processor.on_create = None
            async with session_factory() as other:
                second_runs.append(await execute_scheduled_donation(other, processor, template_id, sleep=sleep))

        processor.on_create = start_second_run
        donation = await execute_scheduled_donation(db_session, processor, template_id, sleep=sleep)

        assert second_runs == [None]
        assert donation.status == DonationStatus.PROCESSING
        assert len(processor.calls) == 1
        assert len(await list_donations_for_scheduled_donation(db_session, template_id)) == 1

    @pytest.mark.asyncio
    async def test_webhook_before_intent_recorded(
        self, db_session: AsyncSession, session_factory, processor: FakeProcessor,
        sleep: RecordingSleep, scheduled_donation: ScheduledDonation
    ):
        """A success event that beats the executor's intent write still settles the run once."""
        template_id = scheduled_donation.id

        async def deliver_success_first(call):
            processor.on_create = None
            async with session_factory() as other:
                event = intent_event(
                    "payment_intent.succeeded", "pi_test_1", metadata=call["metadata"]
                )
                assert await WebhookDispatcher(other, processor).dispatch(event) == "completed"

        processor.on_create = deliver_success_first
        donation = await execute_scheduled_donation(db_session, processor, template_id, sleep=sleep)

        assert donation.status == DonationStatus.COMPLETED
        assert donation.payment_intent_id == "pi_test_1"
        template = await reload(db_session, ScheduledDonation, template_id)
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.total_executions == 1


# ============================================================================
# BATCH RUNS AND LOCK RECOVERY
# ============================================================================

class TestRunDue:
    """Test the batch job over due templates."""

    @pytest.mark.asyncio
    async def test_counts(
        self, db_session: AsyncSession, session_factory, processor: FakeProcessor,
        sleep: RecordingSleep, test_donor: Donor, test_org: Organization
    ):
        now = datetime.now(timezone.utc)
        await make_template(db_session, test_donor, test_org)
        await make_template(db_session, test_donor, test_org, amount=Decimal("30.00"))
        await make_template(db_session, test_donor, test_org, next_run_at=now + timedelta(days=2))
        await make_template(db_session, test_donor, test_org, status=ExecutionLockStatus.PAUSED)
        processor.errors = [card_declined("do_not_honor", retryable=False)]

        result = await run_due_scheduled_donations(
            session_factory, processor, now=now, batch_size=1, sleep=sleep
        )
        assert result.processed == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert result.skipped == 0
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_nothing_due(self, session_factory, processor: FakeProcessor):
        result = await run_due_scheduled_donations(session_factory, processor)
        assert result.processed == 0
        assert processor.calls == []


class TestRecoverStaleLocks:
    """Test the stale lock sweep."""

    @pytest.mark.asyncio
    async def test_releases_only_stale_locks(
        self, db_session: AsyncSession, session_factory, test_donor: Donor, test_org: Organization
    ):
        now = datetime.now(timezone.utc)
        stale = await make_template(db_session, test_donor, test_org)
        fresh = await make_template(db_session, test_donor, test_org)
        assert await acquire_execution_lock(db_session, stale.id, now - timedelta(hours=2))
        assert await acquire_execution_lock(db_session, fresh.id, now - timedelta(minutes=5))

        result = await recover_stale_locks(session_factory, now=now, stale_minutes=30)
        assert result.processed == 1

        stale = await reload(db_session, ScheduledDonation, stale.id)
        fresh = await reload(db_session, ScheduledDonation, fresh.id)
        assert stale.status == ExecutionLockStatus.ACTIVE
        assert stale.last_failure_reason == "Execution lock expired"
        assert fresh.status == ExecutionLockStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_round_up_with_charged_batch_stays_locked(
        self, db_session: AsyncSession, session_factory, round_up_config: RoundUpConfig
    ):
        now = datetime.now(timezone.utc)
        await db_session.execute(
            update(RoundUpConfig)
            .where(RoundUpConfig.id == round_up_config.id)
            .values(status=RoundUpStatus.PROCESSING, locked_at=now - timedelta(hours=3))
        )
        await db_session.commit()
        await add_round_up(
            db_session, round_up_config, "txn_charged", "0.70", now,
            status=RoundUpTransactionStatus.PROCESSED,
        )

        result = await recover_stale_locks(session_factory, now=now, stale_minutes=30)
        assert result.processed == 0
        config = await reload(db_session, RoundUpConfig, round_up_config.id)
        assert config.status == RoundUpStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_round_up_without_charge_is_released(
        self, db_session: AsyncSession, session_factory, round_up_config: RoundUpConfig
    ):
        now = datetime.now(timezone.utc)
        await db_session.execute(
            update(RoundUpConfig)
            .where(RoundUpConfig.id == round_up_config.id)
            .values(status=RoundUpStatus.PROCESSING, locked_at=now - timedelta(hours=3))
        )
        await db_session.commit()

        result = await recover_stale_locks(session_factory, now=now, stale_minutes=30)
        assert result.processed == 1
        config = await reload(db_session, RoundUpConfig, round_up_config.id)
        assert config.status == RoundUpStatus.PENDING
        assert config.locked_at is None

    @pytest.mark.asyncio
    async def test_run_with_charge_in_flight_keeps_lock(
        self, db_session: AsyncSession, session_factory, processor: FakeProcessor,
        sleep: RecordingSleep, scheduled_donation: ScheduledDonation
    ):
        now = datetime.now(timezone.utc)
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, now=now - timedelta(hours=2), sleep=sleep
        )
        assert donation.status == DonationStatus.PROCESSING

        result = await recover_stale_locks(
            session_factory, processor=processor, now=now, stale_minutes=30
        )
        assert result.processed == 0
        assert result.skipped == 1

        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        assert template.status == ExecutionLockStatus.PROCESSING
        assert await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, sleep=sleep
        ) is None
        assert len(processor.calls) == 1

    @pytest.mark.asyncio
    async def test_undelivered_failure_is_settled_and_released(
        self, db_session: AsyncSession, session_factory, processor: FakeProcessor,
        sleep: RecordingSleep, scheduled_donation: ScheduledDonation
    ):
        now = datetime.now(timezone.utc)
        donation = await execute_scheduled_donation(
            db_session, processor, scheduled_donation.id, now=now - timedelta(hours=2), sleep=sleep
        )
        processor.fail_intent(donation.payment_intent_id, "Your card was declined.")

        result = await recover_stale_locks(
            session_factory, processor=processor, now=now, stale_minutes=30
        )
        assert result.skipped == 0

        donation = await reload(db_session, Donation, donation.id)
        assert donation.status == DonationStatus.FAILED
        assert donation.failure_reason == "Your card was declined."
        template = await reload(db_session, ScheduledDonation, scheduled_donation.id)
        assert template.status == ExecutionLockStatus.ACTIVE
        assert template.locked_at is None
