"""
Post-success pipeline.

Runs once per donation, right after the webhook moved it to completed. Each
step commits on its own; a failing step is logged with the donation id and
step name, rolled back, and the remaining steps still run. Steps work from an
immutable snapshot because a rollback expires loaded ORM instances.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.models.donation import Donation, DonationType
from charitypay.services.collaborators import (
    BadgeCollaborator,
    LedgerCollaborator,
    PointsCollaborator,
    ReceiptCollaborator,
)
from charitypay.services.donations import breakdown_from_donation
from charitypay.services.fees import FeeBreakdown
from charitypay.services.ledger import LedgerService
from charitypay.services.receipts import ReceiptService
from charitypay.services.rewards import BadgeService, PointsService
from charitypay.services.round_ups import reconcile_round_up_success
from charitypay.services.scheduled_donations import advance_after_success

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CompletedDonation:
    """Snapshot of a completed donation handed to the pipeline steps."""
    id: str
    donor_id: str
    organization_id: str
    donation_type: DonationType
    currency: str
    breakdown: FeeBreakdown
    payment_intent_id: str
    charge_id: Optional[str]
    scheduled_donation_id: Optional[str]
    round_up_id: Optional[str]
    executed_at: datetime

    @property
    def net_amount(self) -> Decimal:
        return self.breakdown.net_to_org

    @property
    def base_amount(self) -> Decimal:
        return self.breakdown.base_amount

    @classmethod
    def from_model(cls, donation: Donation) -> "CompletedDonation":
        return cls(
            id=donation.id,
            donor_id=donation.donor_id,
            organization_id=donation.organization_id,
            donation_type=donation.donation_type,
            currency=donation.currency,
            breakdown=breakdown_from_donation(donation),
            payment_intent_id=donation.payment_intent_id,
            charge_id=donation.charge_id,
            scheduled_donation_id=donation.scheduled_donation_id,
            round_up_id=donation.round_up_id,
            # Charge creation time: recurring schedules advance from here
            executed_at=donation.created,
        )


Step = Callable[[CompletedDonation], Awaitable[Optional[bool]]]


class PostSuccessPipeline:
    """Ledger credit, schedule advance, round-up reconcile, receipt, points, badges."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        ledger: Optional[LedgerCollaborator] = None,
        receipts: Optional[ReceiptCollaborator] = None,
        points: Optional[PointsCollaborator] = None,
        badges: Optional[BadgeCollaborator] = None,
    ):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.receipts = receipts or ReceiptService(db)
        self.points = points or PointsService(db)
        self.badges = badges or BadgeService(db)

    @property
    def steps(self) -> List[Tuple[str, Step]]:
        return [
            ("ledger_credit", self._credit_ledger),
            ("advance_schedule", self._advance_schedule),
            ("reconcile_round_up", self._reconcile_round_up),
            ("receipt", self._generate_receipt),
            ("points", self._award_points),
            ("badges", self._evaluate_badges),
        ]

    async def run(self, donation: CompletedDonation) -> dict[str, StepOutcome]:
        outcomes: dict[str, StepOutcome] = {}
        for name, step in self.steps:
            try:
                applied = await step(donation)
                await self.db.commit()
            except Exception:
                logger.exception(f"Post-success step '{name}' failed for donation {donation.id}")
                await self.db.rollback()
                outcomes[name] = StepOutcome.FAILED
                continue
            outcomes[name] = StepOutcome.SKIPPED if applied is False else StepOutcome.OK
        failed = [name for name, outcome in outcomes.items() if outcome == StepOutcome.FAILED]
        if failed:
            logger.warning(f"Donation {donation.id} completed with failed side effects: {', '.join(failed)}")
        return outcomes

    async def _credit_ledger(self, donation: CompletedDonation):
        await self.ledger.append_credit(donation.organization_id, donation.net_amount, donation.id)

    async def _advance_schedule(self, donation: CompletedDonation):
        if donation.donation_type != DonationType.RECURRING or not donation.scheduled_donation_id:
            return False
        await advance_after_success(self.db, donation.scheduled_donation_id, donation.executed_at)

    async def _reconcile_round_up(self, donation: CompletedDonation):
        if donation.donation_type != DonationType.ROUND_UP or not donation.round_up_id:
            return False
        await reconcile_round_up_success(
            self.db,
            donation.round_up_id,
            donation_id=donation.id,
            payment_intent_id=donation.payment_intent_id,
            charge_id=donation.charge_id,
        )

    async def _generate_receipt(self, donation: CompletedDonation):
        await self.receipts.generate(
            donation.id,
            donation.donor_id,
            donation.organization_id,
            donation.breakdown,
        )

    async def _award_points(self, donation: CompletedDonation):
        points = await self.points.award(donation.donor_id, donation.id, donation.base_amount)
        await self.db.execute(
            update(Donation)
            .where(Donation.id == donation.id)
            .values(points_earned=points)
            .execution_options(synchronize_session=False)
        )

    async def _evaluate_badges(self, donation: CompletedDonation):
        await self.badges.evaluate(donation.donor_id, donation.id)
