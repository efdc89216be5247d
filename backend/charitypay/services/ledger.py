"""
Organization ledger service.

Keeps per-organization balances and an append-only list of balance
transactions. Balance columns are only ever changed with in-database
arithmetic (``col = col + :amount``) so concurrent webhooks cannot lose
updates. Nothing here commits; callers own the transaction boundary.
"""
import logging
import secrets
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from charitypay.core.config import settings
from charitypay.models.base import utcnow
from charitypay.models.balance import (
    BalanceEntryCategory,
    BalanceEntryType,
    BalanceTransaction,
    OrganizationBalance,
)
from charitypay.models.donation import Donation, DonationType
from charitypay.models.payout import Payout, PayoutStatus
from charitypay.services.fees import ZERO, round2
from charitypay.services.job_tracker import JobResult

logger = logging.getLogger(__name__)

PENDING_COLUMN_BY_TYPE = {
    DonationType.ONE_TIME: OrganizationBalance.pending_one_time,
    DonationType.RECURRING: OrganizationBalance.pending_recurring,
    DonationType.ROUND_UP: OrganizationBalance.pending_round_up,
}

AVAILABLE_COLUMN_BY_TYPE = {
    DonationType.ONE_TIME: OrganizationBalance.available_one_time,
    DonationType.RECURRING: OrganizationBalance.available_recurring,
    DonationType.ROUND_UP: OrganizationBalance.available_round_up,
}


def _floored_subtract(column, amount: Decimal):
    """``column - amount`` but never below zero."""
    return case((column - amount < 0, ZERO), else_=column - amount)


class LedgerService:
    """DB-backed ledger for organization balances and payouts."""

    def __init__(self, db: AsyncSession, clearing_days: Optional[int] = None):
        self.db = db
        self.clearing_days = clearing_days if clearing_days is not None else settings.LEDGER_CLEARING_DAYS

    async def get_balance(self, organization_id: str) -> Optional[OrganizationBalance]:
        result = await self.db.execute(
            select(OrganizationBalance)
            .where(OrganizationBalance.organization_id == organization_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_balance(self, organization_id: str) -> OrganizationBalance:
        balance = await self.get_balance(organization_id)
        if balance is None:
            balance = OrganizationBalance(
                organization_id=organization_id,
                clearing_period_days=self.clearing_days,
            )
            self.db.add(balance)
            await self.db.flush()
            logger.info(f"Created balance record for organization {organization_id}")
        return balance

    async def _existing_entry(self, idempotency_key: str) -> Optional[BalanceTransaction]:
        result = await self.db.execute(
            select(BalanceTransaction).where(BalanceTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def _record_entry(
        self,
        organization_id: str,
        entry_type: BalanceEntryType,
        category: BalanceEntryCategory,
        amount: Decimal,
        idempotency_key: str,
        **fields,
    ) -> BalanceTransaction:
        balance = await self.get_balance(organization_id)
        entry = BalanceTransaction(
            organization_id=organization_id,
            entry_type=entry_type,
            category=category,
            amount=amount,
            pending_after=balance.pending_balance,
            available_after=balance.available_balance,
            reserved_after=balance.reserved_balance,
            idempotency_key=idempotency_key,
            **fields,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def append_credit(
        self,
        organization_id: str,
        amount: Decimal,
        donation_id: str,
    ) -> Optional[BalanceTransaction]:
        """Credit a completed donation's net amount to the pending balance (once)."""
        key = f"credit_{donation_id}"
        existing = await self._existing_entry(key)
        if existing is not None:
            logger.info(f"Ledger credit for donation {donation_id} already recorded")
            return existing

        amount = round2(amount)
        donation = await self.db.get(Donation, donation_id)
        donation_type = donation.donation_type if donation else DonationType.ONE_TIME
        pending_by_type = PENDING_COLUMN_BY_TYPE[donation_type]

        await self.get_or_create_balance(organization_id)
        await self.db.execute(
            update(OrganizationBalance)
            .where(OrganizationBalance.organization_id == organization_id)
            .values({
                OrganizationBalance.pending_balance: OrganizationBalance.pending_balance + amount,
                OrganizationBalance.lifetime_earnings: OrganizationBalance.lifetime_earnings + amount,
                pending_by_type: pending_by_type + amount,
                OrganizationBalance.last_transaction_at: utcnow(),
            })
            .execution_options(synchronize_session=False)
        )
        entry = await self._record_entry(
            organization_id,
            BalanceEntryType.CREDIT,
            BalanceEntryCategory.DONATION_RECEIVED,
            amount,
            key,
            donation_id=donation_id,
            donation_type=donation_type,
            description=f"{donation_type.value} donation received",
        )
        logger.info(f"Credited {amount} to organization {organization_id} for donation {donation_id}")
        return entry

    async def append_debit(
        self,
        organization_id: str,
        amount: Decimal,
        donation_id: str,
    ) -> Optional[BalanceTransaction]:
        """
        Debit a refunded donation's net amount (once).

        A credit the clearing job has not moved yet comes out of the pending
        balance and is marked cleared so the job never moves it; a cleared one
        comes out of the available balance. Claiming the credit is a single
        conditional UPDATE, so a refund racing the clearing job debits exactly
        one side.
        """
        key = f"refund_{donation_id}"
        existing = await self._existing_entry(key)
        if existing is not None:
            logger.info(f"Ledger debit for donation {donation_id} already recorded")
            return existing

        amount = round2(amount)
        donation = await self.db.get(Donation, donation_id)
        claimed = await self.db.execute(
            update(BalanceTransaction)
            .where(
                BalanceTransaction.idempotency_key == f"credit_{donation_id}",
                BalanceTransaction.cleared_at.is_(None),
            )
            .values(cleared_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        still_clearing = bool(claimed.rowcount)
        values = {
            OrganizationBalance.lifetime_refunded: OrganizationBalance.lifetime_refunded + amount,
            OrganizationBalance.last_transaction_at: utcnow(),
        }
        if still_clearing:
            values[OrganizationBalance.pending_balance] = _floored_subtract(
                OrganizationBalance.pending_balance, amount
            )
            if donation is not None:
                pending_by_type = PENDING_COLUMN_BY_TYPE[donation.donation_type]
                values[pending_by_type] = _floored_subtract(pending_by_type, amount)
        else:
            values[OrganizationBalance.available_balance] = _floored_subtract(
                OrganizationBalance.available_balance, amount
            )
            if donation is not None:
                available_by_type = AVAILABLE_COLUMN_BY_TYPE[donation.donation_type]
                values[available_by_type] = _floored_subtract(available_by_type, amount)

        await self.get_or_create_balance(organization_id)
        await self.db.execute(
            update(OrganizationBalance)
            .where(OrganizationBalance.organization_id == organization_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        entry = await self._record_entry(
            organization_id,
            BalanceEntryType.DEBIT,
            BalanceEntryCategory.REFUND,
            amount,
            key,
            donation_id=donation_id,
            donation_type=donation.donation_type if donation else None,
            description="Donation refunded",
        )
        logger.info(f"Debited {amount} from organization {organization_id} for refunded donation {donation_id}")
        return entry

    async def clear_pending_balance(
        self,
        organization_id: str,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """
        Move donation credits older than the clearing period from pending to
        available, per donation type, with one ledger entry for the lot.

        Returns the amount moved. Credits are claimed with a conditional
        UPDATE, so overlapping runs never move the same credit twice. Caller
        commits.
        """
        balance = await self.get_balance(organization_id)
        if balance is None:
            return ZERO
        now = now or utcnow()
        cutoff = now - timedelta(days=balance.clearing_period_days)
        claimed = await self.db.execute(
            update(BalanceTransaction)
            .where(
                BalanceTransaction.organization_id == organization_id,
                BalanceTransaction.category == BalanceEntryCategory.DONATION_RECEIVED,
                BalanceTransaction.cleared_at.is_(None),
                BalanceTransaction.created <= cutoff,
            )
            .values(cleared_at=now)
            .returning(BalanceTransaction.amount, BalanceTransaction.donation_type)
            .execution_options(synchronize_session=False)
        )
        rows = claimed.all()
        if not rows:
            return ZERO

        by_type: dict[DonationType, Decimal] = defaultdict(lambda: ZERO)
        for amount, donation_type in rows:
            by_type[donation_type or DonationType.ONE_TIME] += amount
        total = round2(sum(by_type.values(), ZERO))

        values = {
            OrganizationBalance.pending_balance: _floored_subtract(OrganizationBalance.pending_balance, total),
            OrganizationBalance.available_balance: OrganizationBalance.available_balance + total,
            OrganizationBalance.last_transaction_at: now,
        }
        for donation_type, amount in by_type.items():
            pending_by_type = PENDING_COLUMN_BY_TYPE[donation_type]
            available_by_type = AVAILABLE_COLUMN_BY_TYPE[donation_type]
            values[pending_by_type] = _floored_subtract(pending_by_type, round2(amount))
            values[available_by_type] = available_by_type + round2(amount)
        await self.db.execute(
            update(OrganizationBalance)
            .where(OrganizationBalance.organization_id == organization_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        await self._record_entry(
            organization_id,
            BalanceEntryType.CREDIT,
            BalanceEntryCategory.DONATION_CLEARED,
            total,
            f"cleared_{organization_id}_{secrets.token_hex(6)}",
            description=f"Cleared {len(rows)} donation(s) older than {balance.clearing_period_days} days",
        )
        logger.info(f"Cleared {total} for organization {organization_id} ({len(rows)} donation(s))")
        return total

    async def get_payout(self, stripe_payout_id: str) -> Optional[Payout]:
        result = await self.db.execute(
            select(Payout)
            .where(Payout.stripe_payout_id == stripe_payout_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_payout_paid(self, stripe_payout_id: str) -> Optional[Payout]:
        result = await self.db.execute(
            update(Payout)
            .where(
                Payout.stripe_payout_id == stripe_payout_id,
                Payout.status.in_([PayoutStatus.PENDING, PayoutStatus.PROCESSING]),
            )
            .values(status=PayoutStatus.COMPLETED, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(f"Payout {stripe_payout_id} unknown or already settled; nothing to mark paid")
            return None
        return await self.get_payout(stripe_payout_id)

    async def reverse_failed_payout(self, stripe_payout_id: str, reason: Optional[str]) -> Optional[Payout]:
        """
        Return a failed payout's funds to the available balance.

        The status flip, balance restore and ledger entry must be committed
        together by the caller; the status precondition makes a redelivered
        event a no-op.
        """
        payout = await self.get_payout(stripe_payout_id)
        if payout is None:
            logger.warning(f"payout.failed for unknown payout {stripe_payout_id}")
            return None

        result = await self.db.execute(
            update(Payout)
            .where(Payout.id == payout.id, Payout.status != PayoutStatus.FAILED)
            .values(status=PayoutStatus.FAILED, failure_reason=reason, failed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(f"Payout {stripe_payout_id} already reversed")
            return None

        net = payout.net_amount
        await self.get_or_create_balance(payout.organization_id)
        await self.db.execute(
            update(OrganizationBalance)
            .where(OrganizationBalance.organization_id == payout.organization_id)
            .values({
                OrganizationBalance.available_balance: OrganizationBalance.available_balance + net,
                OrganizationBalance.lifetime_paid_out: _floored_subtract(
                    OrganizationBalance.lifetime_paid_out, net
                ),
                OrganizationBalance.last_transaction_at: utcnow(),
            })
            .execution_options(synchronize_session=False)
        )
        await self._record_entry(
            payout.organization_id,
            BalanceEntryType.CREDIT,
            BalanceEntryCategory.PAYOUT_FAILED,
            net,
            f"payout_failed_{payout.id}",
            payout_id=payout.id,
            description=f"Payout {payout.payout_number} failed: {reason or 'unknown reason'}",
        )
        logger.warning(f"Reversed failed payout {payout.payout_number}: {net} returned to available balance")
        return await self.get_payout(stripe_payout_id)


async def clear_pending_balances(
    session_factory: async_sessionmaker,
    *,
    now: Optional[datetime] = None,
) -> JobResult:
    """Run the clearing step for every organization with a pending balance, one transaction each."""
    now = now or utcnow()
    async with session_factory() as db:
        result = await db.execute(
            select(OrganizationBalance.organization_id).where(OrganizationBalance.pending_balance > 0)
        )
        organization_ids = list(result.scalars().all())

    job_result = JobResult()
    for organization_id in organization_ids:
        job_result.processed += 1
        async with session_factory() as db:
            try:
                cleared = await LedgerService(db).clear_pending_balance(organization_id, now)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                logger.exception(f"Balance clearing failed for organization {organization_id}")
                job_result.record_error(organization_id, exc)
                continue
        if cleared:
            job_result.succeeded += 1
        else:
            job_result.skipped += 1
    return job_result
