"""
Processor webhook dispatcher.

Every handler is safe to run any number of times for the same event: state
changes are conditional UPDATEs keyed on the current status, and side
effects only run when this delivery actually performed the transition.
Handler errors are logged and never propagate, so the processor always gets
an acknowledgement once the signature checks out.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.models.base import utcnow
from charitypay.models.donation import (
    IN_FLIGHT_STATUSES,
    REFUNDABLE_STATUSES,
    Donation,
    DonationStatus,
    DonationType,
)
from charitypay.models.organization import AccountStatus, Organization
from charitypay.services.donations import transition_donation
from charitypay.services.ledger import LedgerService
from charitypay.services.pipeline import CompletedDonation, PostSuccessPipeline
from charitypay.services.processor import PaymentProcessor
from charitypay.services.round_ups import reconcile_round_up_failure
from charitypay.services.scheduled_donations import release_execution_lock

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Optional[str]]]


def _metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    return obj.get("metadata") or {}


def _failure_message(intent: Dict[str, Any], default: str) -> str:
    error = intent.get("last_payment_error") or {}
    message = error.get("message")
    code = error.get("decline_code") or error.get("code")
    if message and code:
        return f"{message} ({code})"
    return message or code or intent.get("cancellation_reason") or default


def _fallback_donation_id(obj: Dict[str, Any], allow_recurring: bool = True) -> Optional[str]:
    """
    Donation id from metadata for events that may beat the intent id write.

    A recurring run's donation stays with the executor until it records the
    intent id itself (its retries can produce declines for earlier intents),
    so failure events for it only match by intent id. The executor reads the
    winning intent back once recorded and settles a failure it missed.
    """
    metadata = _metadata(obj)
    if not allow_recurring and metadata.get("scheduledDonationId"):
        return None
    return metadata.get("donationId")


class WebhookDispatcher:
    """Routes verified processor events to idempotent handlers."""

    def __init__(
        self,
        db: AsyncSession,
        processor: PaymentProcessor,
        *,
        pipeline: Optional[PostSuccessPipeline] = None,
        ledger: Optional[LedgerService] = None,
    ):
        self.db = db
        self.processor = processor
        self.pipeline = pipeline or PostSuccessPipeline(db)
        self.ledger = ledger or LedgerService(db)
        self.handlers: Dict[str, Handler] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "payment_intent.processing": self.handle_payment_processing,
            "payment_intent.succeeded": self.handle_payment_succeeded,
            "payment_intent.payment_failed": self.handle_payment_failed,
            "payment_intent.canceled": self.handle_payment_canceled,
            "charge.refunded": self.handle_charge_refunded,
            "payout.paid": self.handle_payout_paid,
            "payout.failed": self.handle_payout_failed,
            "account.updated": self.handle_account_updated,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Raises WebhookSignatureError; nothing has been touched at that point."""
        return self.processor.construct_event(payload, signature)

    async def dispatch(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Run the handler for a verified event.

        Returns a short outcome string (for logs and tests). Never raises.
        """
        event_type = event.get("type", "")
        event_id = event.get("id", "unknown")
        obj = (event.get("data") or {}).get("object") or {}
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event {event_type} ({event_id})")
            return "ignored"

        try:
            outcome = await handler(obj)
            await self.db.commit()
        except Exception:
            logger.exception(f"Webhook handler for {event_type} ({event_id}) failed")
            await self.db.rollback()
            return "error"
        logger.info(f"Webhook {event_type} ({event_id}): {outcome}")
        return outcome

    async def _isolated(self, description: str, action: Callable[[], Awaitable[Any]]) -> bool:
        """Run a follow-up side effect in its own transaction."""
        try:
            await action()
            await self.db.commit()
            return True
        except Exception:
            logger.exception(f"Webhook side effect failed: {description}")
            await self.db.rollback()
            return False

    # -------------------------------------------------------------------------
    # Payment lifecycle
    # -------------------------------------------------------------------------

    async def _mark_started(self, payment_intent_id: Optional[str], donation_id: Optional[str]) -> str:
        if not payment_intent_id:
            return "no payment intent"
        donation = await transition_donation(
            self.db,
            payment_intent_id=payment_intent_id,
            donation_id=donation_id,
            from_statuses=[DonationStatus.PENDING],
            values={"status": DonationStatus.PROCESSING, "last_payment_attempt_at": utcnow()},
        )
        return "processing" if donation else "no-op"

    async def handle_checkout_completed(self, session: Dict[str, Any]) -> str:
        return await self._mark_started(session.get("payment_intent"), _fallback_donation_id(session))

    async def handle_payment_processing(self, intent: Dict[str, Any]) -> str:
        return await self._mark_started(intent.get("id"), _fallback_donation_id(intent))

    async def handle_payment_succeeded(self, intent: Dict[str, Any]) -> str:
        payment_intent_id = intent["id"]
        values: Dict[str, Any] = {
            "status": DonationStatus.COMPLETED,
            "charge_id": intent.get("latest_charge"),
            "donated_at": utcnow(),
            "failure_reason": None,
        }
        donation = await transition_donation(
            self.db,
            payment_intent_id=payment_intent_id,
            donation_id=_fallback_donation_id(intent),
            from_statuses=IN_FLIGHT_STATUSES,
            values=values,
        )
        if donation is None:
            return "no-op"

        snapshot = CompletedDonation.from_model(donation)
        # The completed status must be durable before any side effect runs
        await self.db.commit()
        await self.pipeline.run(snapshot)
        return "completed"

    async def _settle_unsuccessful(
        self,
        intent: Dict[str, Any],
        status: DonationStatus,
        reason: str,
    ) -> Optional[Donation]:
        donation = await transition_donation(
            self.db,
            payment_intent_id=intent["id"],
            donation_id=_fallback_donation_id(intent, allow_recurring=False),
            from_statuses=IN_FLIGHT_STATUSES,
            values={
                "status": status,
                "failure_reason": reason,
                "payment_attempts": Donation.payment_attempts + 1,
                "last_payment_attempt_at": utcnow(),
            },
        )
        if donation is None:
            return None

        donation_id = donation.id
        donation_type = donation.donation_type
        scheduled_donation_id = donation.scheduled_donation_id
        round_up_id = donation.round_up_id
        await self.db.commit()

        if donation_type == DonationType.RECURRING and scheduled_donation_id:
            await self._isolated(
                f"release lock on scheduled donation {scheduled_donation_id}",
                lambda: release_execution_lock(self.db, scheduled_donation_id, reason),
            )
        elif donation_type == DonationType.ROUND_UP and round_up_id:
            await self._isolated(
                f"restore round-up batch {round_up_id} for donation {donation_id}",
                lambda: reconcile_round_up_failure(
                    self.db, round_up_id, payment_intent_id=intent["id"], reason=reason
                ),
            )
        return donation

    async def handle_payment_failed(self, intent: Dict[str, Any]) -> str:
        reason = _failure_message(intent, "Payment failed")
        donation = await self._settle_unsuccessful(intent, DonationStatus.FAILED, reason)
        return "failed" if donation else "no-op"

    async def handle_payment_canceled(self, intent: Dict[str, Any]) -> str:
        reason = _failure_message(intent, "Payment canceled")
        donation = await self._settle_unsuccessful(intent, DonationStatus.CANCELED, reason)
        return "canceled" if donation else "no-op"

    async def handle_charge_refunded(self, charge: Dict[str, Any]) -> str:
        payment_intent_id = charge.get("payment_intent")
        if not payment_intent_id:
            return "no payment intent"
        donation = await transition_donation(
            self.db,
            payment_intent_id=payment_intent_id,
            donation_id=_fallback_donation_id(charge),
            from_statuses=REFUNDABLE_STATUSES,
            values={"status": DonationStatus.REFUNDED, "refunded_at": utcnow()},
        )
        if donation is None:
            return "no-op"

        organization_id = donation.organization_id
        donation_id = donation.id
        net_amount = donation.net_amount
        await self.db.commit()
        await self._isolated(
            f"ledger debit for refunded donation {donation_id}",
            lambda: self.ledger.append_debit(organization_id, net_amount, donation_id),
        )
        return "refunded"

    # -------------------------------------------------------------------------
    # Payouts and connected accounts
    # -------------------------------------------------------------------------

    async def handle_payout_paid(self, payout: Dict[str, Any]) -> str:
        record = await self.ledger.mark_payout_paid(payout["id"])
        return "paid" if record else "no-op"

    async def handle_payout_failed(self, payout: Dict[str, Any]) -> str:
        # Status flip, balance restore and ledger entry commit together in dispatch()
        reason = payout.get("failure_message") or payout.get("failure_code")
        record = await self.ledger.reverse_failed_payout(payout["id"], reason)
        return "reversed" if record else "no-op"

    async def handle_account_updated(self, account: Dict[str, Any]) -> str:
        charges_enabled = bool(account.get("charges_enabled"))
        payouts_enabled = bool(account.get("payouts_enabled"))
        requirements = account.get("requirements") or {}
        if charges_enabled and payouts_enabled:
            status = AccountStatus.ACTIVE
        elif requirements.get("disabled_reason"):
            status = AccountStatus.RESTRICTED
        else:
            status = AccountStatus.PENDING

        result = await self.db.execute(
            update(Organization)
            .where(Organization.stripe_connect_account_id == account["id"])
            .values(
                stripe_account_status=status,
                charges_enabled=charges_enabled,
                payouts_enabled=payouts_enabled,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            logger.warning(f"account.updated for unknown connected account {account['id']}")
            return "no-op"
        return status.value
