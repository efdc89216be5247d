"""
Payment processor gateway.

``PaymentProcessor`` is the interface the rest of the code depends on;
``StripeProcessor`` implements it with the stripe SDK. SDK calls are
blocking, so they run in a worker thread.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import stripe

from charitypay.core.config import settings
from charitypay.core.exceptions import ProcessorError, WebhookSignatureError

logger = logging.getLogger(__name__)

# Declines worth another attempt a little later
RETRYABLE_DECLINE_CODES = frozenset({
    "card_declined",
    "insufficient_funds",
    "processing_error",
    "try_again_later",
    "rate_limit",
})

# Declines that will never succeed with the same card
TERMINAL_DECLINE_CODES = frozenset({
    "stolen_card",
    "lost_card",
    "fraudulent",
    "pickup_card",
    "expired_card",
    "incorrect_cvc",
    "card_not_supported",
    "do_not_honor",
})

SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    status: str
    client_secret: Optional[str] = None
    latest_charge: Optional[str] = None
    failure_message: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        application_fee_cents: int,
        idempotency_key: str,
        metadata: dict[str, str],
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        off_session: bool = False,
        description: Optional[str] = None,
    ) -> PaymentIntentResult:
        ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        ...

    async def create_refund(
        self,
        payment_intent_id: str,
        *,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> str:
        ...

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> str:
        ...

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        ...


def verify_webhook_signature(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
) -> dict[str, Any]:
    """
    Verify a Stripe-Signature header and return the decoded event.

    Raises WebhookSignatureError for a missing/invalid signature or a body
    that is not JSON.
    """
    if not signature:
        raise WebhookSignatureError("Missing signature header")
    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
        event = json.loads(body)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(f"Invalid signature: {exc}") from exc
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebhookSignatureError(f"Invalid payload: {exc}") from exc
    if not isinstance(event, dict) or "type" not in event:
        raise WebhookSignatureError("Invalid payload: not an event")
    return event


def classify_stripe_error(exc: stripe.StripeError) -> ProcessorError:
    """Map a stripe SDK error to a ProcessorError with retry semantics."""
    code = getattr(exc, "code", None)
    error = getattr(exc, "error", None)
    decline_code = getattr(error, "decline_code", None) if error is not None else None
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__

    if isinstance(exc, stripe.CardError):
        reason = decline_code or code
        retryable = reason in RETRYABLE_DECLINE_CODES and reason not in TERMINAL_DECLINE_CODES
        return ProcessorError(message, code=code, decline_code=decline_code, retryable=retryable)
    if isinstance(exc, stripe.APIConnectionError):
        return ProcessorError(
            message, code="api_connection_error", retryable=True, connection_error=True
        )
    if isinstance(exc, stripe.RateLimitError):
        return ProcessorError(message, code=code or "rate_limit", retryable=True)
    if isinstance(exc, stripe.APIError):
        # 5xx from the processor: the request may or may not have been applied
        return ProcessorError(
            message, code=code or "api_error", retryable=True, connection_error=True
        )
    return ProcessorError(message, code=code, decline_code=decline_code, retryable=False)


def _to_result(intent: Any) -> PaymentIntentResult:
    latest_charge = getattr(intent, "latest_charge", None)
    if latest_charge is not None and not isinstance(latest_charge, str):
        latest_charge = getattr(latest_charge, "id", None)
    metadata = getattr(intent, "metadata", None) or {}
    error = getattr(intent, "last_payment_error", None)
    failure_message = getattr(error, "message", None) if error else None
    return PaymentIntentResult(
        id=intent.id,
        status=intent.status,
        client_secret=getattr(intent, "client_secret", None),
        latest_charge=latest_charge,
        failure_message=failure_message or getattr(intent, "cancellation_reason", None),
        metadata={k: str(v) for k, v in dict(metadata).items()},
    )


class StripeProcessor:
    """Stripe Connect implementation of PaymentProcessor (destination charges)."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        max_network_retries: int = 2,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.max_network_retries = max_network_retries

    async def _call(self, fn, **params):
        try:
            return await asyncio.to_thread(fn, api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            error = classify_stripe_error(exc)
            logger.warning(f"Stripe call {fn.__qualname__} failed: {error}")
            raise error from exc

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        application_fee_cents: int,
        idempotency_key: str,
        metadata: dict[str, str],
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        off_session: bool = False,
        description: Optional[str] = None,
    ) -> PaymentIntentResult:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "application_fee_amount": application_fee_cents,
            "transfer_data": {"destination": destination_account_id},
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if description:
            params["description"] = description
        if customer_id:
            params["customer"] = customer_id
        if off_session:
            params["payment_method"] = payment_method_id
            params["off_session"] = True
            params["confirm"] = True
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        intent = await self._call(stripe.PaymentIntent.create, **params)
        return _to_result(intent)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        intent = await self._call(stripe.PaymentIntent.retrieve, id=payment_intent_id)
        return _to_result(intent)

    async def create_refund(
        self,
        payment_intent_id: str,
        *,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> str:
        params: dict[str, Any] = {
            "payment_intent": payment_intent_id,
            # Pull the transferred funds back from the connected account
            "reverse_transfer": True,
            "refund_application_fee": True,
            "idempotency_key": idempotency_key,
        }
        if reason:
            params["metadata"] = {"reason": reason}
        refund = await self._call(stripe.Refund.create, **params)
        return refund.id

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> str:
        """Save a payment method on the customer for off-session charges."""
        method = await self._call(
            stripe.PaymentMethod.attach, payment_method=payment_method_id, customer=customer_id
        )
        return method.id

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        return verify_webhook_signature(payload, signature, self.webhook_secret)


def build_stripe_processor() -> StripeProcessor:
    return StripeProcessor(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
    )
