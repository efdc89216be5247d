"""
In-memory payment processor and webhook helpers for tests.
"""
import hashlib
import hmac
import json
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from charitypay.core.exceptions import ProcessorError
from charitypay.services.processor import PaymentIntentResult, verify_webhook_signature

WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessor:
    """
    PaymentProcessor double.

    ``errors`` are raised in order by create_payment_intent before an intent
    is created. ``on_create`` is awaited at the start of every create call and
    ``after_create`` is called with each new intent. ``refund_errors`` are
    raised in order by create_refund.
    The same idempotency key returns the same intent, like the real API.
    """

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self.webhook_secret = webhook_secret
        self.calls: list[dict[str, Any]] = []
        self.errors: list[ProcessorError] = []
        self.intents: dict[str, PaymentIntentResult] = {}
        self.by_key: dict[str, PaymentIntentResult] = {}
        self.refunds: list[dict[str, Any]] = []
        self.attached: list[tuple[str, str]] = []
        self.on_create: Optional[Callable[[dict[str, Any]], Awaitable[None]]] = None
        self.after_create: Optional[Callable[[PaymentIntentResult], None]] = None
        self.refund_errors: list[ProcessorError] = []

    @property
    def last_call(self) -> dict[str, Any]:
        return self.calls[-1]

    async def create_payment_intent(self, **kwargs) -> PaymentIntentResult:
        self.calls.append(kwargs)
        if self.on_create is not None:
            await self.on_create(kwargs)
        if self.errors:
            raise self.errors.pop(0)

        key = kwargs["idempotency_key"]
        if key in self.by_key:
            return self.by_key[key]
        number = len(self.intents) + 1
        intent = PaymentIntentResult(
            id=f"pi_test_{number}",
            status="processing" if kwargs.get("off_session") else "requires_payment_method",
            client_secret=f"pi_test_{number}_secret_abc",
            metadata=dict(kwargs.get("metadata") or {}),
        )
        self.intents[intent.id] = intent
        self.by_key[key] = intent
        if self.after_create is not None:
            self.after_create(intent)
        return intent

    def fail_intent(
        self,
        payment_intent_id: str,
        message: str = "Your card was declined.",
        status: str = "requires_payment_method",
    ) -> None:
        """Mark a stored intent as failed, as if the charge was declined after creation."""
        failed = replace(self.intents[payment_intent_id], status=status, failure_message=message)
        self.intents[payment_intent_id] = failed
        for key, intent in self.by_key.items():
            if intent.id == payment_intent_id:
                self.by_key[key] = failed

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentResult:
        return self.intents[payment_intent_id]

    async def create_refund(self, payment_intent_id: str, *, idempotency_key: str, reason: Optional[str] = None) -> str:
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        self.refunds.append({
            "payment_intent_id": payment_intent_id,
            "idempotency_key": idempotency_key,
            "reason": reason,
        })
        return f"re_test_{len(self.refunds)}"

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> str:
        self.attached.append((payment_method_id, customer_id))
        return payment_method_id

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        return verify_webhook_signature(payload, signature, self.webhook_secret)


def card_declined(decline_code: str = "insufficient_funds", retryable: bool = True) -> ProcessorError:
    return ProcessorError(
        "Your card was declined.",
        code="card_declined",
        decline_code=decline_code,
        retryable=retryable,
    )


def connection_error() -> ProcessorError:
    return ProcessorError(
        "Network error",
        code="api_connection_error",
        retryable=True,
        connection_error=True,
    )


def make_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_test_1") -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def intent_event(
    event_type: str,
    payment_intent_id: str,
    metadata: Optional[dict[str, str]] = None,
    **fields,
) -> dict[str, Any]:
    obj = {
        "id": payment_intent_id,
        "object": "payment_intent",
        "metadata": metadata or {},
        **fields,
    }
    return make_event(event_type, obj)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")
