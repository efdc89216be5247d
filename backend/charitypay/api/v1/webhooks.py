"""
Payment processor webhook endpoint.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.api.deps import get_processor
from charitypay.core.exceptions import WebhookSignatureError
from charitypay.db.base import get_db
from charitypay.schemas.webhook import WebhookAck
from charitypay.services.processor import PaymentProcessor
from charitypay.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
):
    """
    Receive a processor event.

    Responds 400 only when the signature does not verify. Handler failures
    are logged and still acknowledged; reconciliation sweeps pick them up.
    """
    payload = await request.body()
    dispatcher = WebhookDispatcher(db, processor)
    try:
        event = dispatcher.verify(payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    await dispatcher.dispatch(event)
    return WebhookAck(received=True)
