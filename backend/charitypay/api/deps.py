"""
Shared API dependencies.
"""
from functools import lru_cache

from fastapi import HTTPException, Request, status

from charitypay.services.processor import PaymentProcessor, build_stripe_processor
from charitypay.services.scheduler import BackgroundScheduler


@lru_cache()
def get_processor() -> PaymentProcessor:
    """Process-wide payment processor client."""
    return build_stripe_processor()


def get_scheduler(request: Request) -> BackgroundScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Background scheduler is not configured"
        )
    return scheduler
