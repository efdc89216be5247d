"""
Health check endpoints.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from charitypay.core.config import settings
from charitypay.db.base import get_db
from charitypay.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """Liveness plus a round trip to the donation store."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check could not reach the database: {e}")
        return HealthResponse(code=503, message="Database unavailable.", environment=settings.APP_ENV, database=False)
    return HealthResponse(environment=settings.APP_ENV)
