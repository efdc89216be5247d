"""
API v1 routers.

Routes will be: /api/v1/webhooks/stripe, /api/v1/donations/*, /api/v1/jobs/*
"""
from fastapi import APIRouter

from charitypay.api.v1.donations import router as donations_router
from charitypay.api.v1.jobs import router as jobs_router
from charitypay.api.v1.webhooks import router as webhooks_router

api_v1_router = APIRouter()

api_v1_router.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
api_v1_router.include_router(donations_router, prefix="/donations", tags=["donations"])
api_v1_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])

__all__ = [
    "api_v1_router",
]
