"""
CharityPay FastAPI Application - Main entry point.

Donation payments backend:

- Fee calculation (platform fee, GST, processor fee, donor gross-up)
- Processor webhooks driving the donation state machine
- Post-success pipeline (ledger, receipts, points, badges)
- Scheduled (recurring) donations and round-up batches as background jobs
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from charitypay.api.deps import get_processor
from charitypay.api.v1 import api_v1_router
from charitypay.api.v1.health import router as health_router
from charitypay.core.config import settings
from charitypay.core.logging import configure_logging
from charitypay.db.base import async_session_maker, init_db
from charitypay.services.scheduler import build_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    configure_logging()
    await init_db()
    app.state.scheduler = build_scheduler(async_session_maker, get_processor())
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler.start()
    yield
    await app.state.scheduler.stop()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Donation payments, recurring giving and round-ups.",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, prefix="/api", tags=["health"])
app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    if settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc)}
        )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "charitypay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
