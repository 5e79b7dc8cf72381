"""
FastAPI Application Entry Point.

This is the main application file for the Billing & Wallet Ledger backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from billing_backend.app.core.config import settings
from billing_backend.app.api.v1.router import router as api_v1_router
from billing_backend.app.db.session import engine, init_models
from billing_backend.app.core.redis_client import ping_redis, close_redis
from billing_backend.app.core.observability import ObservabilityMiddleware, configure_logging
from billing_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from billing_backend.app.models.user import User
from billing_backend.app.models.account import Account
from billing_backend.app.models.scheduled_payment import ScheduledPayment  # before ledger entries for FK
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.call import Call
from billing_backend.app.models.gift import GiftCatalogItem, GiftTransaction
from billing_backend.app.models.fraud_flag import FraudFlag
from billing_backend.app.models.chargeback import Chargeback
from billing_backend.app.models.outbox import OutboxEvent
from billing_backend.app.models.audit_log import AuditLog
from billing_backend.app.models.notification import Notification
from billing_backend.app.models.dlq import DeadLetterQueue

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Closes Redis and disposes the engine pool on shutdown.
    """
    await init_models()
    yield
    await close_redis()
    await engine.dispose()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Metered billing, wallet ledger, fraud signals, chargebacks and D+30 payouts",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and Redis reachability
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if await ping_redis() else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Billing & Wallet Ledger API",
        "docs": "/docs",
        "health": "/health",
    }
