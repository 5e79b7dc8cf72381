"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from billing_backend.app.api.v1.endpoints import (
    calls, gifts, wallet, notifications,
    admin_fraud, admin_chargebacks, admin_payouts, admin_ops
)

router = APIRouter()

# Viewer / streamer endpoints
router.include_router(calls.router)
router.include_router(gifts.router)
router.include_router(wallet.router)
router.include_router(notifications.router)

# Operator endpoints
router.include_router(admin_fraud.router)
router.include_router(admin_chargebacks.router)
router.include_router(admin_payouts.router)
router.include_router(admin_ops.router)
