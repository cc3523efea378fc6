"""API v1 router aggregation."""

from fastapi import APIRouter

from x402_settlement_service.api.v1 import admin, payment_intents

router = APIRouter()

# Include all v1 routers
router.include_router(payment_intents.router, prefix="/payment_intents", tags=["payment_intents"])
router.include_router(admin.router, prefix="/admin", tags=["admin"])
