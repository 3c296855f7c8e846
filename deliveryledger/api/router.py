"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from deliveryledger.api.webhooks import router as webhooks_router
from deliveryledger.api.delivery_reports import router as delivery_router
from deliveryledger.api.reconciliation import router as reconciliation_router
from deliveryledger.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(delivery_router)
api_router.include_router(reconciliation_router)
api_router.include_router(health_router)
