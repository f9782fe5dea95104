"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import (
    orders,
    payments,
    shipments,
    webhooks,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    app.include_router(shipments.router, prefix="/api/shipping", tags=["shipping"])
    app.include_router(payments.router, prefix="/api/payment", tags=["payment"])
    app.include_router(orders.router, prefix="/api/orders", tags=["orders"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    logger.info("Routes registered (shipping provider=%s)", settings.SHIPPING_PROVIDER)
