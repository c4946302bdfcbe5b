"""API Routers for rental payments reconciliation."""

from app.routers.webhooks import router as webhooks_router
from app.routers.payments import router as payments_router
from app.routers.admin import router as admin_router

__all__ = [
    "webhooks_router",
    "payments_router",
    "admin_router",
]
