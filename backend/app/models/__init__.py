"""SQLAlchemy models for the rental payments reconciliation service."""

from app.models.user import User, Shop
from app.models.rental import Rental
from app.models.payment import PaymentRecord, ProcessedWebhookEvent
from app.models.booking_history import BookingHistoryEntry, BlockedDate
from app.models.payout import Payout
from app.models.jobs import JobsOutbox

__all__ = [
    "User",
    "Shop",
    "Rental",
    "PaymentRecord",
    "ProcessedWebhookEvent",
    "BookingHistoryEntry",
    "BlockedDate",
    "Payout",
    "JobsOutbox",
]
