"""Services for rental payments reconciliation."""

from app.services.adapters import PaymentEvent, PayMongoAdapter, GCashSourceAdapter, PayPalAdapter
from app.services.booking_state import BookingStateMachine
from app.services.history import HistoryRecorder
from app.services.idempotency import IdempotencyGuard
from app.services.inventory import InventoryBlocker
from app.services.jobs import JobsService
from app.services.ledger import PaymentLedger
from app.services.payouts import DepositPayoutManager
from app.services.reconciliation import PaymentReconciler, get_reconciler

__all__ = [
    "PaymentEvent",
    "PayMongoAdapter",
    "GCashSourceAdapter",
    "PayPalAdapter",
    "BookingStateMachine",
    "HistoryRecorder",
    "IdempotencyGuard",
    "InventoryBlocker",
    "JobsService",
    "PaymentLedger",
    "DepositPayoutManager",
    "PaymentReconciler",
    "get_reconciler",
]
