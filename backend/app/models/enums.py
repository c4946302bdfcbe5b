"""Enumeration types for the rental payments domain model."""

from enum import Enum


class RentalStatus(str, Enum):
    """Booking status of a rental."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REJECTED = "rejected"
    AUTO_CANCELLED = "auto_cancelled"
    NO_SHOW = "no_show"


# A late payment success must never move a rental out of these
TERMINAL_RENTAL_STATUSES = frozenset({
    RentalStatus.COMPLETED,
    RentalStatus.CANCELLED,
    RentalStatus.REJECTED,
    RentalStatus.NO_SHOW,
    RentalStatus.AUTO_CANCELLED,
})

# Lifecycle edges outside of payment events; pending -> confirmed only happens on payment
RENTAL_TRANSITIONS = {
    RentalStatus.PENDING: frozenset({
        RentalStatus.CANCELLED,
        RentalStatus.REJECTED,
        RentalStatus.NO_SHOW,
        RentalStatus.AUTO_CANCELLED,
    }),
    RentalStatus.CONFIRMED: frozenset({
        RentalStatus.COMPLETED,
        RentalStatus.CANCELLED,
        RentalStatus.REJECTED,
        RentalStatus.NO_SHOW,
        RentalStatus.AUTO_CANCELLED,
    }),
}

PAYOUT_ELIGIBLE_STATUSES = frozenset({
    RentalStatus.NO_SHOW,
    RentalStatus.CANCELLED,
})


class PaymentStatus(str, Enum):
    """Full-payment status of a rental."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentProvider(str, Enum):
    """Payment provider that owns a ledger record."""
    PAYMONGO = "paymongo"                # payment intents (card / e-wallet)
    PAYMONGO_SOURCE = "paymongo_source"  # GCash redirect sources
    PAYPAL = "paypal"                    # orders + captures


class PaymentOutcome(str, Enum):
    """Provider-independent outcome of a payment artifact."""
    PENDING = "pending"
    CHARGEABLE = "chargeable"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUPERSEDED = "superseded"


ACTIVE_OUTCOMES = frozenset({PaymentOutcome.PENDING, PaymentOutcome.CHARGEABLE})


class PayoutStatus(str, Enum):
    """Status of a deposit payout obligation."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class HistoryEventType(str, Enum):
    """Event types written to the booking history."""
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    DEPOSIT_PAID = "deposit_paid"
    DEPOSIT_FAILED = "deposit_failed"
    LATE_PAYMENT = "late_payment"
    DATES_BLOCKED = "dates_blocked"
    DEPOSIT_PAYOUT = "deposit_payout"
    STATUS_CHANGED = "status_changed"
    AUTO_CANCEL_OVERRIDE = "auto_cancel_override"


class UserRole(str, Enum):
    """Marketplace role of a user."""
    USER = "user"
    SHOP_OWNER = "shop_owner"
    ADMIN = "admin"


class JobStatus(str, Enum):
    """Status of a job in the outbox."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


class JobType(str, Enum):
    """Job types handled by the outbox worker."""
    RECORD_HISTORY = "record_history"
    RECONCILE_PAYMENT_EVENT = "reconcile_payment_event"
    OPERATOR_ALERT = "operator_alert"
