"""Payment ledger models: provider payment artifacts and processed webhook events."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Any

from sqlalchemy import Boolean, String, DateTime, ForeignKey, Numeric, Text, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base, JSONType
from app.models.enums import PaymentProvider, PaymentOutcome, ACTIVE_OUTCOMES

if TYPE_CHECKING:
    from app.models.rental import Rental


class PaymentRecord(Base):
    """One provider-side payment artifact (intent, source or order).

    A ledger row, not a state machine: every corroborated event overwrites
    ``provider_status``/``outcome``. ``active_key`` is only set while the
    attempt is still open, and its UNIQUE constraint is what keeps a rental
    to one open deposit attempt and one open full-payment attempt.
    """

    __tablename__ = "payment_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    rental_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("rentals.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    provider: Mapped[PaymentProvider] = mapped_column(SQLEnum(PaymentProvider), nullable=False)
    # pi_... / src_... / PayPal order id
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="PHP", nullable=False)
    is_deposit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    provider_status: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[PaymentOutcome] = mapped_column(
        SQLEnum(PaymentOutcome),
        default=PaymentOutcome.PENDING,
        nullable=False,
        index=True,
    )

    # Flat string -> string (PayMongo rejects nested metadata)
    flat_metadata: Mapped[dict[str, str]] = mapped_column("metadata", JSONType, default=dict, nullable=False)
    # Raw provider events seen for this artifact, newest last
    event_log: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)

    client_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # PayMongo payment created from a chargeable source
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # PayPal capture id
    capture_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # "{rental_id}:deposit" / "{rental_id}:full" while open, NULL once terminal
    active_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    rental: Mapped["Rental"] = relationship("Rental")

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_payment_records_provider_external_id"),
    )

    @staticmethod
    def make_active_key(rental_id: uuid.UUID, is_deposit: bool) -> str:
        return f"{rental_id}:{'deposit' if is_deposit else 'full'}"

    @property
    def is_active(self) -> bool:
        return self.outcome in ACTIVE_OUTCOMES


class ProcessedWebhookEvent(Base):
    """Idempotency key store: one row per event that changed (or tried to change) state."""

    __tablename__ = "processed_webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    # "{provider}:{external_id}:{outcome}[:{capture_id}]"
    event_key: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    provider: Mapped[PaymentProvider] = mapped_column(SQLEnum(PaymentProvider), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    outcome: Mapped[PaymentOutcome] = mapped_column(SQLEnum(PaymentOutcome), nullable=False)

    # Acknowledgement returned for the first delivery, replayed for duplicates
    response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
