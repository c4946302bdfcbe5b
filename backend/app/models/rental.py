"""Rental (booking) model."""

import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, Integer, String, DateTime, Date, ForeignKey, Numeric, Enum as SQLEnum, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.models.enums import RentalStatus, PaymentStatus, TERMINAL_RENTAL_STATUSES

if TYPE_CHECKING:
    from app.models.user import Shop, User


class Rental(Base):
    """A vehicle rental awaiting or holding payment.

    Created in PENDING by the booking flow. From then on ``status``,
    ``payment_status`` and ``deposit_paid`` are written only by the booking
    state machine (payment events and lifecycle transitions), and
    ``deposit_processed`` only by the payout manager.
    """

    __tablename__ = "rentals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    # Vehicles live in the listing service; no FK
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    shop_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("rental_shops.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    # NULL for guest bookings
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # Deposit
    deposit_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    deposit_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deposit_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deposit_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    status: Mapped[RentalStatus] = mapped_column(
        SQLEnum(RentalStatus),
        default=RentalStatus.PENDING,
        nullable=False,
        index=True,
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # No-show auto-cancellation: after pickup_time plus the grace period, unless overridden
    pickup_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    grace_period_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    auto_cancel_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_cancel_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    shop: Mapped["Shop"] = relationship("Shop")
    user: Mapped[Optional["User"]] = relationship("User")

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="ck_rentals_date_range"),
        CheckConstraint("NOT deposit_paid OR deposit_required", name="ck_rentals_deposit_paid_requires_deposit"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RENTAL_STATUSES
