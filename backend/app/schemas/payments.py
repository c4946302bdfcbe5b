"""Request/response schemas for the payment and payout endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import Field, EmailStr

from app.schemas.base import BaseSchema, IDMixin, TimestampMixin
from app.models.enums import PaymentStatus, PayoutStatus, RentalStatus


class DepositIntentCreate(BaseSchema):
    """Create a PayMongo payment intent for a rental's deposit."""

    rental_id: UUID
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: Optional[str] = Field(None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentIntentCreate(BaseSchema):
    """Create a PayMongo payment intent for the full rental price."""

    rental_id: UUID
    description: Optional[str] = Field(None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentIntentResponse(BaseSchema):
    payment_record_id: UUID
    payment_intent_id: str
    client_key: Optional[str] = None
    amount: Decimal
    status: str


class AttachMethodRequest(BaseSchema):
    payment_intent_id: str = Field(..., min_length=1)
    payment_method_id: str = Field(..., min_length=1)
    client_key: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class CheckStatusRequest(BaseSchema):
    payment_intent_id: str = Field(..., min_length=1)


class PaymentStatusResponse(BaseSchema):
    """Current state of a payment intent as seen by the client."""

    payment_record_id: UUID
    rental_id: UUID
    status: str
    rental_status: str
    confirmation_pending: bool = False
    next_action: Optional[dict[str, Any]] = None
    last_payment_error: Optional[str] = None


class BillingInfo(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)


class GCashSourceCreate(BaseSchema):
    rental_id: UUID
    is_deposit: bool = False
    success_url: str
    failure_url: str
    billing: BillingInfo


class GCashSourceResponse(BaseSchema):
    payment_record_id: UUID
    source_id: str
    checkout_url: Optional[str] = None
    amount: Decimal
    status: str


class PayPalOrderCreate(BaseSchema):
    rental_id: UUID
    is_deposit: bool = False


class PayPalOrderResponse(BaseSchema):
    payment_record_id: UUID
    order_id: str
    status: str
    amount: Decimal
    approve_url: Optional[str] = None


class PayPalCaptureResponse(BaseSchema):
    order_id: str
    status: str
    capture_id: Optional[str] = None
    rental_status: str
    already_captured: bool = False
    confirmation_pending: bool = False


class PayoutCreate(BaseSchema):
    """Admin request to pay a forfeited deposit out to the shop."""

    rental_id: UUID
    reason: Optional[str] = Field(None, max_length=500)


class PayoutResponse(BaseSchema, IDMixin, TimestampMixin):
    rental_id: UUID
    shop_id: UUID
    amount: Decimal
    status: PayoutStatus
    reason: str
    processed_by: Optional[UUID] = None


class JobsRunResponse(BaseSchema):
    processed: int
    completed: int
    failed: int
    finished_at: datetime


class RentalStatusChange(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class RentalStatusResponse(BaseSchema, IDMixin):
    """A rental's lifecycle and payment state after an admin action."""

    status: RentalStatus
    payment_status: PaymentStatus
    deposit_paid: bool
    deposit_processed: bool
    cancellation_reason: Optional[str] = None
    auto_cancel_override: bool
    updated_at: datetime


class AutoCancelRunResponse(BaseSchema):
    cancelled: int
    rental_ids: list[UUID]
    finished_at: datetime
