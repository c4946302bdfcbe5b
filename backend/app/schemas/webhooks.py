"""Provider wire formats.

Webhook bodies and API resources are decoded into these models at the
boundary; nothing past the adapters sees a raw provider dict.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Provider payloads carry many fields we do not use; ignore them."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# === PayMongo ===

class PayMongoError(WireModel):
    code: Optional[str] = None
    message: Optional[str] = None
    failed_code: Optional[str] = None
    failed_message: Optional[str] = None

    @property
    def description(self) -> str:
        return self.failed_message or self.message or self.failed_code or self.code or "Payment failed"


class PayMongoSourceRef(WireModel):
    id: Optional[str] = None
    type: Optional[str] = None


class PayMongoPaymentAttributes(WireModel):
    amount: int
    currency: str = "PHP"
    status: str
    payment_intent_id: Optional[str] = None
    source: Optional[PayMongoSourceRef] = None
    last_payment_error: Optional[PayMongoError] = None
    metadata: Optional[dict[str, Any]] = None
    paid_at: Optional[int] = None
    updated_at: Optional[int] = None


class PayMongoPayment(WireModel):
    id: str
    type: str = "payment"
    attributes: PayMongoPaymentAttributes


class PayMongoRedirect(WireModel):
    checkout_url: Optional[str] = None
    success: Optional[str] = None
    failed: Optional[str] = None


class PayMongoSourceAttributes(WireModel):
    amount: int
    currency: str = "PHP"
    status: str
    type: str = "gcash"
    redirect: Optional[PayMongoRedirect] = None
    metadata: Optional[dict[str, Any]] = None
    updated_at: Optional[int] = None


class PayMongoSource(WireModel):
    id: str
    type: str = "source"
    attributes: PayMongoSourceAttributes


class PayMongoPaymentIntentAttributes(WireModel):
    amount: int
    currency: str = "PHP"
    status: str
    client_key: Optional[str] = None
    last_payment_error: Optional[PayMongoError] = None
    next_action: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    updated_at: Optional[int] = None


class PayMongoPaymentIntent(WireModel):
    id: str
    type: str = "payment_intent"
    attributes: PayMongoPaymentIntentAttributes


class PayMongoEventAttributes(WireModel):
    type: str
    livemode: bool = False
    created_at: Optional[int] = None
    # Shape depends on ``type``; decoded by the adapter
    data: dict[str, Any]


class PayMongoEvent(WireModel):
    id: str
    type: str = "event"
    attributes: PayMongoEventAttributes


class PayMongoWebhookEnvelope(WireModel):
    data: PayMongoEvent


# === PayPal ===

class PayPalAmount(WireModel):
    currency_code: str
    value: str


class PayPalRelatedIds(WireModel):
    order_id: Optional[str] = None


class PayPalSupplementaryData(WireModel):
    related_ids: Optional[PayPalRelatedIds] = None


class PayPalStatusDetails(WireModel):
    reason: Optional[str] = None


class PayPalCapture(WireModel):
    id: str
    status: str
    amount: Optional[PayPalAmount] = None
    custom_id: Optional[str] = None
    status_details: Optional[PayPalStatusDetails] = None
    supplementary_data: Optional[PayPalSupplementaryData] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None

    @property
    def order_id(self) -> Optional[str]:
        if self.supplementary_data and self.supplementary_data.related_ids:
            return self.supplementary_data.related_ids.order_id
        return None


class PayPalPayments(WireModel):
    captures: list[PayPalCapture] = Field(default_factory=list)


class PayPalPurchaseUnit(WireModel):
    reference_id: Optional[str] = None
    custom_id: Optional[str] = None
    amount: Optional[PayPalAmount] = None
    payments: Optional[PayPalPayments] = None


class PayPalLink(WireModel):
    href: str
    rel: str
    method: Optional[str] = None


class PayPalOrder(WireModel):
    id: str
    status: str
    purchase_units: list[PayPalPurchaseUnit] = Field(default_factory=list)
    links: list[PayPalLink] = Field(default_factory=list)
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None

    def first_capture(self) -> Optional[PayPalCapture]:
        for unit in self.purchase_units:
            if unit.payments and unit.payments.captures:
                return unit.payments.captures[0]
        return None

    @property
    def approve_url(self) -> Optional[str]:
        for link in self.links:
            if link.rel in ("approve", "payer-action"):
                return link.href
        return None


class PayPalWebhookEvent(WireModel):
    id: str
    event_type: str
    resource_type: Optional[str] = None
    create_time: Optional[datetime] = None
    # Order for CHECKOUT.ORDER.*, capture for PAYMENT.CAPTURE.*
    resource: dict[str, Any]
