"""
Provider adapters

Each adapter turns one provider's payload (webhook body or API resource)
into a PaymentEvent. Adapters are pure: no database, no network. Whatever
they cannot know (which rental, whether it is a deposit) is filled in from
the payment ledger by the state machine.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import ValidationError

from app.core.errors import AdapterError
from app.models.enums import PaymentOutcome, PaymentProvider
from app.schemas.webhooks import (
    PayMongoPayment,
    PayMongoPaymentIntent,
    PayMongoSource,
    PayMongoWebhookEnvelope,
    PayPalCapture,
    PayPalOrder,
    PayPalWebhookEvent,
)
from app.services.paymongo import from_centavos

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentEvent:
    """A provider-neutral statement about one payment artifact."""

    provider: PaymentProvider
    external_payment_id: str
    outcome: PaymentOutcome
    raw_status: str
    event_type: str
    amount: Optional[Decimal] = None
    rental_id: Optional[UUID] = None
    is_deposit: Optional[bool] = None
    occurred_at: Optional[datetime] = None
    capture_id: Optional[str] = None
    payment_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    error_message: Optional[str] = None
    # Provider event id, kept for the ledger's event log
    provider_event_id: Optional[str] = None
    # One attempt within the artifact: PayMongo payment id, or the intent's update time for polls
    attempt_ref: Optional[str] = None

    @property
    def event_key(self) -> str:
        """Idempotency key: same artifact, same outcome, same capture.

        An artifact succeeds at most once, so success keys ignore the attempt.
        It can fail or stall many times (a new card on the same intent), so
        those keys carry the attempt reference when the provider gives one.
        """
        parts = [self.provider.value, self.external_payment_id, self.outcome.value]
        if self.capture_id:
            parts.append(self.capture_id)
        if self.attempt_ref and self.outcome != PaymentOutcome.SUCCEEDED:
            parts.append(self.attempt_ref)
        return ":".join(parts)

    @property
    def moves_money(self) -> bool:
        """True once the provider has taken, or started taking, the customer's money."""
        return self.outcome == PaymentOutcome.SUCCEEDED or self.payment_id is not None

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe form, for the jobs outbox and the ledger's event log."""
        payload = asdict(self)
        payload["provider"] = self.provider.value
        payload["outcome"] = self.outcome.value
        payload["amount"] = str(self.amount) if self.amount is not None else None
        payload["rental_id"] = str(self.rental_id) if self.rental_id else None
        payload["occurred_at"] = self.occurred_at.isoformat() if self.occurred_at else None
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PaymentEvent":
        return cls(
            provider=PaymentProvider(payload["provider"]),
            external_payment_id=payload["external_payment_id"],
            outcome=PaymentOutcome(payload["outcome"]),
            raw_status=payload["raw_status"],
            event_type=payload["event_type"],
            amount=Decimal(payload["amount"]) if payload.get("amount") is not None else None,
            rental_id=UUID(payload["rental_id"]) if payload.get("rental_id") else None,
            is_deposit=payload.get("is_deposit"),
            occurred_at=datetime.fromisoformat(payload["occurred_at"]) if payload.get("occurred_at") else None,
            capture_id=payload.get("capture_id"),
            payment_id=payload.get("payment_id"),
            payment_method_id=payload.get("payment_method_id"),
            error_message=payload.get("error_message"),
            provider_event_id=payload.get("provider_event_id"),
            attempt_ref=payload.get("attempt_ref"),
        )


def _from_epoch(seconds: Optional[int]) -> Optional[datetime]:
    """Epoch seconds to naive UTC, the form every timestamp column uses."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _metadata_flag(metadata: Optional[dict[str, Any]], key: str) -> Optional[bool]:
    if not metadata or key not in metadata:
        return None
    value = metadata[key]
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _parse_uuid(value: Any) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _metadata_uuid(metadata: Optional[dict[str, Any]], key: str) -> Optional[UUID]:
    return _parse_uuid(metadata.get(key)) if metadata else None


def _decode(raw: Union[bytes, str, dict[str, Any]]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise AdapterError("Webhook body is not JSON") from e
    if not isinstance(body, dict):
        raise AdapterError("Webhook body is not a JSON object")
    return body


class PayMongoAdapter:
    """Payment intent events: payment.paid / payment.failed webhooks and intent polls."""

    WEBHOOK_OUTCOMES = {
        "payment.paid": PaymentOutcome.SUCCEEDED,
        "payment.failed": PaymentOutcome.FAILED,
    }

    def normalize(self, raw: Union[bytes, str, dict[str, Any]]) -> PaymentEvent:
        try:
            envelope = PayMongoWebhookEnvelope.model_validate(_decode(raw))
            event_type = envelope.data.attributes.type
            outcome = self.WEBHOOK_OUTCOMES.get(event_type)
            if outcome is None:
                raise AdapterError(f"Unhandled PayMongo event type: {event_type}", event_type=event_type)
            payment = PayMongoPayment.model_validate(envelope.data.attributes.data)
        except ValidationError as e:
            raise AdapterError(f"Malformed PayMongo webhook: {e.error_count()} errors") from e

        attributes = payment.attributes
        if attributes.payment_intent_id:
            provider, external_id = PaymentProvider.PAYMONGO, attributes.payment_intent_id
        elif attributes.source and attributes.source.id:
            # Payment created from a GCash source
            provider, external_id = PaymentProvider.PAYMONGO_SOURCE, attributes.source.id
        else:
            raise AdapterError(f"PayMongo payment {payment.id} references no intent or source")

        return PaymentEvent(
            provider=provider,
            external_payment_id=external_id,
            outcome=outcome,
            raw_status=attributes.status,
            event_type=event_type,
            amount=from_centavos(attributes.amount),
            rental_id=_metadata_uuid(attributes.metadata, "rental_id"),
            is_deposit=_metadata_flag(attributes.metadata, "is_deposit"),
            occurred_at=_from_epoch(envelope.data.attributes.created_at),
            payment_id=payment.id if provider == PaymentProvider.PAYMONGO_SOURCE else None,
            error_message=attributes.last_payment_error.description if attributes.last_payment_error else None,
            provider_event_id=envelope.data.id,
            attempt_ref=payment.id,
        )

    def normalize_intent(self, intent: PayMongoPaymentIntent, payment_method_id: Optional[str] = None) -> PaymentEvent:
        """Map a polled (or just-attached) intent to an event.

        ``awaiting_payment_method`` only means failure when PayMongo says why;
        a fresh intent sits in that status too.
        """
        attributes = intent.attributes
        if attributes.status == "succeeded":
            outcome = PaymentOutcome.SUCCEEDED
        elif attributes.status == "awaiting_payment_method" and attributes.last_payment_error:
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.PENDING

        return PaymentEvent(
            provider=PaymentProvider.PAYMONGO,
            external_payment_id=intent.id,
            outcome=outcome,
            raw_status=attributes.status,
            event_type="payment_intent.polled",
            amount=from_centavos(attributes.amount),
            rental_id=_metadata_uuid(attributes.metadata, "rental_id"),
            is_deposit=_metadata_flag(attributes.metadata, "is_deposit"),
            occurred_at=_from_epoch(attributes.updated_at),
            payment_method_id=payment_method_id,
            error_message=attributes.last_payment_error.description if attributes.last_payment_error else None,
            attempt_ref=str(attributes.updated_at) if attributes.updated_at else payment_method_id,
        )


class GCashSourceAdapter:
    """GCash source events: source.chargeable webhooks and payments created from sources."""

    def __init__(self, deposit_amount_heuristic: Decimal):
        self.deposit_amount_heuristic = deposit_amount_heuristic

    def infer_is_deposit(self, metadata: Optional[dict[str, Any]], amount: Decimal) -> bool:
        """Explicit is_deposit metadata wins; otherwise fall back to the amount."""
        explicit = _metadata_flag(metadata, "is_deposit")
        if explicit is not None:
            return explicit
        logger.warning(
            f"[GCASH] Source carries no is_deposit flag; inferring from amount {amount} "
            f"(deposit amount is {self.deposit_amount_heuristic})"
        )
        return amount == self.deposit_amount_heuristic

    def normalize(self, raw: Union[bytes, str, dict[str, Any]]) -> PaymentEvent:
        try:
            envelope = PayMongoWebhookEnvelope.model_validate(_decode(raw))
            event_type = envelope.data.attributes.type
            if event_type != "source.chargeable":
                raise AdapterError(f"Unhandled source event type: {event_type}", event_type=event_type)
            source = PayMongoSource.model_validate(envelope.data.attributes.data)
        except ValidationError as e:
            raise AdapterError(f"Malformed source webhook: {e.error_count()} errors") from e

        amount = from_centavos(source.attributes.amount)
        return PaymentEvent(
            provider=PaymentProvider.PAYMONGO_SOURCE,
            external_payment_id=source.id,
            outcome=PaymentOutcome.CHARGEABLE,
            raw_status=source.attributes.status,
            event_type=event_type,
            amount=amount,
            rental_id=_metadata_uuid(source.attributes.metadata, "rental_id"),
            is_deposit=self.infer_is_deposit(source.attributes.metadata, amount),
            occurred_at=_from_epoch(envelope.data.attributes.created_at),
            provider_event_id=envelope.data.id,
        )

    def normalize_payment(self, payment: PayMongoPayment, source_id: str) -> PaymentEvent:
        """Map the payment created from a source to an event on that source's record."""
        status = payment.attributes.status
        if status == "paid":
            outcome = PaymentOutcome.SUCCEEDED
        elif status == "failed":
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.PENDING

        error = payment.attributes.last_payment_error
        return PaymentEvent(
            provider=PaymentProvider.PAYMONGO_SOURCE,
            external_payment_id=source_id,
            outcome=outcome,
            raw_status=status,
            event_type=f"payment.{status}",
            amount=from_centavos(payment.attributes.amount),
            occurred_at=_from_epoch(payment.attributes.paid_at or payment.attributes.updated_at),
            payment_id=payment.id,
            error_message=error.description if error else None,
            attempt_ref=payment.id,
        )


class PayPalAdapter:
    """PayPal order and capture webhooks, and capture responses.

    Only a completed capture is a success; an approved or completed order
    is informational.
    """

    ORDER_EVENTS = {
        "CHECKOUT.ORDER.APPROVED",
        "CHECKOUT.ORDER.COMPLETED",
    }
    CAPTURE_OUTCOMES = {
        "PAYMENT.CAPTURE.COMPLETED": PaymentOutcome.SUCCEEDED,
        "PAYMENT.CAPTURE.DENIED": PaymentOutcome.FAILED,
        "PAYMENT.CAPTURE.DECLINED": PaymentOutcome.FAILED,
    }
    FAILED_CAPTURE_STATUSES = {"DECLINED", "FAILED", "DENIED", "VOIDED"}
    FAILED_ORDER_STATUSES = {"VOIDED", "CANCELLED"}

    def normalize(self, raw: Union[bytes, str, dict[str, Any]]) -> PaymentEvent:
        try:
            event = PayPalWebhookEvent.model_validate(_decode(raw))
            if event.event_type in self.ORDER_EVENTS:
                return self._order_event(event, PayPalOrder.model_validate(event.resource))
            if event.event_type in self.CAPTURE_OUTCOMES:
                return self._capture_event(event, PayPalCapture.model_validate(event.resource))
        except ValidationError as e:
            raise AdapterError(f"Malformed PayPal webhook: {e.error_count()} errors") from e
        raise AdapterError(f"Unhandled PayPal event type: {event.event_type}", event_type=event.event_type)

    def _order_event(self, event: PayPalWebhookEvent, order: PayPalOrder) -> PaymentEvent:
        capture = order.first_capture()
        return PaymentEvent(
            provider=PaymentProvider.PAYPAL,
            external_payment_id=order.id,
            outcome=PaymentOutcome.PENDING,
            raw_status=order.status,
            event_type=event.event_type,
            rental_id=_parse_uuid(order.purchase_units[0].custom_id) if order.purchase_units else None,
            occurred_at=_naive_utc(event.create_time),
            capture_id=capture.id if capture else None,
            provider_event_id=event.id,
        )

    def _capture_event(self, event: PayPalWebhookEvent, capture: PayPalCapture) -> PaymentEvent:
        outcome = self.CAPTURE_OUTCOMES[event.event_type]
        reason = capture.status_details.reason if capture.status_details else None
        return PaymentEvent(
            provider=PaymentProvider.PAYPAL,
            # Ledger falls back to the capture id when the order id is absent
            external_payment_id=capture.order_id or capture.id,
            outcome=outcome,
            raw_status=capture.status,
            event_type=event.event_type,
            amount=Decimal(capture.amount.value) if capture.amount else None,
            rental_id=_parse_uuid(capture.custom_id),
            occurred_at=_naive_utc(event.create_time),
            capture_id=capture.id,
            error_message=reason if outcome == PaymentOutcome.FAILED else None,
            provider_event_id=event.id,
        )

    def normalize_order(self, order: PayPalOrder) -> PaymentEvent:
        """Map the order returned by a capture call."""
        capture = order.first_capture()
        if capture and capture.status == "COMPLETED":
            outcome = PaymentOutcome.SUCCEEDED
        elif capture and capture.status in self.FAILED_CAPTURE_STATUSES:
            outcome = PaymentOutcome.FAILED
        elif order.status in self.FAILED_ORDER_STATUSES:
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.PENDING

        reason = capture.status_details.reason if capture and capture.status_details else None
        return PaymentEvent(
            provider=PaymentProvider.PAYPAL,
            external_payment_id=order.id,
            outcome=outcome,
            raw_status=capture.status if capture else order.status,
            event_type="order.captured",
            amount=Decimal(capture.amount.value) if capture and capture.amount else None,
            occurred_at=_naive_utc((capture.update_time or capture.create_time) if capture else order.update_time),
            capture_id=capture.id if capture else None,
            error_message=reason if outcome == PaymentOutcome.FAILED else None,
        )

    def capture_rejected(self, order_id: str, reason: str) -> PaymentEvent:
        """Event for a capture call PayPal refused (e.g. INSTRUMENT_DECLINED)."""
        return PaymentEvent(
            provider=PaymentProvider.PAYPAL,
            external_payment_id=order_id,
            outcome=PaymentOutcome.FAILED,
            raw_status="CAPTURE_REJECTED",
            event_type="order.capture_rejected",
            error_message=reason,
        )
