"""Provider payloads -> PaymentEvent."""

import json
import uuid
from datetime import datetime
from decimal import Decimal

import pytest

from app.core.errors import AdapterError
from app.models.enums import PaymentOutcome, PaymentProvider
from app.schemas.webhooks import PayMongoPayment, PayMongoPaymentIntent, PayPalOrder
from app.services.adapters import GCashSourceAdapter, PayMongoAdapter, PayPalAdapter, PaymentEvent
from tests.providers import (
    paymongo_payment_event,
    paymongo_source_event,
    paypal_capture_event,
    paypal_order_event,
)

JUNE_1_2024 = 1717200000


def _raw(body: dict) -> bytes:
    return json.dumps(body).encode()


def _intent(status: str, error: dict | None = None) -> PayMongoPaymentIntent:
    return PayMongoPaymentIntent.model_validate({
        "id": "pi_poll",
        "attributes": {
            "amount": 450000,
            "status": status,
            "last_payment_error": error,
            "metadata": {"is_deposit": "false"},
            "updated_at": JUNE_1_2024,
        },
    })


class TestPayMongoAdapter:
    def test_paid_intent_payment(self):
        rental_id = uuid.uuid4()
        body = paymongo_payment_event(
            "payment.paid",
            amount=30000,
            intent_id="pi_abc",
            created_at=JUNE_1_2024,
            metadata={"rental_id": str(rental_id), "is_deposit": "true"},
        )

        event = PayMongoAdapter().normalize(_raw(body))

        assert event.provider == PaymentProvider.PAYMONGO
        assert event.external_payment_id == "pi_abc"
        assert event.outcome == PaymentOutcome.SUCCEEDED
        assert event.amount == Decimal("300.00")
        assert event.rental_id == rental_id
        assert event.is_deposit is True
        assert event.occurred_at == datetime(2024, 6, 1)
        assert event.payment_id is None
        assert event.event_key == "paymongo:pi_abc:succeeded"

    def test_failed_payment_carries_error(self):
        body = paymongo_payment_event(
            "payment.failed",
            amount=30000,
            intent_id="pi_abc",
            error={"code": "card_declined", "failed_message": "Insufficient funds"},
        )

        event = PayMongoAdapter().normalize(_raw(body))

        assert event.outcome == PaymentOutcome.FAILED
        assert event.error_message == "Insufficient funds"
        assert event.is_deposit is None
        assert event.event_key == "paymongo:pi_abc:failed:pay_for_pi_abc"

    def test_each_failed_attempt_has_its_own_key(self):
        first = PayMongoAdapter().normalize(_raw(paymongo_payment_event(
            "payment.failed", amount=30000, intent_id="pi_abc", payment_ref="pay_card_1",
        )))
        second = PayMongoAdapter().normalize(_raw(paymongo_payment_event(
            "payment.failed", amount=30000, intent_id="pi_abc", payment_ref="pay_card_2",
        )))

        assert first.event_key != second.event_key
        assert not first.moves_money

    def test_success_key_ignores_the_attempt(self):
        body = paymongo_payment_event("payment.paid", amount=30000, intent_id="pi_abc", payment_ref="pay_card_2")

        assert PayMongoAdapter().normalize(_raw(body)).event_key == "paymongo:pi_abc:succeeded"

    def test_payment_from_source_keys_on_source(self):
        body = paymongo_payment_event("payment.paid", amount=30000, source_id="src_abc")

        event = PayMongoAdapter().normalize(_raw(body))

        assert event.provider == PaymentProvider.PAYMONGO_SOURCE
        assert event.external_payment_id == "src_abc"
        assert event.payment_id == "pay_for_src_abc"
        assert event.moves_money

    def test_unhandled_event_type(self):
        body = paymongo_payment_event("payment.refunded", amount=30000, intent_id="pi_abc")

        with pytest.raises(AdapterError):
            PayMongoAdapter().normalize(_raw(body))

    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b'{"data": {"id": "evt_1"}}'])
    def test_malformed_body(self, raw):
        with pytest.raises(AdapterError):
            PayMongoAdapter().normalize(raw)

    @pytest.mark.parametrize(
        "status, error, expected",
        [
            ("succeeded", None, PaymentOutcome.SUCCEEDED),
            ("awaiting_payment_method", {"failed_code": "card_expired"}, PaymentOutcome.FAILED),
            ("awaiting_payment_method", None, PaymentOutcome.PENDING),
            ("awaiting_next_action", None, PaymentOutcome.PENDING),
            ("processing", None, PaymentOutcome.PENDING),
        ],
    )
    def test_polled_intent(self, status, error, expected):
        event = PayMongoAdapter().normalize_intent(_intent(status, error), payment_method_id="pm_1")

        assert event.outcome == expected
        assert event.raw_status == status
        assert event.payment_method_id == "pm_1"
        assert event.amount == Decimal("4500.00")
        assert event.is_deposit is False

    def test_polls_after_a_provider_update_are_new_events(self):
        before = _intent("awaiting_payment_method", {"failed_code": "card_expired"})
        after = _intent("awaiting_payment_method", {"failed_code": "card_declined"})
        after.attributes.updated_at = JUNE_1_2024 + 60

        adapter = PayMongoAdapter()

        assert adapter.normalize_intent(before).event_key == f"paymongo:pi_poll:failed:{JUNE_1_2024}"
        assert adapter.normalize_intent(before).event_key != adapter.normalize_intent(after).event_key


class TestGCashSourceAdapter:
    adapter = GCashSourceAdapter(deposit_amount_heuristic=Decimal("300"))

    def test_explicit_flag_wins_over_amount(self):
        assert self.adapter.infer_is_deposit({"is_deposit": "false"}, Decimal("300.00")) is False
        assert self.adapter.infer_is_deposit({"is_deposit": "true"}, Decimal("4500.00")) is True

    def test_amount_fallback_without_flag(self, caplog):
        assert self.adapter.infer_is_deposit(None, Decimal("300.00")) is True
        assert self.adapter.infer_is_deposit({}, Decimal("4500.00")) is False
        assert "inferring from amount" in caplog.text

    def test_chargeable_source(self):
        source = {
            "id": "src_abc",
            "type": "source",
            "attributes": {"amount": 30000, "status": "pending", "type": "gcash", "metadata": {"is_deposit": "true"}},
        }

        event = self.adapter.normalize(_raw(paymongo_source_event(source, created_at=JUNE_1_2024)))

        assert event.provider == PaymentProvider.PAYMONGO_SOURCE
        assert event.outcome == PaymentOutcome.CHARGEABLE
        assert event.is_deposit is True
        assert event.event_key == "paymongo_source:src_abc:chargeable"
        assert not event.moves_money

    def test_other_source_events_ignored(self):
        body = paymongo_payment_event("payment.paid", amount=30000, source_id="src_abc")

        with pytest.raises(AdapterError):
            self.adapter.normalize(_raw(body))

    @pytest.mark.parametrize(
        "status, expected",
        [("paid", PaymentOutcome.SUCCEEDED), ("failed", PaymentOutcome.FAILED), ("pending", PaymentOutcome.PENDING)],
    )
    def test_payment_from_source(self, status, expected):
        payment = PayMongoPayment.model_validate({
            "id": "pay_1",
            "attributes": {"amount": 30000, "status": status, "source": {"id": "src_abc"}, "updated_at": JUNE_1_2024},
        })

        event = self.adapter.normalize_payment(payment, "src_abc")

        assert event.outcome == expected
        assert event.external_payment_id == "src_abc"
        assert event.payment_id == "pay_1"
        assert event.moves_money


class TestPayPalAdapter:
    def test_completed_capture_is_success(self):
        rental_id = uuid.uuid4()
        body = paypal_capture_event(
            "PAYMENT.CAPTURE.COMPLETED", "CAP-1", "ORDER-1", custom_id=str(rental_id),
            create_time="2024-06-01T08:00:00Z",
        )

        event = PayPalAdapter().normalize(_raw(body))

        assert event.provider == PaymentProvider.PAYPAL
        assert event.external_payment_id == "ORDER-1"
        assert event.outcome == PaymentOutcome.SUCCEEDED
        assert event.capture_id == "CAP-1"
        assert event.amount == Decimal("4500.00")
        assert event.rental_id == rental_id
        assert event.occurred_at == datetime(2024, 6, 1, 8, 0)
        assert event.event_key == "paypal:ORDER-1:succeeded:CAP-1"

    def test_capture_without_order_id_uses_capture_id(self):
        body = paypal_capture_event("PAYMENT.CAPTURE.COMPLETED", "CAP-1", order_id=None)

        event = PayPalAdapter().normalize(_raw(body))

        assert event.external_payment_id == "CAP-1"
        assert event.capture_id == "CAP-1"

    @pytest.mark.parametrize("event_type", ["PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"])
    def test_denied_capture_is_failure(self, event_type):
        body = paypal_capture_event(event_type, "CAP-1", "ORDER-1", status="DECLINED", reason="RISK")

        event = PayPalAdapter().normalize(_raw(body))

        assert event.outcome == PaymentOutcome.FAILED
        assert event.error_message == "RISK"

    @pytest.mark.parametrize("event_type", ["CHECKOUT.ORDER.APPROVED", "CHECKOUT.ORDER.COMPLETED"])
    def test_order_events_are_informational(self, event_type):
        rental_id = uuid.uuid4()

        event = PayPalAdapter().normalize(_raw(paypal_order_event(event_type, "ORDER-1", str(rental_id))))

        assert event.outcome == PaymentOutcome.PENDING
        assert event.external_payment_id == "ORDER-1"
        assert event.rental_id == rental_id

    def test_unhandled_event_type(self):
        body = paypal_capture_event("PAYMENT.CAPTURE.REFUNDED", "CAP-1", "ORDER-1")

        with pytest.raises(AdapterError):
            PayPalAdapter().normalize(_raw(body))

    def test_captured_order(self):
        order = PayPalOrder.model_validate({
            "id": "ORDER-1",
            "status": "COMPLETED",
            "purchase_units": [{
                "payments": {"captures": [{
                    "id": "CAP-1",
                    "status": "COMPLETED",
                    "amount": {"currency_code": "PHP", "value": "300.00"},
                    "update_time": "2024-06-01T08:00:00+08:00",
                }]},
            }],
        })

        event = PayPalAdapter().normalize_order(order)

        assert event.outcome == PaymentOutcome.SUCCEEDED
        assert event.capture_id == "CAP-1"
        assert event.occurred_at == datetime(2024, 6, 1, 0, 0)

    def test_pending_capture_is_not_success(self):
        order = PayPalOrder.model_validate({
            "id": "ORDER-1",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "CAP-1", "status": "PENDING"}]}}],
        })

        assert PayPalAdapter().normalize_order(order).outcome == PaymentOutcome.PENDING

    def test_voided_order_is_failure(self):
        order = PayPalOrder.model_validate({"id": "ORDER-1", "status": "VOIDED", "purchase_units": []})

        event = PayPalAdapter().normalize_order(order)

        assert event.outcome == PaymentOutcome.FAILED
        assert event.raw_status == "VOIDED"


def test_parked_event_survives_the_outbox():
    event = PaymentEvent(
        provider=PaymentProvider.PAYPAL,
        external_payment_id="ORDER-1",
        outcome=PaymentOutcome.SUCCEEDED,
        raw_status="COMPLETED",
        event_type="order.captured",
        amount=Decimal("4500.00"),
        rental_id=uuid.uuid4(),
        occurred_at=datetime(2024, 6, 1, 8, 0),
        capture_id="CAP-1",
    )

    payload = json.loads(json.dumps(event.to_payload()))

    assert PaymentEvent.from_payload(payload) == event
