"""In-memory PayMongo and PayPal APIs served through httpx.MockTransport,
plus builders for the webhook bodies they send."""

import hashlib
import hmac
import itertools
import json
import time
from typing import Any, Optional

import httpx

WEBHOOK_SECRET = "whsk_test_secret"


def _error(status_code: int, code: str, detail: str) -> httpx.Response:
    return httpx.Response(status_code, json={"errors": [{"code": code, "detail": detail}]})


class FakePayMongo:
    """Payment intents, sources and payments, kept in dicts."""

    def __init__(self):
        self.intents: dict[str, dict[str, Any]] = {}
        self.sources: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        # What attaching a payment method does to the intent
        self.attach_status = "succeeded"
        self.attach_error: Optional[dict[str, Any]] = None
        # Status of payments created from sources
        self.payment_status = "paid"
        self.unavailable = False
        self._ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == f"/v1{path}")

    def set_intent_status(self, intent_id: str, status: str, error: Optional[dict[str, Any]] = None) -> None:
        attributes = self.intents[intent_id]["attributes"]
        attributes["status"] = status
        attributes["last_payment_error"] = error
        attributes["updated_at"] = int(time.time())

    def set_source_status(self, source_id: str, status: str) -> None:
        self.sources[source_id]["attributes"]["status"] = status

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            return _error(503, "service_unavailable", "Try again later")

        parts = request.url.path.removeprefix("/v1/").split("/")
        body = json.loads(request.content) if request.content else {}
        attributes = body.get("data", {}).get("attributes", {})

        if parts[0] == "payment_intents":
            if request.method == "POST" and len(parts) == 1:
                return self._ok(self._create_intent(attributes))
            intent = self.intents.get(parts[1])
            if intent is None:
                return _error(404, "resource_not_found", f"No such payment_intent: {parts[1]}")
            if request.method == "POST" and parts[-1] == "attach":
                if attributes.get("client_key") != intent["attributes"]["client_key"]:
                    return _error(400, "parameter_invalid", "client_key is invalid")
                self.set_intent_status(intent["id"], self.attach_status, self.attach_error)
            return self._ok(intent)

        if parts[0] == "sources":
            if request.method == "POST" and len(parts) == 1:
                return self._ok(self._create_source(attributes))
            source = self.sources.get(parts[1])
            if source is None:
                return _error(404, "resource_not_found", f"No such source: {parts[1]}")
            return self._ok(source)

        if parts[0] == "payments":
            if request.method == "POST" and len(parts) == 1:
                source = self.sources.get(attributes["source"]["id"])
                if source is None or source["attributes"]["status"] != "chargeable":
                    return _error(400, "resource_not_chargeable_state", "Source is not chargeable")
                source["attributes"]["status"] = "consumed"
                return self._ok(self._create_payment(attributes, source["id"]))
            payment = self.payments.get(parts[1])
            if payment is None:
                return _error(404, "resource_not_found", f"No such payment: {parts[1]}")
            return self._ok(payment)

        return _error(404, "route_not_found", request.url.path)

    def _ok(self, resource: dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json={"data": resource})

    def _create_intent(self, attributes: dict[str, Any]) -> dict[str, Any]:
        intent_id = f"pi_{next(self._ids):06d}"
        self.intents[intent_id] = {
            "id": intent_id,
            "type": "payment_intent",
            "attributes": {
                "amount": attributes["amount"],
                "currency": attributes["currency"],
                "status": "awaiting_payment_method",
                "client_key": f"{intent_id}_client_{intent_id[::-1]}",
                "last_payment_error": None,
                "next_action": None,
                "metadata": attributes.get("metadata"),
                "updated_at": int(time.time()),
            },
        }
        return self.intents[intent_id]

    def _create_source(self, attributes: dict[str, Any]) -> dict[str, Any]:
        source_id = f"src_{next(self._ids):06d}"
        self.sources[source_id] = {
            "id": source_id,
            "type": "source",
            "attributes": {
                "amount": attributes["amount"],
                "currency": attributes["currency"],
                "status": "pending",
                "type": "gcash",
                "redirect": {
                    "checkout_url": f"https://secure-authentication.paymongo.com/sources?id={source_id}",
                    **attributes.get("redirect", {}),
                },
                "metadata": attributes.get("metadata"),
            },
        }
        return self.sources[source_id]

    def _create_payment(self, attributes: dict[str, Any], source_id: str) -> dict[str, Any]:
        payment_id = f"pay_{next(self._ids):06d}"
        now = int(time.time())
        self.payments[payment_id] = {
            "id": payment_id,
            "type": "payment",
            "attributes": {
                "amount": attributes["amount"],
                "currency": attributes["currency"],
                "status": self.payment_status,
                "source": {"id": source_id, "type": "gcash"},
                "metadata": attributes.get("metadata"),
                "paid_at": now if self.payment_status == "paid" else None,
                "updated_at": now,
            },
        }
        return self.payments[payment_id]


class FakePayPal:
    """Orders v2, OAuth tokens and webhook signature verification."""

    def __init__(self):
        self.orders: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.verification_status = "SUCCESS"
        # PayPal issue code returned by the next capture call, if any
        self.capture_issue: Optional[str] = None
        self.unavailable = False
        self._ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            return httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})

        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AA-test-token", "expires_in": 32400})
        if not request.headers.get("authorization", "").startswith("Bearer "):
            return httpx.Response(401, json={"name": "AUTHENTICATION_FAILURE"})

        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})

        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(201, json=self._create_order(json.loads(request.content)))

        parts = path.removeprefix("/v2/checkout/orders/").split("/")
        order = self.orders.get(parts[0])
        if order is None:
            return self._unprocessable(404, "RESOURCE_NOT_FOUND", "INVALID_RESOURCE_ID")
        if request.method == "POST" and parts[-1] == "capture":
            return self._capture(order)
        return httpx.Response(200, json=order)

    def _unprocessable(self, status_code: int, name: str, issue: str) -> httpx.Response:
        return httpx.Response(status_code, json={"name": name, "details": [{"issue": issue}]})

    def _create_order(self, body: dict[str, Any]) -> dict[str, Any]:
        order_id = f"ORDER-{next(self._ids):04d}"
        unit = body["purchase_units"][0]
        self.orders[order_id] = {
            "id": order_id,
            "status": "CREATED",
            "purchase_units": [
                {
                    "reference_id": unit["reference_id"],
                    "custom_id": unit["custom_id"],
                    "amount": unit["amount"],
                }
            ],
            "links": [
                {"href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}", "rel": "approve", "method": "GET"},
                {"href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{order_id}", "rel": "self", "method": "GET"},
            ],
            "create_time": "2024-05-20T08:00:00Z",
        }
        return self.orders[order_id]

    def _capture(self, order: dict[str, Any]) -> httpx.Response:
        if self.capture_issue:
            return self._unprocessable(422, "UNPROCESSABLE_ENTITY", self.capture_issue)
        if order["status"] == "COMPLETED":
            return self._unprocessable(422, "UNPROCESSABLE_ENTITY", "ORDER_ALREADY_CAPTURED")

        unit = order["purchase_units"][0]
        order["status"] = "COMPLETED"
        order["update_time"] = "2024-05-20T08:05:00Z"
        unit["payments"] = {
            "captures": [
                {
                    "id": f"CAP-{order['id']}",
                    "status": "COMPLETED",
                    "amount": unit["amount"],
                    "custom_id": unit["custom_id"],
                    "supplementary_data": {"related_ids": {"order_id": order["id"]}},
                    "create_time": "2024-05-20T08:05:00Z",
                    "update_time": "2024-05-20T08:05:00Z",
                }
            ]
        }
        return httpx.Response(201, json=order)


# === Webhook bodies ===

def sign_paymongo(raw_body: bytes, secret: str, timestamp: Optional[int] = None, live: bool = False) -> str:
    """Paymongo-Signature header value for this body."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + raw_body, hashlib.sha256).hexdigest()
    return f"t={timestamp},te={'' if live else signature},li={signature if live else ''}"


def paymongo_payment_event(
    event_type: str,
    amount: int,
    intent_id: Optional[str] = None,
    source_id: Optional[str] = None,
    status: Optional[str] = None,
    created_at: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
    error: Optional[dict[str, Any]] = None,
    payment_ref: Optional[str] = None,
) -> dict[str, Any]:
    payment_ref = payment_ref or f"pay_for_{intent_id or source_id}"
    return {
        "data": {
            "id": f"evt_{event_type}_{payment_ref}",
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": False,
                "created_at": int(time.time()) if created_at is None else created_at,
                "data": {
                    "id": payment_ref,
                    "type": "payment",
                    "attributes": {
                        "amount": amount,
                        "currency": "PHP",
                        "status": status or ("paid" if event_type == "payment.paid" else "failed"),
                        "payment_intent_id": intent_id,
                        "source": {"id": source_id, "type": "gcash"} if source_id else None,
                        "metadata": metadata,
                        "last_payment_error": error,
                    },
                },
            },
        }
    }


def paymongo_source_event(source: dict[str, Any], created_at: Optional[int] = None) -> dict[str, Any]:
    return {
        "data": {
            "id": f"evt_chargeable_{source['id']}",
            "type": "event",
            "attributes": {
                "type": "source.chargeable",
                "livemode": False,
                "created_at": int(time.time()) if created_at is None else created_at,
                "data": {**source, "attributes": {**source["attributes"], "status": "chargeable"}},
            },
        }
    }


def paypal_capture_event(
    event_type: str,
    capture_id: str,
    order_id: Optional[str],
    value: str = "4500.00",
    status: str = "COMPLETED",
    custom_id: Optional[str] = None,
    create_time: str = "2024-05-20T08:06:00Z",
    reason: Optional[str] = None,
) -> dict[str, Any]:
    capture: dict[str, Any] = {
        "id": capture_id,
        "status": status,
        "amount": {"currency_code": "PHP", "value": value},
        "custom_id": custom_id,
    }
    if order_id:
        capture["supplementary_data"] = {"related_ids": {"order_id": order_id}}
    if reason:
        capture["status_details"] = {"reason": reason}
    return {
        "id": f"WH-{capture_id}-{event_type}",
        "event_type": event_type,
        "resource_type": "capture",
        "create_time": create_time,
        "resource": capture,
    }


def paypal_order_event(event_type: str, order_id: str, custom_id: str, status: str = "APPROVED") -> dict[str, Any]:
    return {
        "id": f"WH-{order_id}-{event_type}",
        "event_type": event_type,
        "resource_type": "checkout-order",
        "create_time": "2024-05-20T08:04:00Z",
        "resource": {
            "id": order_id,
            "status": status,
            "purchase_units": [{"reference_id": custom_id, "custom_id": custom_id}],
        },
    }


PAYPAL_SIGNATURE_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api-m.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
    "paypal-transmission-id": "69cd13f0-d67a-11e5-baa3-778b53f4ae55",
    "paypal-transmission-sig": "lmI95Jx3Y9nhR5SJWlHVIWpg4AgFk7n9bCHSRxbrd8A9zrhdu2rMyFrmz+Zjh3s3boXB07VXCXUZy/UFzUlnGJn0wDugt7FlSvdKeIJenLRemUxYCPVoEZzg9VFNqOa48gMkvF+XTpxBeUx/kWy6B5cp7GkT2+pOowfRK7OaynuxUoKW3JcMWw272VKjLTtTAShncla7tGF+55rxyt2KNZIIqxNMJ48RDZheGU5w1npu9dZHnPgTXB9iomeVRoD8O/jhRpnKsGrDschyNdkeh81BJJMH4Ctc6lnCCquoP/GzCzz33MMsNdid7vL/NIWaCsekQpW26FpWPi/tfj8nLA==",
    "paypal-transmission-time": "2024-05-20T08:06:01Z",
}
