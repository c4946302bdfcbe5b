"""
PayPal REST client

Orders v2 (create, capture, lookup) and webhook signature verification.
"""

import json
import logging
import time
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.core.config import Settings
from app.core.errors import ProviderRejected, UpstreamUnavailable
from app.schemas.webhooks import PayPalOrder

logger = logging.getLogger(__name__)

# Refresh the OAuth token this long before PayPal says it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class PayPalClient:
    """Async client over the PayPal REST API.

    Access tokens are cached per instance. Capture requests carry a
    PayPal-Request-Id derived from the order id, so retrying a capture is
    idempotent on PayPal's side.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = settings.paypal_base_url
        self.client_id = settings.paypal_client_id
        self.client_secret = settings.paypal_client_secret
        self.brand_name = settings.paypal_brand_name
        self.currency = settings.currency
        self.timeout = settings.provider_timeout_seconds
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                )
        except httpx.HTTPError as e:
            logger.error(f"[PAYPAL] Token request transport error: {e}")
            raise UpstreamUnavailable(f"PayPal unreachable: {e}") from e

        if response.status_code != 200:
            logger.error(f"[PAYPAL] Token request failed: {response.status_code}")
            raise UpstreamUnavailable(f"PayPal token request returned {response.status_code}")

        data = response.json()
        self._access_token = data["access_token"]
        expires_in = int(data.get("expires_in", 300))
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return self._access_token

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[PAYPAL] {method} {path} transport error: {e}")
            raise UpstreamUnavailable(f"PayPal unreachable: {e}", path=path) from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"[PAYPAL] {method} {path} failed: {response.status_code}")
            raise UpstreamUnavailable(
                f"PayPal returned {response.status_code}",
                path=path,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            try:
                body = response.json()
                issue = (body.get("details") or [{}])[0].get("issue") or body.get("name")
            except ValueError:
                issue = None
            detail = issue or f"HTTP {response.status_code}"
            logger.warning(f"[PAYPAL] {method} {path} rejected: {detail}")
            raise ProviderRejected(f"PayPal rejected the request: {detail}", path=path, issue=issue)

        return response.json()

    async def create_order(
        self,
        amount: Decimal,
        description: str,
        reference_id: str,
        request_id: str,
    ) -> PayPalOrder:
        data = await self._request(
            "POST",
            "/v2/checkout/orders",
            json_body={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": reference_id,
                        "custom_id": reference_id,
                        "description": description,
                        "amount": {"currency_code": self.currency, "value": f"{amount:.2f}"},
                    }
                ],
                "application_context": {
                    "brand_name": self.brand_name,
                    "user_action": "PAY_NOW",
                    "shipping_preference": "NO_SHIPPING",
                },
            },
            request_id=request_id,
        )
        order = PayPalOrder.model_validate(data)
        logger.info(f"[PAYPAL] Order created: {order.id}")
        return order

    async def capture_order(self, order_id: str) -> PayPalOrder:
        data = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json_body={},
            request_id=f"capture-{order_id}",
        )
        order = PayPalOrder.model_validate(data)
        logger.info(f"[PAYPAL] Order {order_id} capture returned {order.status}")
        return order

    async def get_order(self, order_id: str) -> PayPalOrder:
        data = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        return PayPalOrder.model_validate(data)

    async def verify_webhook_signature(
        self,
        raw_body: bytes,
        headers: dict[str, str],
        webhook_id: str,
    ) -> bool:
        """Ask PayPal whether the transmission headers match this body.

        Returns False on a FAILURE verdict or missing headers; raises
        UpstreamUnavailable if PayPal cannot be asked.
        """
        required = {
            "auth_algo": headers.get("paypal-auth-algo"),
            "cert_url": headers.get("paypal-cert-url"),
            "transmission_id": headers.get("paypal-transmission-id"),
            "transmission_sig": headers.get("paypal-transmission-sig"),
            "transmission_time": headers.get("paypal-transmission-time"),
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            logger.warning(f"[PAYPAL] Webhook missing signature headers: {', '.join(missing)}")
            return False

        try:
            webhook_event = json.loads(raw_body)
        except ValueError:
            return False

        data = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json_body={**required, "webhook_id": webhook_id, "webhook_event": webhook_event},
        )
        verified = data.get("verification_status") == "SUCCESS"
        if not verified:
            logger.warning(f"[PAYPAL] Webhook signature verdict: {data.get('verification_status')}")
        return verified
