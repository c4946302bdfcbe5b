"""
PayMongo API client

Payment intents (card / e-wallet via PayMongo's hosted flow), GCash sources
and payments created from chargeable sources. Amounts on the wire are
integer centavos.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

import httpx

from app.core.config import Settings
from app.core.errors import ProviderRejected, UpstreamUnavailable
from app.schemas.webhooks import PayMongoPayment, PayMongoPaymentIntent, PayMongoSource

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_centavos(amount: Decimal) -> int:
    """PHP amount to integer centavos, rounding half up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_centavos(centavos: int) -> Decimal:
    return (Decimal(centavos) / 100).quantize(CENTS)


def _error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        return response.text[:200]
    if errors:
        first = errors[0]
        return first.get("detail") or first.get("code") or str(first)
    return f"HTTP {response.status_code}"


class PayMongoClient:
    """Thin async client over the PayMongo REST API.

    Transport errors, timeouts, 429 and 5xx raise UpstreamUnavailable (safe
    to retry); other 4xx raise ProviderRejected.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = settings.paymongo_api_url.rstrip("/")
        self.secret_key = settings.paymongo_secret_key
        self.currency = settings.currency
        self.statement_descriptor = settings.statement_descriptor
        self.timeout = settings.provider_timeout_seconds
        self._transport = transport

    async def _request(self, method: str, path: str, json: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.secret_key, ""),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.error(f"[PAYMONGO] {method} {path} transport error: {e}")
            raise UpstreamUnavailable(f"PayMongo unreachable: {e}", path=path) from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"[PAYMONGO] {method} {path} failed: {response.status_code}")
            raise UpstreamUnavailable(
                f"PayMongo returned {response.status_code}",
                path=path,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.warning(f"[PAYMONGO] {method} {path} rejected: {response.status_code} {detail}")
            raise ProviderRejected(f"PayMongo rejected the request: {detail}", path=path)

        try:
            return response.json()["data"]
        except (ValueError, KeyError) as e:
            raise UpstreamUnavailable(f"Malformed PayMongo response for {path}", path=path) from e

    async def create_payment_intent(
        self,
        amount: Decimal,
        description: str,
        metadata: dict[str, str],
    ) -> PayMongoPaymentIntent:
        data = await self._request(
            "POST",
            "/payment_intents",
            json={
                "data": {
                    "attributes": {
                        "amount": to_centavos(amount),
                        "currency": self.currency,
                        "payment_method_allowed": ["card", "gcash", "paymaya"],
                        "payment_method_options": {"card": {"request_three_d_secure": "any"}},
                        "capture_type": "automatic",
                        "description": description,
                        "statement_descriptor": self.statement_descriptor,
                        "metadata": metadata,
                    }
                }
            },
        )
        intent = PayMongoPaymentIntent.model_validate(data)
        logger.info(f"[PAYMONGO] Payment intent created: {intent.id}")
        return intent

    async def attach_payment_method(
        self,
        intent_id: str,
        payment_method_id: str,
        client_key: str,
        return_url: Optional[str] = None,
    ) -> PayMongoPaymentIntent:
        attributes: dict[str, Any] = {
            "payment_method": payment_method_id,
            "client_key": client_key,
        }
        if return_url:
            attributes["return_url"] = return_url
        data = await self._request(
            "POST",
            f"/payment_intents/{intent_id}/attach",
            json={"data": {"attributes": attributes}},
        )
        return PayMongoPaymentIntent.model_validate(data)

    async def get_payment_intent(self, intent_id: str) -> PayMongoPaymentIntent:
        data = await self._request("GET", f"/payment_intents/{intent_id}")
        return PayMongoPaymentIntent.model_validate(data)

    async def create_gcash_source(
        self,
        amount: Decimal,
        success_url: str,
        failed_url: str,
        billing: dict[str, Any],
        metadata: dict[str, str],
    ) -> PayMongoSource:
        data = await self._request(
            "POST",
            "/sources",
            json={
                "data": {
                    "attributes": {
                        "amount": to_centavos(amount),
                        "currency": self.currency,
                        "type": "gcash",
                        "redirect": {"success": success_url, "failed": failed_url},
                        "billing": billing,
                        "metadata": metadata,
                    }
                }
            },
        )
        source = PayMongoSource.model_validate(data)
        logger.info(f"[PAYMONGO] GCash source created: {source.id}")
        return source

    async def retrieve_source(self, source_id: str) -> PayMongoSource:
        data = await self._request("GET", f"/sources/{source_id}")
        return PayMongoSource.model_validate(data)

    async def create_payment_from_source(
        self,
        source_id: str,
        amount: Decimal,
        description: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> PayMongoPayment:
        """Charge a chargeable source. PayMongo refuses a second charge of the same source."""
        data = await self._request(
            "POST",
            "/payments",
            json={
                "data": {
                    "attributes": {
                        "amount": to_centavos(amount),
                        "currency": self.currency,
                        "description": description,
                        "statement_descriptor": self.statement_descriptor,
                        "source": {"id": source_id, "type": "source"},
                        "metadata": metadata or {},
                    }
                }
            },
        )
        payment = PayMongoPayment.model_validate(data)
        logger.info(f"[PAYMONGO] Payment {payment.id} created from source {source_id}: {payment.attributes.status}")
        return payment

    async def retrieve_payment(self, payment_id: str) -> PayMongoPayment:
        data = await self._request("GET", f"/payments/{payment_id}")
        return PayMongoPayment.model_validate(data)
