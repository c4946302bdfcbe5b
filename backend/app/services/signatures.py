"""Webhook authenticity checks, one per provider.

Runs before any parsing or state change. ``check_*`` raises SignatureInvalid;
when verification is switched off (development only) a failure is logged
and the request let through.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from app.core.config import Settings
from app.core.errors import ProviderRejected, SignatureInvalid
from app.services.paypal import PayPalClient

logger = logging.getLogger(__name__)


def parse_paymongo_signature_header(header: str) -> dict[str, str]:
    """``t=1700000000,te=abc,li=`` -> {"t": "1700000000", "te": "abc", "li": ""}"""
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    return parts


def verify_paymongo_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    live_mode: bool,
    tolerance_seconds: int,
    now: Optional[float] = None,
) -> bool:
    """HMAC-SHA256 over ``"{t}.{body}"``, compared with ``li`` (live) or ``te`` (test)."""
    if not header or not secret:
        return False

    parts = parse_paymongo_signature_header(header)
    timestamp = parts.get("t")
    expected = parts.get("li" if live_mode else "te")
    if not timestamp or not expected:
        return False

    try:
        signed_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - signed_at) > tolerance_seconds:
        return False

    computed = hmac.new(
        secret.encode(),
        timestamp.encode() + b"." + raw_body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(computed, expected)


class SignatureVerifier:
    """Authenticates provider webhooks before they reach an adapter."""

    def __init__(self, settings: Settings, paypal: PayPalClient):
        self.settings = settings
        self.paypal = paypal

    def _reject(self, provider: str, reason: str) -> None:
        if not self.settings.webhook_verification_enforced:
            logger.warning(f"[WEBHOOK] {provider} verification failed ({reason}); accepted because enforcement is off")
            return
        logger.warning(f"[WEBHOOK] {provider} signature rejected: {reason}")
        raise SignatureInvalid(f"{provider} webhook signature invalid: {reason}", provider=provider)

    def check_paymongo(self, raw_body: bytes, headers: dict[str, str]) -> None:
        ok = verify_paymongo_signature(
            raw_body,
            headers.get("paymongo-signature"),
            self.settings.paymongo_webhook_secret,
            self.settings.paymongo_live_mode,
            self.settings.webhook_tolerance_seconds,
        )
        if not ok:
            self._reject("paymongo", "HMAC mismatch, missing header or stale timestamp")

    def check_gcash_source(self, client_ip: Optional[str]) -> None:
        """Source webhooks are unsigned. Gate on the IP allowlist when one is set.

        Without an allowlist the event is accepted, but nothing is charged
        until the source is re-fetched from PayMongo and found chargeable.
        """
        allowlist = self.settings.source_ip_allowlist
        if not allowlist:
            logger.warning(f"[WEBHOOK] Unauthenticated GCash source webhook accepted from {client_ip}")
            return
        if client_ip not in allowlist:
            self._reject("paymongo_source", f"source IP {client_ip} not allowlisted")

    async def check_paypal(self, raw_body: bytes, headers: dict[str, str]) -> None:
        """Asks PayPal. UpstreamUnavailable propagates when enforcement is on."""
        try:
            ok = await self.paypal.verify_webhook_signature(raw_body, headers, self.settings.paypal_webhook_id)
        except ProviderRejected as e:
            ok = False
            logger.warning(f"[WEBHOOK] PayPal refused verification request: {e.message}")
        if not ok:
            self._reject("paypal", "verification status not SUCCESS")
