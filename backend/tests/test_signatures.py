"""Webhook authenticity checks."""

import json

import pytest

from app.core.errors import SignatureInvalid
from app.services.signatures import (
    SignatureVerifier,
    parse_paymongo_signature_header,
    verify_paymongo_signature,
)
from tests.providers import PAYPAL_SIGNATURE_HEADERS, WEBHOOK_SECRET, paypal_capture_event, sign_paymongo

BODY = b'{"data":{"id":"evt_1","attributes":{"type":"payment.paid"}}}'
NOW = 1717200000


def _verify(header, body=BODY, live_mode=False, now=NOW):
    return verify_paymongo_signature(body, header, WEBHOOK_SECRET, live_mode, 300, now=now)


class TestPayMongoSignature:
    def test_parse_header(self):
        assert parse_paymongo_signature_header("t=1,te=abc,li=") == {"t": "1", "te": "abc", "li": ""}

    def test_valid_test_mode_signature(self):
        assert _verify(sign_paymongo(BODY, WEBHOOK_SECRET, timestamp=NOW))

    def test_valid_live_mode_signature(self):
        assert _verify(sign_paymongo(BODY, WEBHOOK_SECRET, timestamp=NOW, live=True), live_mode=True)

    def test_test_signature_rejected_in_live_mode(self):
        assert not _verify(sign_paymongo(BODY, WEBHOOK_SECRET, timestamp=NOW), live_mode=True)

    def test_tampered_body(self):
        header = sign_paymongo(BODY, WEBHOOK_SECRET, timestamp=NOW)

        assert not _verify(header, body=BODY.replace(b"payment.paid", b"payment.failed"))

    def test_wrong_secret(self):
        assert not _verify(sign_paymongo(BODY, "whsk_other", timestamp=NOW))

    def test_timestamp_outside_tolerance(self):
        header = sign_paymongo(BODY, WEBHOOK_SECRET, timestamp=NOW - 301)

        assert not _verify(header)

    @pytest.mark.parametrize("header", [None, "", "t=abc,te=00", "te=deadbeef", f"t={NOW}"])
    def test_malformed_header(self, header):
        assert not _verify(header)


class TestSignatureVerifier:
    def test_paymongo_rejected_when_enforced(self, settings, clients):
        verifier = SignatureVerifier(settings, clients.paypal)

        with pytest.raises(SignatureInvalid):
            verifier.check_paymongo(BODY, {"paymongo-signature": "t=1,te=00,li="})

    def test_paymongo_accepted_with_current_signature(self, settings, clients):
        verifier = SignatureVerifier(settings, clients.paypal)

        verifier.check_paymongo(BODY, {"paymongo-signature": sign_paymongo(BODY, WEBHOOK_SECRET)})

    def test_enforcement_off_logs_and_accepts(self, settings, clients, caplog):
        relaxed = settings.model_copy(update={"webhook_verification_enforced": False})
        verifier = SignatureVerifier(relaxed, clients.paypal)

        verifier.check_paymongo(BODY, {})

        assert "enforcement is off" in caplog.text

    def test_gcash_source_without_allowlist(self, settings, clients, caplog):
        SignatureVerifier(settings, clients.paypal).check_gcash_source("203.0.113.9")

        assert "Unauthenticated GCash source webhook" in caplog.text

    def test_gcash_source_allowlist(self, settings, clients):
        gated = settings.model_copy(update={"paymongo_source_ip_allowlist": "10.0.0.1, 10.0.0.2"})
        verifier = SignatureVerifier(gated, clients.paypal)

        verifier.check_gcash_source("10.0.0.2")
        with pytest.raises(SignatureInvalid):
            verifier.check_gcash_source("203.0.113.9")


class TestPayPalVerification:
    body = json.dumps(paypal_capture_event("PAYMENT.CAPTURE.COMPLETED", "CAP-1", "ORDER-1")).encode()

    async def test_success_verdict(self, settings, clients, paypal_api):
        await SignatureVerifier(settings, clients.paypal).check_paypal(self.body, PAYPAL_SIGNATURE_HEADERS)

        verify_request = next(r for r in paypal_api.requests if r.url.path.endswith("verify-webhook-signature"))
        sent = json.loads(verify_request.content)
        assert sent["webhook_id"] == settings.paypal_webhook_id
        assert sent["transmission_id"] == PAYPAL_SIGNATURE_HEADERS["paypal-transmission-id"]
        assert sent["webhook_event"]["resource"]["id"] == "CAP-1"

    async def test_failure_verdict(self, settings, clients, paypal_api):
        paypal_api.verification_status = "FAILURE"

        with pytest.raises(SignatureInvalid):
            await SignatureVerifier(settings, clients.paypal).check_paypal(self.body, PAYPAL_SIGNATURE_HEADERS)

    async def test_missing_headers_skip_the_call(self, settings, clients, paypal_api):
        headers = {k: v for k, v in PAYPAL_SIGNATURE_HEADERS.items() if k != "paypal-transmission-sig"}

        assert await clients.paypal.verify_webhook_signature(self.body, headers, "WH-TEST-0001") is False
        assert paypal_api.requests == []

    async def test_token_is_cached(self, settings, clients, paypal_api):
        for _ in range(3):
            assert await clients.paypal.verify_webhook_signature(self.body, PAYPAL_SIGNATURE_HEADERS, "WH-TEST-0001")

        assert paypal_api.calls("POST", "/v1/oauth2/token") == 1
        assert paypal_api.calls("POST", "/v1/notifications/verify-webhook-signature") == 3
