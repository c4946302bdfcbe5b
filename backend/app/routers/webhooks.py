"""Provider webhook endpoints.

Bodies are read raw: signatures are computed over the exact bytes sent.
"""

from fastapi import APIRouter, Depends, Request

from app.core.errors import ReconciliationError
from app.routers.errors import provider_http_error
from app.services.reconciliation import PaymentReconciler, get_reconciler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _headers(request: Request) -> dict[str, str]:
    return {key.lower(): value for key, value in request.headers.items()}


@router.post("/paymongo")
async def paymongo_webhook(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """payment.paid / payment.failed for payment intents."""
    raw_body = await request.body()
    try:
        return await reconciler.handle_paymongo_webhook(raw_body, _headers(request))
    except ReconciliationError as e:
        raise provider_http_error(e)


@router.post("/paymongo/source")
async def paymongo_source_webhook(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """source.chargeable for GCash sources: charges the source."""
    raw_body = await request.body()
    client_ip = request.client.host if request.client else None
    try:
        return await reconciler.handle_gcash_source_webhook(raw_body, _headers(request), client_ip)
    except ReconciliationError as e:
        raise provider_http_error(e)


@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """Order and capture events. Only PAYMENT.CAPTURE.COMPLETED confirms a payment."""
    raw_body = await request.body()
    try:
        return await reconciler.handle_paypal_webhook(raw_body, _headers(request))
    except ReconciliationError as e:
        raise provider_http_error(e)
