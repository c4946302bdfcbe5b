"""Payments router: intents, GCash sources and PayPal orders."""

from typing import Optional

from fastapi import APIRouter, Depends, Response, status

from app.core.errors import ReconciliationError
from app.core.security import AuthenticatedUser, get_optional_user, require_registered_user
from app.routers.errors import user_http_error
from app.schemas.payments import (
    AttachMethodRequest,
    CheckStatusRequest,
    DepositIntentCreate,
    GCashSourceCreate,
    GCashSourceResponse,
    PaymentIntentCreate,
    PaymentIntentResponse,
    PaymentStatusResponse,
    PayPalCaptureResponse,
    PayPalOrderCreate,
    PayPalOrderResponse,
)
from app.services.reconciliation import PaymentReconciler, get_reconciler

router = APIRouter(prefix="/payments", tags=["payments"])


def _pending_to_202(result: dict, response: Response) -> dict:
    """The provider took the money but we could not record it yet."""
    if result.get("confirmation_pending"):
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.post("/deposit-intent", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
async def create_deposit_intent(
    data: DepositIntentCreate,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_registered_user),
):
    """Create a PayMongo payment intent for the rental's security deposit.

    Only the renter who owns the booking may pay its deposit.
    """
    try:
        return await reconciler.create_deposit_intent(
            data.rental_id,
            data.amount,
            current_user,
            description=data.description,
            metadata=data.metadata,
        )
    except ReconciliationError as e:
        raise user_http_error(e)


@router.post("/intent", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment_intent(
    data: PaymentIntentCreate,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
):
    """Create a PayMongo payment intent for the full rental price."""
    try:
        return await reconciler.create_payment_intent(
            data.rental_id,
            current_user,
            description=data.description,
            metadata=data.metadata,
        )
    except ReconciliationError as e:
        raise user_http_error(e)


@router.post("/attach-method", response_model=PaymentStatusResponse)
async def attach_payment_method(
    data: AttachMethodRequest,
    response: Response,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
):
    """Attach a payment method; a synchronous success confirms the booking right away."""
    try:
        result = await reconciler.attach_payment_method(
            data.payment_intent_id,
            data.payment_method_id,
            data.client_key,
            current_user,
            return_url=data.return_url,
        )
    except ReconciliationError as e:
        raise user_http_error(e)
    return _pending_to_202(result, response)


@router.post("/check-status", response_model=PaymentStatusResponse)
async def check_payment_status(
    data: CheckStatusRequest,
    response: Response,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
):
    """Poll the provider for an intent's status and reconcile it."""
    try:
        result = await reconciler.check_status(data.payment_intent_id, current_user)
    except ReconciliationError as e:
        raise user_http_error(e)
    return _pending_to_202(result, response)


@router.post("/gcash-source", response_model=GCashSourceResponse, status_code=status.HTTP_201_CREATED)
async def create_gcash_source(
    data: GCashSourceCreate,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
):
    """Create a GCash source; the customer completes payment at checkout_url."""
    try:
        return await reconciler.create_gcash_source(
            data.rental_id,
            data.is_deposit,
            data.success_url,
            data.failure_url,
            data.billing.model_dump(exclude_none=True),
            current_user,
        )
    except ReconciliationError as e:
        raise user_http_error(e)


@router.post("/paypal/orders", response_model=PayPalOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_paypal_order(
    data: PayPalOrderCreate,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
):
    try:
        return await reconciler.create_paypal_order(data.rental_id, data.is_deposit, current_user)
    except ReconciliationError as e:
        raise user_http_error(e)


@router.post("/paypal/orders/{order_id}/capture", response_model=PayPalCaptureResponse)
async def capture_paypal_order(
    order_id: str,
    response: Response,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
):
    """Capture an approved order. Capturing twice returns the first capture."""
    try:
        result = await reconciler.capture_paypal_order(order_id, current_user)
    except ReconciliationError as e:
        raise user_http_error(e)
    return _pending_to_202(result, response)
