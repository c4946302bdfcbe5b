"""Admin router: rental lifecycle, deposit payouts and the jobs outbox."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.core.errors import ReconciliationError
from app.core.security import AuthenticatedUser, require_admin
from app.models.enums import RentalStatus
from app.routers.errors import user_http_error
from app.schemas.payments import (
    AutoCancelRunResponse,
    JobsRunResponse,
    PayoutCreate,
    PayoutResponse,
    RentalStatusChange,
    RentalStatusResponse,
)
from app.services.reconciliation import PaymentReconciler, get_reconciler

router = APIRouter(prefix="/admin", tags=["admin"])


async def _change_status(
    reconciler: PaymentReconciler,
    rental_id: UUID,
    target: RentalStatus,
    data: Optional[RentalStatusChange],
    current_user: AuthenticatedUser,
):
    try:
        reason = data.reason if data else None
        return await reconciler.change_rental_status(rental_id, target, reason, current_user)
    except ReconciliationError as e:
        raise user_http_error(e)


# === Rental lifecycle ===

@router.post("/rentals/{rental_id}/complete", response_model=RentalStatusResponse)
async def complete_rental(
    rental_id: UUID,
    data: Optional[RentalStatusChange] = None,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    """Mark a confirmed rental as completed (vehicle returned)."""
    return await _change_status(reconciler, rental_id, RentalStatus.COMPLETED, data, current_user)


@router.post("/rentals/{rental_id}/cancel", response_model=RentalStatusResponse)
async def cancel_rental(
    rental_id: UUID,
    data: Optional[RentalStatusChange] = None,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    return await _change_status(reconciler, rental_id, RentalStatus.CANCELLED, data, current_user)


@router.post("/rentals/{rental_id}/reject", response_model=RentalStatusResponse)
async def reject_rental(
    rental_id: UUID,
    data: Optional[RentalStatusChange] = None,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    return await _change_status(reconciler, rental_id, RentalStatus.REJECTED, data, current_user)


@router.post("/rentals/{rental_id}/no-show", response_model=RentalStatusResponse)
async def mark_no_show(
    rental_id: UUID,
    data: Optional[RentalStatusChange] = None,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    """Mark a rental as a no-show; a paid deposit then becomes eligible for payout."""
    return await _change_status(reconciler, rental_id, RentalStatus.NO_SHOW, data, current_user)


@router.post("/rentals/{rental_id}/override-auto-cancel", response_model=RentalStatusResponse)
async def override_auto_cancel(
    rental_id: UUID,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    """Keep a rental out of the no-show sweep; the customer may arrive late."""
    try:
        return await reconciler.override_auto_cancel(rental_id, current_user)
    except ReconciliationError as e:
        raise user_http_error(e)


@router.post("/rentals/auto-cancel", response_model=AutoCancelRunResponse)
async def run_auto_cancellations(
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    """Auto-cancel rentals past pickup time plus grace period (admin/cron)."""
    cancelled = await reconciler.process_auto_cancellations()
    return AutoCancelRunResponse(
        cancelled=len(cancelled),
        rental_ids=cancelled,
        finished_at=datetime.utcnow(),
    )


# === Deposit payouts ===

@router.post("/deposit-payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def create_deposit_payout(
    data: PayoutCreate,
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    """Pay a no-show or cancelled rental's deposit out to the shop.

    The payout is recorded as PENDING; disbursement happens elsewhere.
    """
    try:
        return await reconciler.initiate_payout(data.rental_id, data.reason, current_user)
    except ReconciliationError as e:
        raise user_http_error(e)


# === Jobs outbox ===

@router.post("/jobs/run", response_model=JobsRunResponse)
async def run_jobs(
    limit: int = Query(10, ge=1, le=100),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    current_user: AuthenticatedUser = Depends(require_admin),
):
    """Drain due jobs from the outbox (history retries, parked payment events, alerts)."""
    completed, failed = await reconciler.run_jobs(limit=limit)
    return JobsRunResponse(
        processed=completed + failed,
        completed=completed,
        failed=failed,
        finished_at=datetime.utcnow(),
    )
