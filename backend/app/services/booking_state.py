"""Booking state machine: the only writer of a rental's status and payment state."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PreconditionViolation, RecordNotFound, StaleEvent
from app.models.enums import RENTAL_TRANSITIONS, PaymentOutcome, PaymentStatus, RentalStatus
from app.models.payment import PaymentRecord
from app.models.rental import Rental
from app.services.adapters import PaymentEvent
from app.services.history import HistoryRecorder
from app.services.inventory import InventoryBlocker
from app.services.jobs import JobsService
from app.services.ledger import PaymentLedger

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = "Auto-cancelled due to no-show"


@dataclass
class TransitionResult:
    rental_id: UUID
    payment_record_id: UUID
    outcome: PaymentOutcome
    rental_status: RentalStatus
    payment_status: PaymentStatus
    deposit_paid: bool
    changed: bool
    blocked_count: int = 0

    def as_response(self) -> dict[str, Any]:
        """JSON-safe acknowledgement, also replayed for duplicate deliveries."""
        return {
            "received": True,
            "rental_id": str(self.rental_id),
            "payment_record_id": str(self.payment_record_id),
            "outcome": self.outcome.value,
            "rental_status": self.rental_status.value,
            "payment_status": self.payment_status.value,
            "deposit_paid": self.deposit_paid,
        }


class BookingStateMachine:
    """Applies admitted payment events and lifecycle transitions to rentals.

    Payment events move a rental from pending to confirmed; ``transition``
    covers the rest of the lifecycle (completed, cancelled, rejected, no-show,
    auto-cancelled). Rows touched are locked for the rest of the transaction.
    Nothing here commits; the caller owns the transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[PaymentLedger] = None,
        history: Optional[HistoryRecorder] = None,
        blocker: Optional[InventoryBlocker] = None,
    ):
        self.db = db
        self.ledger = ledger or PaymentLedger(db)
        self.history = history or HistoryRecorder(db)
        self.blocker = blocker or InventoryBlocker(db, self.history)

    async def _lock_rental(self, rental_id: UUID) -> Optional[Rental]:
        result = await self.db.execute(
            select(Rental).where(Rental.id == rental_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def apply(self, event: PaymentEvent) -> TransitionResult:
        record = await self.ledger.find_for_event(event, for_update=True)
        if record is None:
            logger.error(f"[BOOKING] No payment record for {event.provider.value} {event.external_payment_id}")
            raise RecordNotFound(
                f"No payment record for {event.provider.value} {event.external_payment_id}",
                event_key=event.event_key,
            )

        rental = await self._lock_rental(record.rental_id)
        if rental is None:
            logger.error(f"[BOOKING] Payment record {record.id} points at missing rental {record.rental_id}")
            raise RecordNotFound(f"Rental {record.rental_id} not found", event_key=event.event_key)

        if self.ledger.is_stale(record, event):
            logger.info(
                f"[BOOKING] Stale {event.outcome.value} for {record.external_id} "
                f"(record is {record.outcome.value}); ignored"
            )
            raise StaleEvent(f"Event for {record.external_id} is stale", event_key=event.event_key)

        if event.is_deposit is not None and event.is_deposit != record.is_deposit:
            logger.warning(
                f"[BOOKING] Event for {record.external_id} says is_deposit={event.is_deposit}, "
                f"ledger says {record.is_deposit}; using ledger"
            )
        if event.rental_id is not None and event.rental_id != record.rental_id:
            logger.warning(
                f"[BOOKING] Event for {record.external_id} names rental {event.rental_id}, "
                f"ledger says {record.rental_id}; using ledger"
            )

        previous_outcome = self.ledger.apply_event(record, event)

        changed = False
        blocked_count = 0
        if event.outcome == PaymentOutcome.SUCCEEDED:
            changed = await self._on_success(rental, record)
            if rental.status == RentalStatus.CONFIRMED:
                blocked_count = await self._block_dates(rental, record)
        elif event.outcome == PaymentOutcome.FAILED:
            changed = await self._on_failure(rental, record, previous_outcome)

        await self.db.flush()

        return TransitionResult(
            rental_id=rental.id,
            payment_record_id=record.id,
            outcome=record.outcome,
            rental_status=rental.status,
            payment_status=rental.payment_status,
            deposit_paid=rental.deposit_paid,
            changed=changed,
            blocked_count=blocked_count,
        )

    async def _block_dates(self, rental: Rental, record: PaymentRecord) -> int:
        """Block the rental's dates. A bad date range never undoes the payment."""
        try:
            block = await self.blocker.block(rental.vehicle_id, rental.start_date, rental.end_date, rental.id)
        except PreconditionViolation as e:
            logger.error(
                f"[BOOKING] Rental {rental.id} paid via {record.external_id} but its dates "
                f"could not be blocked: {e.message}"
            )
            await JobsService(self.db).enqueue_operator_alert(
                kind="blocking_failed",
                reference=str(rental.id),
                message=e.message,
                details={
                    "vehicle_id": str(rental.vehicle_id),
                    "start_date": rental.start_date.isoformat(),
                    "end_date": rental.end_date.isoformat(),
                    "payment": record.external_id,
                },
            )
            return 0
        return block.blocked_count

    async def _on_success(self, rental: Rental, record: PaymentRecord) -> bool:
        flag_changed = False
        if record.is_deposit:
            if not rental.deposit_required:
                logger.error(
                    f"[BOOKING] Deposit payment {record.external_id} succeeded for rental {rental.id} "
                    f"which requires no deposit; ledger updated, rental left alone"
                )
            elif not rental.deposit_paid:
                rental.deposit_paid = True
                rental.deposit_payment_id = record.id
                flag_changed = True
        elif rental.payment_status != PaymentStatus.PAID:
            rental.payment_status = PaymentStatus.PAID
            rental.payment_date = datetime.utcnow()
            flag_changed = True

        if rental.is_terminal:
            if flag_changed:
                logger.warning(
                    f"[BOOKING] Late payment {record.external_id} for {rental.status.value} rental {rental.id}; "
                    f"status kept"
                )
                await self.history.record_late_payment(
                    rental.id, rental.status.value, record.provider.value, record.external_id
                )
            return flag_changed

        status_changed = False
        if rental.status != RentalStatus.CONFIRMED and (rental.deposit_paid or rental.payment_status == PaymentStatus.PAID):
            rental.status = RentalStatus.CONFIRMED
            status_changed = True

        if flag_changed or status_changed:
            logger.info(f"[BOOKING] Rental {rental.id} {rental.status.value} after {record.external_id} succeeded")
            await self.history.record_payment_succeeded(
                rental.id,
                rental.status.value,
                record.is_deposit,
                f"{record.amount:.2f}",
                record.provider.value,
                record.external_id,
            )
        return flag_changed or status_changed

    async def _on_failure(
        self,
        rental: Rental,
        record: PaymentRecord,
        previous_outcome: PaymentOutcome,
    ) -> bool:
        # Another artifact already paid: this failure only concerns the ledger
        if record.is_deposit:
            if rental.deposit_paid and rental.deposit_payment_id != record.id:
                logger.info(f"[BOOKING] Deposit for rental {rental.id} already paid; {record.external_id} failure ledger-only")
                return False
            rental.deposit_paid = False
        else:
            if rental.payment_status == PaymentStatus.PAID:
                logger.info(f"[BOOKING] Rental {rental.id} already paid; {record.external_id} failure ledger-only")
                return False
            rental.payment_status = PaymentStatus.FAILED

        if previous_outcome == PaymentOutcome.FAILED:
            return False

        logger.info(f"[BOOKING] Payment {record.external_id} failed for rental {rental.id}: {record.last_error}")
        await self.history.record_payment_failed(
            rental.id,
            rental.status.value,
            record.is_deposit,
            record.provider.value,
            record.external_id,
            record.last_error,
        )
        return True

    # === Lifecycle ===

    async def _require_rental(self, rental_id: UUID) -> Rental:
        rental = await self._lock_rental(rental_id)
        if rental is None:
            raise RecordNotFound(f"Rental {rental_id} not found", rental_id=str(rental_id))
        return rental

    async def _move(
        self,
        rental: Rental,
        target: RentalStatus,
        reason: Optional[str],
        actor_id: Optional[UUID],
    ) -> None:
        previous = rental.status
        rental.status = target
        if target != RentalStatus.COMPLETED:
            rental.cancellation_reason = reason
        await self.db.flush()

        logger.info(f"[BOOKING] Rental {rental.id} {previous.value} -> {target.value} ({reason or 'no reason given'})")
        await self.history.record_status_change(rental.id, previous.value, target.value, reason, actor_id)

    async def transition(
        self,
        rental_id: UUID,
        target: RentalStatus,
        actor_id: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> Rental:
        """Move a rental along a lifecycle edge.

        Terminal rentals never move again, and a rental is confirmed only
        by a payment; anything else off the edge list is a 409.
        """
        rental = await self._require_rental(rental_id)
        if rental.is_terminal:
            raise PreconditionViolation(
                f"Rental is already {rental.status.value}",
                status_code=409,
                rental_id=str(rental_id),
            )
        if target not in RENTAL_TRANSITIONS.get(rental.status, frozenset()):
            raise PreconditionViolation(
                f"Rental cannot go from {rental.status.value} to {target.value}",
                status_code=409,
                rental_id=str(rental_id),
            )

        await self._move(rental, target, reason, actor_id)
        return rental

    async def override_auto_cancel(self, rental_id: UUID, actor_id: UUID) -> Rental:
        """Keep a rental out of the no-show sweep."""
        rental = await self._require_rental(rental_id)
        if rental.is_terminal:
            raise PreconditionViolation(
                f"Rental is already {rental.status.value}",
                status_code=409,
                rental_id=str(rental_id),
            )
        if rental.auto_cancel_override:
            return rental

        rental.auto_cancel_override = True
        await self.db.flush()
        logger.info(f"[BOOKING] Auto-cancellation overridden for rental {rental.id}")
        await self.history.record_auto_cancel_override(rental.id, rental.status.value, actor_id)
        return rental

    async def auto_cancel_due(self, now: Optional[datetime] = None) -> list[UUID]:
        """Auto-cancel rentals whose customer missed pickup plus the grace period."""
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Rental)
            .where(
                Rental.status.in_(list(RENTAL_TRANSITIONS)),
                Rental.auto_cancel_enabled.is_(True),
                Rental.auto_cancel_override.is_(False),
                Rental.pickup_time.is_not(None),
                Rental.pickup_time < now,
            )
            .order_by(Rental.pickup_time)
            .with_for_update(skip_locked=True)
        )

        cancelled: list[UUID] = []
        for rental in result.scalars().all():
            if rental.pickup_time + timedelta(minutes=rental.grace_period_minutes) > now:
                continue
            await self._move(rental, RentalStatus.AUTO_CANCELLED, AUTO_CANCEL_REASON, None)
            cancelled.append(rental.id)

        if cancelled:
            logger.info(f"[BOOKING] Auto-cancelled {len(cancelled)} rentals")
        return cancelled
