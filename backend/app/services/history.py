"""Booking history recorder."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.booking_history import BookingHistoryEntry
from app.models.enums import HistoryEventType
from app.services.jobs import JobsService

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Appends booking history entries.

    Entries are written inside the caller's transaction, after the state
    change they describe, so they commit (or roll back) with it. A failed
    write never fails the caller: it is retried through the jobs outbox.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        rental_id: UUID,
        event_type: HistoryEventType,
        status: str,
        notes: Optional[str] = None,
        created_by: Optional[UUID] = None,
    ) -> Optional[BookingHistoryEntry]:
        """Append an entry. Returns None if it had to be deferred."""
        entry = BookingHistoryEntry(
            rental_id=rental_id,
            event_type=event_type,
            status=status,
            notes=notes,
            created_by=created_by,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
                await self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"[HISTORY] Write failed for rental {rental_id} ({event_type.value}), deferring: {e}")
            await JobsService(self.db).enqueue_record_history(
                rental_id=rental_id,
                event_type=event_type.value,
                status=status,
                notes=notes,
                created_by=created_by,
            )
            return None
        return entry

    async def record_payment_succeeded(
        self,
        rental_id: UUID,
        status: str,
        is_deposit: bool,
        amount: str,
        provider: str,
        reference: str,
    ) -> Optional[BookingHistoryEntry]:
        if is_deposit:
            return await self.record(
                rental_id,
                HistoryEventType.DEPOSIT_PAID,
                status,
                f"Deposit of PHP {amount} received via {provider} ({reference})",
            )
        return await self.record(
            rental_id,
            HistoryEventType.PAYMENT_SUCCEEDED,
            status,
            f"Payment of PHP {amount} received via {provider} ({reference})",
        )

    async def record_payment_failed(
        self,
        rental_id: UUID,
        status: str,
        is_deposit: bool,
        provider: str,
        reference: str,
        error: Optional[str] = None,
    ) -> Optional[BookingHistoryEntry]:
        what = "Deposit payment" if is_deposit else "Payment"
        notes = f"{what} failed via {provider} ({reference})"
        if error:
            notes = f"{notes}: {error}"
        return await self.record(
            rental_id,
            HistoryEventType.DEPOSIT_FAILED if is_deposit else HistoryEventType.PAYMENT_FAILED,
            status,
            notes,
        )

    async def record_late_payment(
        self,
        rental_id: UUID,
        status: str,
        provider: str,
        reference: str,
    ) -> Optional[BookingHistoryEntry]:
        """Payment succeeded after the rental reached a terminal status."""
        return await self.record(
            rental_id,
            HistoryEventType.LATE_PAYMENT,
            status,
            f"Payment received via {provider} ({reference}) after rental was {status}; status kept",
        )

    async def record_dates_blocked(
        self,
        rental_id: UUID,
        count: int,
    ) -> Optional[BookingHistoryEntry]:
        return await self.record(
            rental_id,
            HistoryEventType.DATES_BLOCKED,
            "completed",
            f"Blocked {count} dates for this booking",
        )

    async def record_deposit_payout(
        self,
        rental_id: UUID,
        amount: str,
        reason: str,
        created_by: UUID,
    ) -> Optional[BookingHistoryEntry]:
        return await self.record(
            rental_id,
            HistoryEventType.DEPOSIT_PAYOUT,
            "completed",
            f"Deposit of PHP {amount} paid out to shop: {reason}",
            created_by=created_by,
        )

    async def record_status_change(
        self,
        rental_id: UUID,
        previous: str,
        status: str,
        reason: Optional[str] = None,
        created_by: Optional[UUID] = None,
    ) -> Optional[BookingHistoryEntry]:
        notes = f"Rental {previous} -> {status}"
        if reason:
            notes = f"{notes}: {reason}"
        return await self.record(
            rental_id,
            HistoryEventType.STATUS_CHANGED,
            status,
            notes,
            created_by=created_by,
        )

    async def record_auto_cancel_override(
        self,
        rental_id: UUID,
        status: str,
        created_by: UUID,
    ) -> Optional[BookingHistoryEntry]:
        return await self.record(
            rental_id,
            HistoryEventType.AUTO_CANCEL_OVERRIDE,
            status,
            "Auto-cancellation overridden; the customer may arrive at any time",
            created_by=created_by,
        )
