"""Inventory blocker: reserves a vehicle's calendar days for a confirmed rental."""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import insert_ignoring_conflicts
from app.core.errors import PreconditionViolation
from app.models.booking_history import BlockedDate
from app.services.history import HistoryRecorder

logger = logging.getLogger(__name__)


@dataclass
class BlockResult:
    blocked_count: int
    requested_count: int


def iter_dates(start_date: date, end_date: date) -> Iterator[date]:
    """Every calendar day from start_date to end_date, inclusive."""
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


class InventoryBlocker:
    """Marks dates unavailable, never twice.

    Safe to call again for the same rental: dates already blocked (by this
    rental or any other) are skipped, and only newly blocked days are
    counted. Concurrent callers are settled by the (vehicle_id, date)
    unique constraint.
    """

    def __init__(self, db: AsyncSession, history: Optional[HistoryRecorder] = None):
        self.db = db
        self.history = history or HistoryRecorder(db)

    async def block(
        self,
        vehicle_id: uuid.UUID,
        start_date: date,
        end_date: date,
        rental_id: uuid.UUID,
    ) -> BlockResult:
        if start_date > end_date:
            raise PreconditionViolation(
                f"Start date {start_date} is after end date {end_date}",
                rental_id=str(rental_id),
            )

        requested = list(iter_dates(start_date, end_date))

        result = await self.db.execute(
            select(BlockedDate.blocked_on).where(
                BlockedDate.vehicle_id == vehicle_id,
                BlockedDate.blocked_on.in_(requested),
            )
        )
        already_blocked = set(result.scalars().all())
        new_dates = [d for d in requested if d not in already_blocked]

        if not new_dates:
            logger.info(f"[INVENTORY] All {len(requested)} dates already blocked for vehicle {vehicle_id}")
            return BlockResult(blocked_count=0, requested_count=len(requested))

        now = datetime.utcnow()
        rows = [
            {
                "id": uuid.uuid4(),
                "vehicle_id": vehicle_id,
                "date": d,
                "reason": f"Booked (Rental #{rental_id})",
                "rental_id": rental_id,
                "created_at": now,
            }
            for d in new_dates
        ]
        insert_result = await self.db.execute(
            insert_ignoring_conflicts(self.db, BlockedDate, rows, index_elements=["vehicle_id", "date"])
        )
        blocked_count = insert_result.rowcount

        logger.info(
            f"[INVENTORY] Blocked {blocked_count}/{len(requested)} dates for vehicle {vehicle_id} "
            f"(rental {rental_id})"
        )
        if blocked_count > 0:
            await self.history.record_dates_blocked(rental_id, blocked_count)

        return BlockResult(blocked_count=blocked_count, requested_count=len(requested))
