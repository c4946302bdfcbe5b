"""Deposit payout manager: hands a forfeited deposit to the shop, once."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PreconditionViolation, RecordNotFound
from app.models.enums import PAYOUT_ELIGIBLE_STATUSES, PayoutStatus
from app.models.payout import Payout
from app.models.rental import Rental
from app.models.user import Shop, User
from app.services.history import HistoryRecorder

logger = logging.getLogger(__name__)

DEFAULT_PAYOUT_REASON = "Customer no-show"


class DepositPayoutManager:
    """Creates Payout records for no-show and cancelled rentals.

    Preconditions are checked in order and the first failure wins. The
    rental row is locked, and the unique rental_id on deposit_payouts
    settles any race that gets past the lock.
    """

    def __init__(self, db: AsyncSession, history: Optional[HistoryRecorder] = None):
        self.db = db
        self.history = history or HistoryRecorder(db)

    async def payout(self, rental_id: UUID, reason: Optional[str], actor_id: UUID) -> Payout:
        result = await self.db.execute(
            select(Rental).where(Rental.id == rental_id).with_for_update()
        )
        rental = result.scalar_one_or_none()
        if rental is None:
            raise RecordNotFound(f"Rental {rental_id} not found", rental_id=str(rental_id))

        if not (rental.deposit_required and rental.deposit_paid):
            raise PreconditionViolation("Rental has no paid deposit", rental_id=str(rental_id))

        if rental.status not in PAYOUT_ELIGIBLE_STATUSES:
            raise PreconditionViolation(
                f"Deposit can only be paid out for no-show or cancelled rentals, not {rental.status.value}",
                rental_id=str(rental_id),
            )

        shop = await self.db.get(Shop, rental.shop_id)
        owner = await self.db.get(User, shop.owner_id) if shop and shop.owner_id else None
        if shop is None or owner is None:
            raise PreconditionViolation("Shop or shop owner not found", rental_id=str(rental_id))
        if not owner.payment_details:
            raise PreconditionViolation(
                "Shop owner has no payment details on file",
                rental_id=str(rental_id),
            )

        existing = await self.db.execute(select(Payout.id).where(Payout.rental_id == rental_id))
        if rental.deposit_processed or existing.scalar_one_or_none() is not None:
            raise PreconditionViolation(
                "Deposit has already been processed",
                status_code=409,
                rental_id=str(rental_id),
            )

        payout = Payout(
            rental_id=rental.id,
            shop_id=shop.id,
            amount=rental.deposit_amount,
            status=PayoutStatus.PENDING,
            reason=reason or DEFAULT_PAYOUT_REASON,
            processed_by=actor_id,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(payout)
                await self.db.flush()
        except IntegrityError as e:
            raise PreconditionViolation(
                "Deposit has already been processed",
                status_code=409,
                rental_id=str(rental_id),
            ) from e

        rental.deposit_processed = True
        await self.db.flush()

        logger.info(f"[PAYOUT] Deposit payout {payout.id} of PHP {payout.amount} for rental {rental.id} to shop {shop.id}")
        await self.history.record_deposit_payout(
            rental.id,
            f"{payout.amount:.2f}",
            payout.reason,
            actor_id,
        )
        return payout
