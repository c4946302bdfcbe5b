"""
Payment Ledger

Local record of every provider payment artifact:
- Opening an attempt (one open deposit and one open full-payment attempt per rental)
- Looking records up from provider events
- Applying corroborated events (status, outcome, capture/payment ids, event log)
- Telling stale events apart from new ones
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PreconditionViolation
from app.models.enums import PaymentOutcome, PaymentProvider, ACTIVE_OUTCOMES
from app.models.payment import PaymentRecord
from app.services.adapters import PaymentEvent

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 50


def flatten_metadata(metadata: Optional[dict[str, Any]], prefix: str = "") -> dict[str, str]:
    """PayMongo metadata must be flat string -> string; nested keys are dotted."""
    flat: dict[str, str] = {}
    for key, value in (metadata or {}).items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(flatten_metadata(value, prefix=f"{name}."))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        elif value is not None:
            flat[name] = str(value)
    return flat


class PaymentLedger:
    """Reads and writes PaymentRecord rows inside the caller's transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def open_attempt(
        self,
        rental_id: UUID,
        provider: PaymentProvider,
        external_id: str,
        amount: Decimal,
        currency: str,
        is_deposit: bool,
        provider_status: str,
        metadata: dict[str, str],
        client_key: Optional[str] = None,
        checkout_url: Optional[str] = None,
    ) -> PaymentRecord:
        """Record a new provider artifact as the rental's open attempt.

        An earlier open attempt of the same kind is superseded: it keeps its
        row (a late success on it is still honoured) but no longer holds the
        rental's active slot.
        """
        active_key = PaymentRecord.make_active_key(rental_id, is_deposit)

        result = await self.db.execute(
            select(PaymentRecord).where(PaymentRecord.active_key == active_key).with_for_update()
        )
        previous = result.scalar_one_or_none()
        if previous is not None:
            logger.info(f"[LEDGER] Superseding {previous.provider.value} {previous.external_id} for rental {rental_id}")
            previous.outcome = PaymentOutcome.SUPERSEDED
            previous.active_key = None
            await self.db.flush()

        record = PaymentRecord(
            rental_id=rental_id,
            provider=provider,
            external_id=external_id,
            amount=amount,
            currency=currency,
            is_deposit=is_deposit,
            provider_status=provider_status,
            outcome=PaymentOutcome.PENDING,
            flat_metadata=metadata,
            event_log=[],
            client_key=client_key,
            checkout_url=checkout_url,
            active_key=active_key,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
                await self.db.flush()
        except IntegrityError as e:
            raise PreconditionViolation(
                "Another payment attempt for this rental is being created",
                status_code=409,
                rental_id=str(rental_id),
            ) from e

        logger.info(
            f"[LEDGER] Opened {provider.value} {external_id} for rental {rental_id} "
            f"({'deposit' if is_deposit else 'full'}, PHP {amount})"
        )
        return record

    async def get_by_external_id(
        self,
        provider: PaymentProvider,
        external_id: str,
        for_update: bool = False,
    ) -> Optional[PaymentRecord]:
        query = select(PaymentRecord).where(
            PaymentRecord.provider == provider,
            PaymentRecord.external_id == external_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_for_event(self, event: PaymentEvent, for_update: bool = False) -> Optional[PaymentRecord]:
        """By (provider, external id); PayPal capture events fall back to the capture id."""
        record = await self.get_by_external_id(event.provider, event.external_payment_id, for_update=for_update)
        if record is None and event.capture_id:
            query = select(PaymentRecord).where(
                PaymentRecord.provider == event.provider,
                PaymentRecord.capture_id == event.capture_id,
            )
            if for_update:
                query = query.with_for_update()
            result = await self.db.execute(query)
            record = result.scalar_one_or_none()
        return record

    @staticmethod
    def is_stale(record: PaymentRecord, event: PaymentEvent) -> bool:
        """Older than what we have, or a non-success after a recorded success."""
        if record.outcome == PaymentOutcome.SUCCEEDED and event.outcome != PaymentOutcome.SUCCEEDED:
            return True
        if event.occurred_at and record.last_event_at and event.occurred_at < record.last_event_at:
            return True
        return False

    @staticmethod
    def apply_event(record: PaymentRecord, event: PaymentEvent) -> PaymentOutcome:
        """Overwrite the record with the event. Returns the previous outcome."""
        previous = record.outcome

        record.provider_status = event.raw_status
        # A pending poll does not reopen a superseded attempt
        if not (previous == PaymentOutcome.SUPERSEDED and event.outcome in ACTIVE_OUTCOMES):
            record.outcome = event.outcome
        if record.outcome not in ACTIVE_OUTCOMES:
            record.active_key = None

        if event.occurred_at and (record.last_event_at is None or event.occurred_at > record.last_event_at):
            record.last_event_at = event.occurred_at
        if event.capture_id:
            record.capture_id = event.capture_id
        if event.payment_id:
            record.payment_id = event.payment_id
        if event.payment_method_id:
            record.payment_method_id = event.payment_method_id
        if event.outcome == PaymentOutcome.FAILED:
            record.last_error = event.error_message or event.raw_status

        entry = {
            "received_at": datetime.utcnow().isoformat(),
            "event_type": event.event_type,
            "provider_event_id": event.provider_event_id,
            "raw_status": event.raw_status,
            "outcome": event.outcome.value,
            "capture_id": event.capture_id,
            "payment_id": event.payment_id,
            "error": event.error_message,
        }
        record.event_log = [*(record.event_log or []), entry][-EVENT_LOG_LIMIT:]

        return previous
