"""Idempotency guard over processed_webhook_events."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import insert_ignoring_conflicts
from app.models.payment import ProcessedWebhookEvent
from app.services.adapters import PaymentEvent

logger = logging.getLogger(__name__)


@dataclass
class Admission:
    admitted: bool
    # First delivery's acknowledgement when not admitted
    response: Optional[dict[str, Any]] = None


class IdempotencyGuard:
    """Admits each (artifact, outcome) pair once.

    The key row is inserted in the caller's transaction. It becomes durable
    only together with the state change it guards, and concurrent
    deliveries of the same key serialize on the unique index.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def admit(self, event: PaymentEvent) -> Admission:
        stmt = insert_ignoring_conflicts(
            self.db,
            ProcessedWebhookEvent,
            {
                "id": uuid.uuid4(),
                "event_key": event.event_key,
                "provider": event.provider,
                "external_id": event.external_payment_id,
                "outcome": event.outcome,
                "created_at": datetime.utcnow(),
            },
            index_elements=["event_key"],
        )
        result = await self.db.execute(stmt)
        if result.rowcount:
            return Admission(admitted=True)

        existing = await self.db.execute(
            select(ProcessedWebhookEvent.response).where(ProcessedWebhookEvent.event_key == event.event_key)
        )
        logger.info(f"[IDEMPOTENCY] Duplicate event {event.event_key}")
        return Admission(admitted=False, response=existing.scalar_one_or_none())

    async def record_response(self, event_key: str, response: dict[str, Any]) -> None:
        """Store the acknowledgement to replay for later duplicates."""
        await self.db.execute(
            update(ProcessedWebhookEvent)
            .where(ProcessedWebhookEvent.event_key == event_key)
            .values(response=response)
        )
