"""Jobs outbox service for retried side effects.

Anything that must eventually happen, but must not fail the request that
produced it, goes through jobs_outbox. No fire-and-forget tasks.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import insert_ignoring_conflicts
from app.models.jobs import JobsOutbox
from app.models.enums import JobStatus, JobType

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[None]]

RETRY_BASE_DELAY = timedelta(seconds=30)


class JobsService:
    """Service for managing retried work via the outbox pattern."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        unique_scope: str,
        run_after: Optional[datetime] = None,
    ) -> Optional[uuid.UUID]:
        """Enqueue a job with unique_scope de-duplication.

        If a job with the same unique_scope already exists, returns None.
        Otherwise returns the new job ID.

        Args:
            job_type: Type of job
            payload: Job payload as JSON-serializable dict
            unique_scope: Unique identifier for de-duplication
            run_after: Optional delay before job should run

        Returns:
            Job ID if created, None if duplicate scope exists
        """
        job_id = uuid.uuid4()
        now = datetime.utcnow()

        stmt = insert_ignoring_conflicts(
            self.db,
            JobsOutbox,
            {
                "id": job_id,
                "type": job_type.value,
                "payload": payload,
                "status": JobStatus.PENDING,
                "unique_scope": unique_scope,
                "attempts": 0,
                "max_attempts": 5,
                "run_after": run_after or now,
                "created_at": now,
            },
            index_elements=["unique_scope"],
        )
        result = await self.db.execute(stmt)

        # rowcount will be 0 if conflict occurred
        if result.rowcount == 0:
            return None

        logger.info(f"[JOBS] Enqueued {job_type.value} ({unique_scope})")
        return job_id

    async def enqueue_record_history(
        self,
        rental_id: uuid.UUID,
        event_type: str,
        status: str,
        notes: Optional[str],
        created_by: Optional[uuid.UUID] = None,
    ) -> Optional[uuid.UUID]:
        """Enqueue a booking history entry that could not be written inline."""
        return await self.enqueue(
            job_type=JobType.RECORD_HISTORY,
            payload={
                "rental_id": str(rental_id),
                "event_type": event_type,
                "status": status,
                "notes": notes,
                "created_by": str(created_by) if created_by else None,
            },
            unique_scope=f"record_history:{uuid.uuid4()}",
        )

    async def enqueue_reconcile_event(
        self,
        event_key: str,
        event_payload: dict[str, Any],
    ) -> Optional[uuid.UUID]:
        """Enqueue a provider event whose local persistence failed."""
        return await self.enqueue(
            job_type=JobType.RECONCILE_PAYMENT_EVENT,
            payload={"event": event_payload},
            unique_scope=f"reconcile:{event_key}",
        )

    async def enqueue_operator_alert(
        self,
        kind: str,
        reference: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[uuid.UUID]:
        """Enqueue an alert for a human to look at (one per kind/reference)."""
        return await self.enqueue(
            job_type=JobType.OPERATOR_ALERT,
            payload={
                "kind": kind,
                "reference": reference,
                "message": message,
                "details": details or {},
            },
            unique_scope=f"alert:{kind}:{reference}",
        )

    async def claim_pending_jobs(
        self,
        job_type: Optional[JobType] = None,
        limit: int = 10,
    ) -> list[JobsOutbox]:
        """Claim pending jobs for processing.

        Atomically updates status to PROCESSING and returns jobs.
        """
        query = (
            select(JobsOutbox)
            .where(
                JobsOutbox.status == JobStatus.PENDING,
                JobsOutbox.run_after <= datetime.utcnow(),
            )
            .with_for_update(skip_locked=True)
        )

        if job_type:
            query = query.where(JobsOutbox.type == job_type.value)

        query = query.order_by(JobsOutbox.run_after).limit(limit)

        result = await self.db.execute(query)
        jobs = list(result.scalars().all())

        if not jobs:
            return []

        started_at = datetime.utcnow()
        for job in jobs:
            job.status = JobStatus.PROCESSING
            job.started_at = started_at
            job.attempts = (job.attempts or 0) + 1
        await self.db.flush()

        return jobs

    async def complete_job(self, job_id: uuid.UUID) -> None:
        """Mark job as completed."""
        await self.db.execute(
            update(JobsOutbox)
            .where(JobsOutbox.id == job_id)
            .values(
                status=JobStatus.COMPLETED,
                completed_at=datetime.utcnow(),
            )
        )

    async def fail_job(
        self,
        job_id: uuid.UUID,
        error: str,
        dead_letter: bool = False,
    ) -> None:
        """Mark job as failed.

        If dead_letter=True or max attempts reached, moves to DEAD_LETTER.
        Otherwise, resets to PENDING and pushes run_after back exponentially.
        """
        result = await self.db.execute(
            select(JobsOutbox).where(JobsOutbox.id == job_id)
        )
        job = result.scalar_one_or_none()

        if not job:
            return

        values: dict[str, Any] = {"last_error": error}
        if dead_letter or job.attempts >= job.max_attempts:
            values["status"] = JobStatus.DEAD_LETTER
            logger.critical(f"[JOBS] {job.type} {job.id} dead-lettered after {job.attempts} attempts: {error}")
        else:
            values["status"] = JobStatus.PENDING
            values["run_after"] = datetime.utcnow() + RETRY_BASE_DELAY * (2 ** max(job.attempts - 1, 0))
            logger.warning(f"[JOBS] {job.type} {job.id} failed (attempt {job.attempts}): {error}")

        await self.db.execute(
            update(JobsOutbox)
            .where(JobsOutbox.id == job_id)
            .values(**values)
        )

    async def run_pending(
        self,
        handlers: dict[JobType, JobHandler],
        limit: int = 10,
    ) -> tuple[int, int]:
        """Claim and run pending jobs. Returns (completed, failed).

        The claim is committed before any handler runs; each job's result is
        committed on its own so one bad job cannot hold the others back.
        """
        jobs = await self.claim_pending_jobs(limit=limit)
        await self.db.commit()

        completed = failed = 0
        for job in jobs:
            job_id, job_type, payload = job.id, job.type, dict(job.payload)
            handler = handlers.get(JobType(job_type))
            if handler is None:
                await self.fail_job(job_id, f"No handler for job type {job_type}", dead_letter=True)
                await self.db.commit()
                failed += 1
                continue

            try:
                await handler(payload)
            except Exception as e:
                await self.db.rollback()
                await self.fail_job(job_id, f"{type(e).__name__}: {e}")
                await self.db.commit()
                failed += 1
                continue

            await self.complete_job(job_id)
            await self.db.commit()
            completed += 1

        if jobs:
            logger.info(f"[JOBS] Ran {len(jobs)} jobs: {completed} completed, {failed} failed")
        return completed, failed
