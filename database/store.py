"""
SqlJobStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

State changes are single UPDATE ... WHERE id = ? AND status IN (...)
statements; the affected row count decides the outcome. There is never a
read-then-write pair on the hot path, so two dispatchers racing for the
same row are serialised by the database itself.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from database.models import MessageRow, ScheduledJobRow
from database.session import SessionScope, get_session
from database.store_base import BaseJobStore
from models.schemas import (
    CANCELABLE_STATUSES, EnqueueResult, JobDraft, JobFilter, JobStatus,
    MessageDirection, MessageRecord, ScheduledJob,
)
from utils.clock import now_ms

logger = structlog.get_logger()


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_scope: SessionScope = get_session):
        self._session = session_scope

    # ── Job operations ─────────────────────────────────────

    async def enqueue(self, draft: JobDraft) -> EnqueueResult:
        if draft.dedup_key:
            async with self._session() as db:
                stmt = select(ScheduledJobRow.id).where(
                    ScheduledJobRow.dedup_key == draft.dedup_key
                )
                result = await db.execute(stmt)
                if result.scalar_one_or_none() is not None:
                    logger.debug("enqueue_duplicate_skipped", dedup_key=draft.dedup_key)
                    return EnqueueResult.skipped()

        now = now_ms()
        try:
            async with self._session() as db:
                row = ScheduledJobRow(
                    client_ref=draft.client_ref,
                    template_ref=draft.template_ref,
                    send_time=draft.send_time,
                    payload_text=draft.payload_text,
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    retryable=True,
                    dedup_key=draft.dedup_key,
                    created_time=now,
                    updated_time=now,
                )
                db.add(row)
                await db.flush()
                job_id = row.id
        except IntegrityError:
            if not draft.dedup_key:
                raise
            # Lost the race against a concurrent enqueue with the same key
            logger.debug("enqueue_duplicate_constraint", dedup_key=draft.dedup_key)
            return EnqueueResult.skipped()

        logger.info("job_enqueued", job_id=job_id, client_id=draft.client_ref,
                    template_id=draft.template_ref, send_time=draft.send_time)
        return EnqueueResult.created(job_id)

    async def get_job(self, job_id: int) -> Optional[ScheduledJob]:
        async with self._session() as db:
            row = await db.get(ScheduledJobRow, job_id)
            return self._row_to_job(row) if row else None

    async def list_due(self, now: int, limit: int, max_attempts: int) -> list[ScheduledJob]:
        async with self._session() as db:
            stmt = (
                select(ScheduledJobRow)
                .where(and_(
                    ScheduledJobRow.status == JobStatus.PENDING.value,
                    ScheduledJobRow.send_time <= now,
                    ScheduledJobRow.attempts < max_attempts,
                ))
                .order_by(ScheduledJobRow.send_time.asc(), ScheduledJobRow.id.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    async def claim(self, job_id: int) -> bool:
        return await self._transition(
            job_id,
            from_statuses=(JobStatus.PENDING,),
            status=JobStatus.SENDING.value,
        )

    async def mark_sent(self, job_id: int, sent_time: int) -> bool:
        return await self._transition(
            job_id,
            from_statuses=(JobStatus.SENDING,),
            status=JobStatus.SENT.value,
            sent_time=sent_time,
            last_error=None,
        )

    async def mark_failed(self, job_id: int, error_text: str, permanent: bool = False) -> bool:
        values = {
            "status": JobStatus.FAILED.value,
            "attempts": ScheduledJobRow.attempts + 1,
            "last_error": error_text,
        }
        if permanent:
            values["retryable"] = False
        return await self._transition(
            job_id,
            from_statuses=(JobStatus.SENDING, JobStatus.FAILED),
            **values,
        )

    async def requeue_stale_failures(self, max_attempts: int, cooldown_ms: int, now: int) -> int:
        async with self._session() as db:
            stmt = (
                update(ScheduledJobRow)
                .where(and_(
                    ScheduledJobRow.status == JobStatus.FAILED.value,
                    ScheduledJobRow.retryable.is_(True),
                    ScheduledJobRow.attempts < max_attempts,
                    ScheduledJobRow.updated_time <= now - cooldown_ms,
                ))
                .values(status=JobStatus.PENDING.value, updated_time=now)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            count = result.rowcount or 0
        if count:
            logger.info("failed_jobs_requeued", count=count)
        return count

    async def cancel(self, job_id: int, now: Optional[int] = None) -> bool:
        return await self._transition(
            job_id,
            from_statuses=CANCELABLE_STATUSES,
            status=JobStatus.CANCELED.value,
            now=now,
        )

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> list[ScheduledJob]:
        job_filter = job_filter or JobFilter()
        async with self._session() as db:
            stmt = select(ScheduledJobRow)
            if job_filter.status is not None:
                stmt = stmt.where(ScheduledJobRow.status == JobStatus(job_filter.status).value)
            if job_filter.client_ref is not None:
                stmt = stmt.where(ScheduledJobRow.client_ref == job_filter.client_ref)
            stmt = (
                stmt.order_by(ScheduledJobRow.send_time.desc(), ScheduledJobRow.id.desc())
                .limit(job_filter.limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    # ── Message history ────────────────────────────────────

    async def append_message(self, record: MessageRecord) -> MessageRecord:
        async with self._session() as db:
            row = MessageRow(
                client_ref=record.client_ref,
                job_id=record.job_id,
                sender=record.sender,
                direction=MessageDirection(record.direction).value,
                text=record.text,
                provider_message_id=record.provider_message_id,
                delivery_status=record.delivery_status,
                created_time=record.created_time or now_ms(),
            )
            db.add(row)
            await db.flush()
            return self._row_to_message(row)

    async def list_messages(self, client_ref: str, limit: int = 50) -> list[MessageRecord]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.client_ref == client_ref)
                .order_by(MessageRow.created_time.desc(), MessageRow.id.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    async def update_delivery_status(self, provider_message_id: str, status: str) -> bool:
        if not provider_message_id:
            return False
        async with self._session() as db:
            stmt = (
                update(MessageRow)
                .where(MessageRow.provider_message_id == provider_message_id)
                .values(delivery_status=status)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return (result.rowcount or 0) > 0

    # ── Internals ──────────────────────────────────────────

    async def _transition(
        self, job_id: int, from_statuses: tuple[JobStatus, ...],
        now: Optional[int] = None, **values,
    ) -> bool:
        """Single conditional UPDATE; True iff exactly this call moved the row."""
        async with self._session() as db:
            stmt = (
                update(ScheduledJobRow)
                .where(and_(
                    ScheduledJobRow.id == job_id,
                    ScheduledJobRow.status.in_([s.value for s in from_statuses]),
                ))
                .values(**values, updated_time=now or now_ms())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return (result.rowcount or 0) == 1

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: ScheduledJobRow) -> ScheduledJob:
        return ScheduledJob(**row.to_dict())

    @staticmethod
    def _row_to_message(row: MessageRow) -> MessageRecord:
        return MessageRecord(
            id=row.id, client_ref=row.client_ref, job_id=row.job_id,
            direction=MessageDirection(row.direction), sender=row.sender,
            text=row.text, provider_message_id=row.provider_message_id or "",
            delivery_status=row.delivery_status or "sent",
            created_time=row.created_time,
        )
