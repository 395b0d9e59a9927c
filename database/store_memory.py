"""
InMemoryJobStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlJobStore, same ordering rules
  - Atomic within a single event loop: no conditional update awaits
    between its check and its write
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import itertools
import structlog
from collections import defaultdict
from typing import Any, Optional

from database.store_base import BaseJobStore
from models.schemas import (
    CANCELABLE_STATUSES, EnqueueResult, JobDraft, JobFilter, JobStatus,
    MessageRecord, ScheduledJob,
)
from utils.clock import now_ms

logger = structlog.get_logger()


class InMemoryJobStore(BaseJobStore):
    """
    Full-featured in-memory store with the same interface as SqlJobStore.
    Rows are kept as dicts and copied into models on the way out, so
    callers can never mutate stored state.
    """

    def __init__(self):
        self._jobs: dict[int, dict[str, Any]] = {}            # id → job dict
        self._messages: dict[str, list[dict]] = defaultdict(list)  # client_ref → [msg dicts]
        self._job_ids = itertools.count(1)
        self._message_ids = itertools.count(1)

        # Indexes
        self._dedup_index: dict[str, int] = {}                # dedup_key → job id
        logger.info("inmemory_store_initialized")

    # ── Jobs ──────────────────────────────────────────────

    async def enqueue(self, draft: JobDraft) -> EnqueueResult:
        if draft.dedup_key and draft.dedup_key in self._dedup_index:
            logger.debug("enqueue_duplicate_skipped", dedup_key=draft.dedup_key)
            return EnqueueResult.skipped()

        now = now_ms()
        job_id = next(self._job_ids)
        self._jobs[job_id] = {
            "id": job_id,
            "client_ref": draft.client_ref,
            "template_ref": draft.template_ref,
            "send_time": draft.send_time,
            "payload_text": draft.payload_text,
            "status": JobStatus.PENDING,
            "attempts": 0,
            "last_error": None,
            "retryable": True,
            "sent_time": None,
            "dedup_key": draft.dedup_key,
            "created_time": now,
            "updated_time": now,
        }
        if draft.dedup_key:
            self._dedup_index[draft.dedup_key] = job_id

        logger.info("job_enqueued", job_id=job_id, client_id=draft.client_ref,
                    template_id=draft.template_ref, send_time=draft.send_time)
        return EnqueueResult.created(job_id)

    async def get_job(self, job_id: int) -> Optional[ScheduledJob]:
        data = self._jobs.get(job_id)
        return ScheduledJob(**data) if data else None

    async def list_due(self, now: int, limit: int, max_attempts: int) -> list[ScheduledJob]:
        due = [
            j for j in self._jobs.values()
            if j["status"] == JobStatus.PENDING
            and j["send_time"] <= now
            and j["attempts"] < max_attempts
        ]
        due.sort(key=lambda j: (j["send_time"], j["id"]))
        return [ScheduledJob(**j) for j in due[:limit]]

    async def claim(self, job_id: int) -> bool:
        return self._transition(job_id, (JobStatus.PENDING,), status=JobStatus.SENDING)

    async def mark_sent(self, job_id: int, sent_time: int) -> bool:
        return self._transition(
            job_id, (JobStatus.SENDING,),
            status=JobStatus.SENT, sent_time=sent_time, last_error=None,
        )

    async def mark_failed(self, job_id: int, error_text: str, permanent: bool = False) -> bool:
        job = self._jobs.get(job_id)
        if not job or job["status"] not in (JobStatus.SENDING, JobStatus.FAILED):
            return False
        job["status"] = JobStatus.FAILED
        job["attempts"] += 1
        job["last_error"] = error_text
        if permanent:
            job["retryable"] = False
        job["updated_time"] = now_ms()
        return True

    async def requeue_stale_failures(self, max_attempts: int, cooldown_ms: int, now: int) -> int:
        count = 0
        for job in self._jobs.values():
            if (
                job["status"] == JobStatus.FAILED
                and job["retryable"]
                and job["attempts"] < max_attempts
                and job["updated_time"] <= now - cooldown_ms
            ):
                job["status"] = JobStatus.PENDING
                job["updated_time"] = now
                count += 1
        if count:
            logger.info("failed_jobs_requeued", count=count)
        return count

    async def cancel(self, job_id: int, now: Optional[int] = None) -> bool:
        return self._transition(job_id, CANCELABLE_STATUSES, now=now, status=JobStatus.CANCELED)

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> list[ScheduledJob]:
        job_filter = job_filter or JobFilter()
        jobs = list(self._jobs.values())
        if job_filter.status is not None:
            jobs = [j for j in jobs if j["status"] == JobStatus(job_filter.status)]
        if job_filter.client_ref is not None:
            jobs = [j for j in jobs if j["client_ref"] == job_filter.client_ref]
        jobs.sort(key=lambda j: (j["send_time"], j["id"]), reverse=True)
        return [ScheduledJob(**j) for j in jobs[:job_filter.limit]]

    # ── Messages ──────────────────────────────────────────

    async def append_message(self, record: MessageRecord) -> MessageRecord:
        msg = record.model_dump()
        msg["id"] = next(self._message_ids)
        msg["created_time"] = record.created_time or now_ms()
        self._messages[record.client_ref].append(msg)
        return MessageRecord(**msg)

    async def list_messages(self, client_ref: str, limit: int = 50) -> list[MessageRecord]:
        msgs = self._messages.get(client_ref, [])
        # Return last N messages in chronological order
        return [MessageRecord(**m) for m in msgs[-limit:]]

    async def update_delivery_status(self, provider_message_id: str, status: str) -> bool:
        if not provider_message_id:
            return False
        updated = False
        for msgs in self._messages.values():
            for m in msgs:
                if m["provider_message_id"] == provider_message_id:
                    m["delivery_status"] = status
                    updated = True
        return updated

    # ── Helpers ───────────────────────────────────────────

    def _transition(
        self, job_id: int, from_statuses: tuple[JobStatus, ...],
        now: Optional[int] = None, **values,
    ) -> bool:
        job = self._jobs.get(job_id)
        if not job or job["status"] not in from_statuses:
            return False
        job.update(values)
        job["updated_time"] = now or now_ms()
        return True

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        by_status: dict[str, int] = defaultdict(int)
        for j in self._jobs.values():
            by_status[JobStatus(j["status"]).value] += 1
        return {
            "jobs": len(self._jobs),
            "messages": sum(len(v) for v in self._messages.values()),
            **by_status,
        }
