"""
Abstract Job Store — Interface for all storage backends.

Implementations:
  - SqlJobStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)

Every state change is a single conditional update along an edge of the
job state machine (models.schemas.ALLOWED_TRANSITIONS). A conditional
update that matches no row returns False; it never raises. That is how
claim contention, late cancels and terminal-state closure are expressed.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import (
    EnqueueResult, JobDraft, JobFilter, MessageRecord, ScheduledJob,
)


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    # ── Jobs ──────────────────────────────────────────────────

    @abstractmethod
    async def enqueue(self, draft: JobDraft) -> EnqueueResult:
        """Insert a pending job, or report a duplicate dedup_key without raising."""
        ...

    @abstractmethod
    async def get_job(self, job_id: int) -> Optional[ScheduledJob]:
        ...

    @abstractmethod
    async def list_due(self, now: int, limit: int, max_attempts: int) -> list[ScheduledJob]:
        """Pending jobs with send_time <= now and attempts < max_attempts, oldest first."""
        ...

    @abstractmethod
    async def claim(self, job_id: int) -> bool:
        """Atomic pending → sending. False when someone else got there first."""
        ...

    @abstractmethod
    async def mark_sent(self, job_id: int, sent_time: int) -> bool:
        """sending → sent."""
        ...

    @abstractmethod
    async def mark_failed(self, job_id: int, error_text: str, permanent: bool = False) -> bool:
        """sending|failed → failed, attempts += 1."""
        ...

    @abstractmethod
    async def requeue_stale_failures(self, max_attempts: int, cooldown_ms: int, now: int) -> int:
        """failed → pending for retryable jobs past their cooldown. Returns rows moved."""
        ...

    @abstractmethod
    async def cancel(self, job_id: int, now: Optional[int] = None) -> bool:
        """pending|failed → canceled. Never touches a job already sending."""
        ...

    @abstractmethod
    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> list[ScheduledJob]:
        ...

    # ── Message history ───────────────────────────────────────

    @abstractmethod
    async def append_message(self, record: MessageRecord) -> MessageRecord:
        ...

    @abstractmethod
    async def list_messages(self, client_ref: str, limit: int = 50) -> list[MessageRecord]:
        """Most recent messages for a client, returned in chronological order."""
        ...

    @abstractmethod
    async def update_delivery_status(self, provider_message_id: str, status: str) -> bool:
        ...
