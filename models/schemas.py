"""
Core data models for the scheduled-message system.
These are the universal types shared across all modules.

All timestamps are integer epoch milliseconds (UTC). Text or datetime
input is normalised at the boundary by utils.clock before it gets here.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELED = "canceled"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


TERMINAL_STATUSES = frozenset({JobStatus.SENT, JobStatus.CANCELED})

# Every legal edge of the job state machine. Stores only ever perform
# conditional updates along one of these.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.SENDING, JobStatus.CANCELED}),
    JobStatus.SENDING: frozenset({JobStatus.SENT, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.SENT: frozenset(),
    JobStatus.CANCELED: frozenset(),
}

CANCELABLE_STATUSES = (JobStatus.PENDING, JobStatus.FAILED)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(JobStatus(current), frozenset())


def make_dedup_key(client_ref: str, template_ref: str) -> str:
    """Key that allows at most one job per (client, template) pair, ever."""
    return f"{client_ref}:{template_ref}"


# ──────────────────────────────────────────────────────────────
#  Client & Template: read models owned by the CRM
# ──────────────────────────────────────────────────────────────

class ClientSnapshot(BaseModel):
    """The client fields the enqueuer and dispatcher read."""
    id: str
    name: str = ""
    phone: str = ""
    status_label: str = ""
    office: str = ""
    case_type: str = ""
    appointment_type: str = ""
    language: str = ""

    @field_validator(
        "name", "phone", "status_label", "office",
        "case_type", "appointment_type", "language",
        mode="before",
    )
    @classmethod
    def _none_is_empty(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> str:
        return str(v)


class MessageTemplate(BaseModel):
    """A follow-up template. Empty filters are wildcards."""
    id: str
    name: str = ""
    status_filter: str = ""
    office_filter: str = ""
    case_type_filter: str = ""
    appointment_type_filter: str = ""
    language_filter: str = ""
    delay_hours: float = 0.0
    body_template: str = ""
    active: bool = True

    @field_validator(
        "status_filter", "office_filter", "case_type_filter",
        "appointment_type_filter", "language_filter",
        mode="before",
    )
    @classmethod
    def _none_is_wildcard(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> str:
        return str(v)

    @property
    def delay_ms(self) -> int:
        return int(round(self.delay_hours * 3_600_000))


# ──────────────────────────────────────────────────────────────
#  Scheduled Job
# ──────────────────────────────────────────────────────────────

class JobDraft(BaseModel):
    """What the enqueuer (or a manual request) hands to the store."""
    client_ref: str
    send_time: int
    payload_text: str
    template_ref: Optional[str] = None
    dedup_key: Optional[str] = None


class ScheduledJob(BaseModel):
    id: int
    client_ref: str
    template_ref: Optional[str] = None
    send_time: int
    payload_text: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    retryable: bool = True
    sent_time: Optional[int] = None
    dedup_key: Optional[str] = None
    created_time: int = 0
    updated_time: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class EnqueueResult(BaseModel):
    """Outcome of a store enqueue: a new id, or a duplicate skip."""
    job_id: Optional[int] = None
    duplicate: bool = False

    @classmethod
    def created(cls, job_id: int) -> EnqueueResult:
        return cls(job_id=job_id)

    @classmethod
    def skipped(cls) -> EnqueueResult:
        return cls(duplicate=True)


class JobFilter(BaseModel):
    status: Optional[JobStatus] = None
    client_ref: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)


# ──────────────────────────────────────────────────────────────
#  Message history
# ──────────────────────────────────────────────────────────────

class MessageRecord(BaseModel):
    """Append-only history entry for one delivered communication."""
    id: Optional[int] = None
    client_ref: str
    job_id: Optional[int] = None
    direction: MessageDirection = MessageDirection.OUTBOUND
    sender: str = "system"
    text: str
    provider_message_id: str = ""
    delivery_status: str = "sent"
    created_time: int = 0
