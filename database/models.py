"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - Every timestamp is a BigInteger of epoch milliseconds (UTC). No
    DATETIME/TEXT timestamps, so ordering in SQL is always numeric.
  - Integer autoincrement primary keys on jobs/messages: ascending id is
    the deterministic tie-break for jobs due at the same instant.
  - clients / templates belong to the CRM; they are mapped here only so the
    SQL directory can read them from the shared database.
"""
from __future__ import annotations

import time
from typing import Any, Optional

from sqlalchemy import (
    BigInteger, Boolean, Float, Index, Integer, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


# ──────────────────────────────────────────────────────────────
#  Scheduled jobs
# ──────────────────────────────────────────────────────────────

class ScheduledJobRow(Base):
    __tablename__ = "scheduled_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    template_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    send_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload_text: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sent_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    dedup_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    created_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_now_ms)
    updated_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_now_ms)

    __table_args__ = (
        Index("ux_scheduled_jobs_dedup_key", "dedup_key", unique=True),
        Index("ix_scheduled_jobs_status_send_time", "status", "send_time"),
        Index("ix_scheduled_jobs_client", "client_ref"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "client_ref": self.client_ref,
            "template_ref": self.template_ref, "send_time": self.send_time,
            "payload_text": self.payload_text, "status": self.status,
            "attempts": self.attempts, "last_error": self.last_error,
            "retryable": self.retryable, "sent_time": self.sent_time,
            "dedup_key": self.dedup_key, "created_time": self.created_time,
            "updated_time": self.updated_time,
        }


# ──────────────────────────────────────────────────────────────
#  Message history
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sender: Mapped[str] = mapped_column(String(32), default="system")
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)

    provider_message_id: Mapped[str] = mapped_column(String(64), default="")
    delivery_status: Mapped[str] = mapped_column(String(32), default="sent")

    created_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=_now_ms)

    __table_args__ = (
        Index("ix_messages_client_time", "client_ref", "created_time"),
        Index("ix_messages_provider_id", "provider_message_id"),
    )


# ──────────────────────────────────────────────────────────────
#  CRM-owned tables (read by SqlClientDirectory)
# ──────────────────────────────────────────────────────────────

class ClientRow(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    office: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    case_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    appointment_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


class TemplateRow(Base):
    __tablename__ = "templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(128), default="")
    office: Mapped[str] = mapped_column(String(64), default="")
    case_type: Mapped[str] = mapped_column(String(64), default="")
    appointment_type: Mapped[str] = mapped_column(String(64), default="")
    language: Mapped[str] = mapped_column(String(32), default="")
    delay_hours: Mapped[float] = mapped_column(Float, default=0.0)
    template: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("ix_templates_active_status", "active", "status"),
    )
