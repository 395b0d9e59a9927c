"""
Scheduling Service — The operations callers outside the scheduler use.

  enqueue_for_trigger   — status-change handler entry point
  trigger_status_change — same, looking the client up first
  schedule_manual       — ad-hoc reminder, bypasses template matching
  cancel                — administrative cancel (pending/failed only)
  list_jobs             — admin listing

Input timestamps may be epoch ms, datetimes or ISO text; they are
normalised here and never reach the store as text.
"""
from __future__ import annotations

import structlog
from typing import Optional

from backend.directory import ClientDirectory
from database.store_base import BaseJobStore
from models.schemas import (
    ClientSnapshot, JobDraft, JobFilter, MessageRecord, ScheduledJob,
)
from rules.engine import TemplateEnqueuer
from utils.clock import TimeInput, now_ms, to_epoch_ms

logger = structlog.get_logger()


class ClientNotFoundError(ValueError):
    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client {client_id} not found")


class SchedulingService:

    def __init__(
        self,
        store: BaseJobStore,
        directory: ClientDirectory,
        enqueuer: Optional[TemplateEnqueuer] = None,
    ):
        self.store = store
        self.directory = directory
        self.enqueuer = enqueuer or TemplateEnqueuer(store, directory)

    # ── Triggers ──────────────────────────────────────────────

    async def enqueue_for_trigger(self, client: ClientSnapshot, trigger_time: TimeInput) -> int:
        return await self.enqueuer.enqueue_for_trigger(client, trigger_time)

    async def trigger_status_change(
        self, client_id: str, trigger_time: Optional[TimeInput] = None,
    ) -> int:
        """Load the client's current snapshot and enqueue matching templates."""
        client = await self.directory.get_client(str(client_id))
        if client is None:
            raise ClientNotFoundError(str(client_id))
        trigger_ms = now_ms() if trigger_time is None else to_epoch_ms(trigger_time)
        return await self.enqueuer.enqueue_for_trigger(client, trigger_ms)

    # ── Manual scheduling ─────────────────────────────────────

    async def schedule_manual(self, client_id: str, send_time: TimeInput, body_text: str) -> int:
        """
        Schedule a free-text message. A send_time in the past is due on
        the next dispatcher tick.

        Raises:
            ValueError: empty body, unparseable send_time
            ClientNotFoundError: unknown client
        """
        body = (body_text or "").strip()
        if not body:
            raise ValueError("Message body is required")
        send_ms = to_epoch_ms(send_time)

        client_id = str(client_id)
        if await self.directory.get_client(client_id) is None:
            raise ClientNotFoundError(client_id)

        result = await self.store.enqueue(JobDraft(
            client_ref=client_id, send_time=send_ms, payload_text=body,
        ))
        logger.info("manual_job_scheduled", job_id=result.job_id, client_id=client_id,
                    send_time=send_ms)
        return result.job_id

    # ── Admin ─────────────────────────────────────────────────

    async def cancel(self, job_id: int) -> bool:
        canceled = await self.store.cancel(job_id)
        if canceled:
            logger.info("job_canceled", job_id=job_id)
        else:
            logger.info("job_cancel_rejected", job_id=job_id)
        return canceled

    async def get_job(self, job_id: int) -> Optional[ScheduledJob]:
        return await self.store.get_job(job_id)

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> list[ScheduledJob]:
        return await self.store.list_jobs(job_filter)

    async def list_messages(self, client_id: str, limit: int = 50) -> list[MessageRecord]:
        return await self.store.list_messages(str(client_id), limit=limit)

    async def reconcile_delivery_status(self, provider_message_id: str, status: str) -> bool:
        """Apply a carrier delivery-status callback to the message history."""
        updated = await self.store.update_delivery_status(provider_message_id, status)
        if not updated:
            logger.debug("delivery_status_unmatched", provider_message_id=provider_message_id,
                         status=status)
        return updated
