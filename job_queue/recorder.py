"""
Delivery Recorder — Persists send outcomes and notifies live listeners.

Success order: mark_sent → append MessageRecord → publish "message_sent".
mark_sent is the authoritative write; the history row and the event are
best effort. Losing a history row is acceptable. Sending twice is not.
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.notifications import NotificationSink
from database.store_base import BaseJobStore
from models.schemas import MessageDirection, MessageRecord, ScheduledJob
from utils.clock import now_ms

logger = structlog.get_logger()


class DeliveryRecorder:

    def __init__(self, store: BaseJobStore, sink: Optional[NotificationSink] = None):
        self.store = store
        self.sink = sink

    async def record_success(
        self, job: ScheduledJob, provider_message_id: str = "", sent_time: Optional[int] = None,
    ) -> bool:
        """
        Returns the mark_sent outcome. False means the job was no longer in
        `sending` and nothing else was written.
        """
        sent_time = sent_time or now_ms()
        if not await self.store.mark_sent(job.id, sent_time):
            logger.warning("mark_sent_rejected", job_id=job.id, client_id=job.client_ref)
            return False

        try:
            await self.store.append_message(MessageRecord(
                client_ref=job.client_ref,
                job_id=job.id,
                direction=MessageDirection.OUTBOUND,
                sender="system",
                text=job.payload_text,
                provider_message_id=provider_message_id or "",
                created_time=sent_time,
            ))
        except Exception as e:
            logger.error("message_record_append_failed", job_id=job.id,
                         client_id=job.client_ref, error=str(e))

        await self._publish("message_sent", {
            "client_id": job.client_ref,
            "job_id": job.id,
            "text": job.payload_text,
            "direction": MessageDirection.OUTBOUND.value,
        })
        logger.info("job_sent", job_id=job.id, client_id=job.client_ref,
                    provider_message_id=provider_message_id)
        return True

    async def record_failure(self, job: ScheduledJob, error_text: str, permanent: bool = False) -> bool:
        marked = await self.store.mark_failed(job.id, error_text, permanent=permanent)
        if not marked:
            logger.warning("mark_failed_rejected", job_id=job.id, client_id=job.client_ref)
            return False

        await self._publish("message_failed", {
            "client_id": job.client_ref,
            "job_id": job.id,
            "error": error_text,
            "permanent": permanent,
        })
        logger.warning("job_failed", job_id=job.id, client_id=job.client_ref,
                       error=error_text, permanent=permanent, attempts=job.attempts + 1)
        return True

    async def _publish(self, event_name: str, payload: dict) -> None:
        if self.sink is None:
            return
        try:
            await self.sink.publish(event_name, payload)
        except Exception as e:
            logger.warning("notification_publish_failed", event_name=event_name, error=str(e))
