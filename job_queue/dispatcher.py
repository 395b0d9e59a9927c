"""
Dispatcher — The scheduler loop that sends due jobs.

One asyncio task per process, woken on a fixed interval. Each tick:

  1. requeue_stale_failures   (failed → pending after cooldown)
  2. list_due                 (pending, due, under the attempt cap)
  3. for each job, in order:  claim → resolve phone → send → record

Jobs within a tick are sent one at a time so the gateway never sees a
burst and sends stay roughly in send_time order. A re-entrancy flag
prevents two ticks from overlapping. The store's conditional claim is the
only cross-worker coordination, so several processes may run this loop
against one database.

Errors in one job are recorded on that job and never abort the batch;
errors in the tick itself (store down) are logged and the next tick
starts fresh.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from backend.directory import ClientDirectory
from channels.base import ChannelError, SmsGateway
from database.store_base import BaseJobStore
from job_queue.recorder import DeliveryRecorder
from models.schemas import ScheduledJob
from utils.clock import now_ms
from utils.phone import to_e164

logger = structlog.get_logger()


class Dispatcher:
    """
    Polls the job store and drives due jobs through the SMS gateway.

    Constructed once at startup with its collaborators injected; it owns
    its own task handle, stop event and re-entrancy flag.
    """

    def __init__(
        self,
        store: BaseJobStore,
        gateway: SmsGateway,
        directory: ClientDirectory,
        recorder: Optional[DeliveryRecorder] = None,
        poll_interval_s: float = 15.0,
        batch_limit: int = 10,
        max_attempts: int = 5,
        retry_cooldown_s: float = 300.0,
        default_country_code: str = "1",
    ):
        self.store = store
        self.gateway = gateway
        self.directory = directory
        self.recorder = recorder or DeliveryRecorder(store)
        self.poll_interval_s = poll_interval_s
        self.batch_limit = batch_limit
        self.max_attempts = max_attempts
        self.retry_cooldown_ms = int(retry_cooldown_s * 1000)
        self.default_country_code = default_country_code

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._tick_running = False
        self.ticks_completed = 0

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_background(self) -> asyncio.Task:
        if self.is_running:
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        """
        Stop scheduling ticks. A tick already in progress finishes its
        current job batch; an in-flight send is never aborted.
        """
        self._stop_event.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("dispatcher_stopped", ticks=self.ticks_completed)

    async def _run(self):
        logger.info("dispatcher_started", interval=self.poll_interval_s,
                    batch_limit=self.batch_limit, max_attempts=self.max_attempts)
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass

    # ── Tick ──────────────────────────────────────────────────

    async def tick(self, now: Optional[int] = None) -> dict[str, Any]:
        """
        Run one poll-and-send cycle. Never raises.

        Returns counters for the tick, or {"skipped": True} when another
        tick is still running.
        """
        if self._tick_running:
            logger.debug("tick_skipped_still_running")
            return {"skipped": True}

        self._tick_running = True
        stats = {"requeued": 0, "due": 0, "claimed": 0, "sent": 0, "failed": 0,
                 "unrecorded": 0, "skipped_claims": 0}
        try:
            now = now if now is not None else now_ms()
            stats["requeued"] = await self.store.requeue_stale_failures(
                self.max_attempts, self.retry_cooldown_ms, now,
            )
            due = await self.store.list_due(now, self.batch_limit, self.max_attempts)
            stats["due"] = len(due)

            for job in due:
                outcome = await self._process_job(job)
                stats[outcome] += 1
                if outcome in ("sent", "failed", "unrecorded"):
                    stats["claimed"] += 1

            if stats["due"] or stats["requeued"]:
                logger.info("tick_complete", **stats)
        except Exception as e:
            logger.error("tick_failed", error=str(e), **stats)
        finally:
            self._tick_running = False
            self.ticks_completed += 1
        return stats

    async def _process_job(self, job: ScheduledJob) -> str:
        """Claim, send and record one job. Returns the stats bucket it lands in."""
        try:
            claimed = await self.store.claim(job.id)
        except Exception as e:
            logger.error("claim_failed", job_id=job.id, error=str(e))
            return "skipped_claims"
        if not claimed:
            logger.debug("claim_lost", job_id=job.id)
            return "skipped_claims"

        try:
            destination = await self._resolve_destination(job)
            result = await self.gateway.send_message(destination, job.payload_text)
        except ChannelError as e:
            await self._record_failure(job, str(e), e.permanent)
            return "failed"
        except Exception as e:
            logger.error("job_processing_error", job_id=job.id, error=str(e))
            await self._record_failure(job, str(e) or type(e).__name__, False)
            return "failed"

        try:
            recorded = await self.recorder.record_success(job, result.get("provider_message_id", ""))
        except Exception as e:
            # The send went out; leave the job in `sending` rather than retry it
            logger.error("record_success_failed", job_id=job.id, error=str(e))
            return "unrecorded"
        return "sent" if recorded else "unrecorded"

    async def _resolve_destination(self, job: ScheduledJob) -> str:
        client = await self.directory.get_client(job.client_ref)
        if client is None:
            raise ChannelError(f"Client {job.client_ref} not found", self.gateway.channel,
                               permanent=True)
        destination = to_e164(client.phone, self.default_country_code)
        if not destination:
            raise ChannelError(f"Invalid phone number for client {job.client_ref}: {client.phone!r}",
                               self.gateway.channel, permanent=True)
        return destination

    async def _record_failure(self, job: ScheduledJob, error_text: str, permanent: bool) -> None:
        try:
            await self.recorder.record_failure(job, error_text, permanent=permanent)
        except Exception as e:
            logger.error("record_failure_failed", job_id=job.id, error=str(e))
