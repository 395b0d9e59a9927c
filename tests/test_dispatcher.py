"""
Tests for the dispatcher loop and delivery recorder.

Covers:
  - happy path: claim → send → mark_sent → history → notification
  - transient failure, cooldown requeue and the attempts cap
  - permanent failures (gateway classification, unknown client, bad phone)
  - batch isolation, tick-level store failure, re-entrancy guard
  - background start/stop
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from backend.directory import InMemoryClientDirectory
from channels.base import InvalidDestinationError, OptedOutError, RateLimitedError
from job_queue.dispatcher import Dispatcher
from job_queue.recorder import DeliveryRecorder
from models.schemas import ClientSnapshot, JobStatus, ScheduledJob
from tests.conftest import FakeGateway, RecordingSink, make_draft, transient_error
from utils.clock import now_ms

COOLDOWN_S = 300
MAX_ATTEMPTS = 5


def make_dispatcher(store, gateway, directory, sink=None, **kwargs) -> Dispatcher:
    kwargs.setdefault("retry_cooldown_s", COOLDOWN_S)
    kwargs.setdefault("max_attempts", MAX_ATTEMPTS)
    return Dispatcher(
        store=store, gateway=gateway, directory=directory,
        recorder=DeliveryRecorder(store, sink), **kwargs,
    )


# ──────────────────────────────────────────────────────────────
#  Happy path
# ──────────────────────────────────────────────────────────────

class TestDispatchSuccess:
    @pytest.mark.asyncio
    async def test_due_job_is_sent_and_recorded(self, store, directory, gateway, sink):
        job = await store.enqueue(make_draft(client_ref="1", text="Hi Jane"))
        stats = await make_dispatcher(store, gateway, directory, sink).tick()

        assert stats == {"requeued": 0, "due": 1, "claimed": 1, "sent": 1,
                         "failed": 0, "unrecorded": 0, "skipped_claims": 0}
        assert gateway.sent == [("+16025550143", "Hi Jane")]

        stored = await store.get_job(job.job_id)
        assert stored.status == JobStatus.SENT
        assert stored.sent_time is not None
        assert stored.attempts == 0

        history = await store.list_messages("1")
        assert len(history) == 1
        assert history[0].text == "Hi Jane"
        assert history[0].job_id == job.job_id
        assert history[0].provider_message_id == "SM0001"
        assert history[0].direction.value == "outbound"

        assert sink.events == [("message_sent", {
            "client_id": "1", "job_id": job.job_id, "text": "Hi Jane", "direction": "outbound",
        })]

    @pytest.mark.asyncio
    async def test_future_job_is_left_alone(self, store, directory, gateway):
        job = await store.enqueue(make_draft(send_time=now_ms() + 3_600_000))
        stats = await make_dispatcher(store, gateway, directory).tick()
        assert stats["due"] == 0
        assert gateway.sent == []
        assert (await store.get_job(job.job_id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_past_manual_job_goes_out_next_tick(self, store, directory, gateway):
        job = await store.enqueue(make_draft(send_time=now_ms() - 86_400_000, text="Reminder"))
        await make_dispatcher(store, gateway, directory).tick()
        assert (await store.get_job(job.job_id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_jobs_sent_in_send_time_order(self, store, directory, gateway):
        now = now_ms()
        await store.enqueue(make_draft(send_time=now - 1000, text="third"))
        await store.enqueue(make_draft(send_time=now - 3000, text="first"))
        await store.enqueue(make_draft(send_time=now - 2000, text="second"))
        await make_dispatcher(store, gateway, directory).tick()
        assert [text for _, text in gateway.sent] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_batch_limit(self, store, directory, gateway):
        for i in range(4):
            await store.enqueue(make_draft(text=f"m{i}"))
        dispatcher = make_dispatcher(store, gateway, directory, batch_limit=3)
        assert (await dispatcher.tick())["sent"] == 3
        assert (await dispatcher.tick())["sent"] == 1

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_dispatch(self, store, directory, gateway):
        job = await store.enqueue(make_draft())
        stats = await make_dispatcher(store, gateway, directory, RecordingSink(fail=True)).tick()
        assert stats["sent"] == 1
        assert (await store.get_job(job.job_id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_sink_failure_still_reports_recorded(self, store):
        result = await store.enqueue(make_draft())
        await store.claim(result.job_id)
        job = await store.get_job(result.job_id)
        recorder = DeliveryRecorder(store, RecordingSink(fail=True))
        assert await recorder.record_success(job, "SM1") is True
        assert (await store.get_job(job.id)).status == JobStatus.SENT


# ──────────────────────────────────────────────────────────────
#  Failures & retry
# ──────────────────────────────────────────────────────────────

class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_then_requeue_after_cooldown(self, store, directory):
        gateway = FakeGateway(errors=[transient_error("carrier timeout")])
        job = await store.enqueue(make_draft(send_time=now_ms() - 10_000))
        dispatcher = make_dispatcher(store, gateway, directory)

        stats = await dispatcher.tick()
        assert stats["failed"] == 1
        failed = await store.get_job(job.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert failed.last_error == "carrier timeout"
        assert await store.list_due(now_ms(), 10, MAX_ATTEMPTS) == []

        # Before the cooldown: still failed
        await dispatcher.tick()
        assert (await store.get_job(job.job_id)).status == JobStatus.FAILED

        later = now_ms() + COOLDOWN_S * 1000 + 1
        assert await store.requeue_stale_failures(MAX_ATTEMPTS, COOLDOWN_S * 1000, later) == 1
        assert [j.id for j in await store.list_due(later, 10, MAX_ATTEMPTS)] == [job.job_id]

        stats = await dispatcher.tick(now=later)
        assert stats["sent"] == 1
        sent = await store.get_job(job.job_id)
        assert sent.status == JobStatus.SENT
        assert sent.attempts == 1

    @pytest.mark.asyncio
    async def test_tick_requeues_after_cooldown(self, store, directory):
        gateway = FakeGateway(errors=[RateLimitedError("sms")])
        job = await store.enqueue(make_draft())
        dispatcher = make_dispatcher(store, gateway, directory)
        await dispatcher.tick()
        stats = await dispatcher.tick(now=now_ms() + COOLDOWN_S * 1000 + 1)
        assert stats["requeued"] == 1
        assert stats["sent"] == 1
        assert (await store.get_job(job.job_id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_attempts_cap_stops_retries(self, store, directory):
        gateway = FakeGateway(errors=[transient_error() for _ in range(MAX_ATTEMPTS + 2)])
        job = await store.enqueue(make_draft())
        dispatcher = make_dispatcher(store, gateway, directory, retry_cooldown_s=0)

        for _ in range(MAX_ATTEMPTS + 2):
            await dispatcher.tick(now=now_ms() + 1)

        final = await store.get_job(job.job_id)
        assert final.status == JobStatus.FAILED
        assert final.attempts == MAX_ATTEMPTS
        assert await store.requeue_stale_failures(MAX_ATTEMPTS, 0, now_ms() + 1) == 0
        assert await store.list_due(now_ms() + 1, 10, MAX_ATTEMPTS) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        InvalidDestinationError("+10000000000", "sms", code="21211"),
        OptedOutError("+16025550143", "sms", code="21610"),
    ])
    async def test_permanent_failure_is_never_retried(self, store, directory, error):
        gateway = FakeGateway(errors=[error])
        job = await store.enqueue(make_draft())
        dispatcher = make_dispatcher(store, gateway, directory, retry_cooldown_s=0)
        await dispatcher.tick()
        stats = await dispatcher.tick(now=now_ms() + 1)
        assert stats["requeued"] == 0
        final = await store.get_job(job.job_id)
        assert final.status == JobStatus.FAILED
        assert final.retryable is False
        assert final.attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_client_is_permanent_failure(self, store, directory, gateway):
        job = await store.enqueue(make_draft(client_ref="999"))
        await make_dispatcher(store, gateway, directory).tick()
        final = await store.get_job(job.job_id)
        assert final.status == JobStatus.FAILED
        assert final.retryable is False
        assert "999" in final.last_error
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_invalid_phone_is_permanent_failure(self, store, gateway):
        directory = InMemoryClientDirectory(clients=[ClientSnapshot(id=2, phone="555-01")])
        job = await store.enqueue(make_draft(client_ref="2"))
        await make_dispatcher(store, gateway, directory).tick()
        final = await store.get_job(job.job_id)
        assert final.status == JobStatus.FAILED
        assert final.retryable is False
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_failure_publishes_event(self, store, directory, sink):
        gateway = FakeGateway(errors=[transient_error("carrier timeout")])
        job = await store.enqueue(make_draft())
        await make_dispatcher(store, gateway, directory, sink).tick()
        assert sink.events == [("message_failed", {
            "client_id": "1", "job_id": job.job_id, "error": "carrier timeout", "permanent": False,
        })]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_and_batch_continues(self, store, directory, gateway):
        first = await store.enqueue(make_draft(send_time=now_ms() - 2000, text="one"))
        second = await store.enqueue(make_draft(send_time=now_ms() - 1000, text="two"))
        gateway.errors = [KeyError("provider payload")]

        stats = await make_dispatcher(store, gateway, directory).tick()
        assert stats["failed"] == 1
        assert stats["sent"] == 1
        assert (await store.get_job(first.job_id)).status == JobStatus.FAILED
        assert (await store.get_job(second.job_id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_directory_error_fails_job_not_batch(self, store, gateway, jane):
        directory = InMemoryClientDirectory(clients=[jane])
        directory.get_client = AsyncMock(side_effect=[RuntimeError("crm down"), jane])
        first = await store.enqueue(make_draft(send_time=now_ms() - 2000))
        second = await store.enqueue(make_draft(send_time=now_ms() - 1000))
        stats = await make_dispatcher(store, gateway, directory).tick()
        assert stats["failed"] == 1 and stats["sent"] == 1
        failed = await store.get_job(first.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.retryable is True
        assert (await store.get_job(second.job_id)).status == JobStatus.SENT


# ──────────────────────────────────────────────────────────────
#  Tick robustness
# ──────────────────────────────────────────────────────────────

class TestTickRobustness:
    @pytest.mark.asyncio
    async def test_store_outage_is_swallowed(self, memory_store, directory, gateway):
        memory_store.list_due = AsyncMock(side_effect=ConnectionError("database is down"))
        dispatcher = make_dispatcher(memory_store, gateway, directory)
        stats = await dispatcher.tick()
        assert stats["due"] == 0
        assert dispatcher.ticks_completed == 1

        # Next tick starts fresh once the store is back
        del memory_store.list_due
        await memory_store.enqueue(make_draft())
        assert (await dispatcher.tick())["sent"] == 1

    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self, memory_store, directory, gateway):
        job = await memory_store.enqueue(make_draft())
        due = await memory_store.list_due(now_ms(), 10, MAX_ATTEMPTS)
        await memory_store.claim(job.job_id)
        memory_store.list_due = AsyncMock(return_value=due)

        stats = await make_dispatcher(memory_store, gateway, directory).tick()
        assert stats["skipped_claims"] == 1
        assert stats["claimed"] == 0
        assert gateway.sent == []
        assert (await memory_store.get_job(job.job_id)).status == JobStatus.SENDING

    @pytest.mark.asyncio
    async def test_two_dispatchers_share_one_store(self, store, directory):
        for i in range(6):
            await store.enqueue(make_draft(text=f"m{i}", send_time=now_ms() - 10_000 + i))
        gw_a, gw_b = FakeGateway(), FakeGateway()
        await asyncio.gather(
            make_dispatcher(store, gw_a, directory).tick(),
            make_dispatcher(store, gw_b, directory).tick(),
        )
        texts = [t for _, t in gw_a.sent] + [t for _, t in gw_b.sent]
        assert sorted(texts) == [f"m{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, memory_store, directory):
        release = asyncio.Event()

        class SlowGateway(FakeGateway):
            async def _do_send(self, destination_phone, body_text):
                await release.wait()
                return await super()._do_send(destination_phone, body_text)

        gateway = SlowGateway()
        await memory_store.enqueue(make_draft())
        dispatcher = make_dispatcher(memory_store, gateway, directory)

        first = asyncio.create_task(dispatcher.tick())
        await asyncio.sleep(0.01)
        assert await dispatcher.tick() == {"skipped": True}
        release.set()
        stats = await first
        assert stats["sent"] == 1
        assert len(gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_recorder_failure_after_send_does_not_resend(self, memory_store, directory, gateway):
        job = await memory_store.enqueue(make_draft())
        dispatcher = make_dispatcher(memory_store, gateway, directory)
        dispatcher.recorder.record_success = AsyncMock(side_effect=RuntimeError("db gone"))
        stats = await dispatcher.tick()
        assert stats["unrecorded"] == 1 and stats["sent"] == 0
        await dispatcher.tick()
        assert len(gateway.sent) == 1
        assert (await memory_store.get_job(job.job_id)).status == JobStatus.SENDING

    @pytest.mark.asyncio
    async def test_claim_error_skips_job_not_batch(self, memory_store, directory, gateway):
        first = await memory_store.enqueue(make_draft(send_time=now_ms() - 2000, text="one"))
        second = await memory_store.enqueue(make_draft(send_time=now_ms() - 1000, text="two"))
        real_claim = memory_store.claim

        async def flaky_claim(job_id):
            if job_id == first.job_id:
                raise ConnectionError("database is down")
            return await real_claim(job_id)

        memory_store.claim = flaky_claim
        stats = await make_dispatcher(memory_store, gateway, directory).tick()
        assert stats["skipped_claims"] == 1
        assert stats["sent"] == 1
        assert gateway.sent == [("+16025550143", "two")]
        assert (await memory_store.get_job(first.job_id)).status == JobStatus.PENDING
        assert (await memory_store.get_job(second.job_id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_rejected_mark_sent_is_not_counted_as_sent(self, memory_store, directory, gateway):
        await memory_store.enqueue(make_draft())
        memory_store.mark_sent = AsyncMock(return_value=False)
        stats = await make_dispatcher(memory_store, gateway, directory).tick()
        assert stats["sent"] == 0
        assert stats["unrecorded"] == 1
        assert stats["claimed"] == 1
        assert len(gateway.sent) == 1


# ──────────────────────────────────────────────────────────────
#  Background lifecycle
# ──────────────────────────────────────────────────────────────

class TestDispatcherLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, memory_store, directory, gateway):
        await memory_store.enqueue(make_draft())
        dispatcher = make_dispatcher(memory_store, gateway, directory, poll_interval_s=0.01)
        await dispatcher.start_background()
        assert dispatcher.is_running
        for _ in range(100):
            if gateway.sent:
                break
            await asyncio.sleep(0.01)
        await dispatcher.stop()
        assert not dispatcher.is_running
        assert len(gateway.sent) == 1
        assert dispatcher.ticks_completed >= 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_send(self, memory_store, directory):
        started, release = asyncio.Event(), asyncio.Event()

        class SlowGateway(FakeGateway):
            async def _do_send(self, destination_phone, body_text):
                started.set()
                await release.wait()
                return await super()._do_send(destination_phone, body_text)

        gateway = SlowGateway()
        job = await memory_store.enqueue(make_draft())
        dispatcher = make_dispatcher(memory_store, gateway, directory, poll_interval_s=60)
        await dispatcher.start_background()
        await started.wait()

        stopping = asyncio.create_task(dispatcher.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()
        release.set()
        await stopping
        assert (await memory_store.get_job(job.job_id)).status == JobStatus.SENT

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, memory_store, directory, gateway):
        dispatcher = make_dispatcher(memory_store, gateway, directory, poll_interval_s=60)
        task = await dispatcher.start_background()
        assert await dispatcher.start_background() is task
        await dispatcher.stop()


# ──────────────────────────────────────────────────────────────
#  Recorder
# ──────────────────────────────────────────────────────────────

class TestDeliveryRecorder:
    @pytest.mark.asyncio
    async def test_record_success_requires_sending(self, memory_store, sink):
        result = await memory_store.enqueue(make_draft())
        job = await memory_store.get_job(result.job_id)
        recorder = DeliveryRecorder(memory_store, sink)
        assert await recorder.record_success(job, "SM1") is False
        assert await memory_store.list_messages("1") == []
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_history_failure_keeps_job_sent(self, memory_store, sink):
        result = await memory_store.enqueue(make_draft())
        await memory_store.claim(result.job_id)
        job = await memory_store.get_job(result.job_id)
        memory_store.append_message = AsyncMock(side_effect=RuntimeError("disk full"))

        assert await DeliveryRecorder(memory_store, sink).record_success(job, "SM1", 1234)
        stored = await memory_store.get_job(job.id)
        assert stored.status == JobStatus.SENT
        assert stored.sent_time == 1234
        assert [e for e, _ in sink.events] == ["message_sent"]

    @pytest.mark.asyncio
    async def test_raising_sink_does_not_break_record_success(self, memory_store):
        result = await memory_store.enqueue(make_draft())
        await memory_store.claim(result.job_id)
        job = await memory_store.get_job(result.job_id)
        broken_sink = AsyncMock()
        broken_sink.publish.side_effect = ConnectionError("redis down")

        assert await DeliveryRecorder(memory_store, broken_sink).record_success(job, "SM1") is True
        assert len(await memory_store.list_messages("1")) == 1
        broken_sink.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_success_without_sink(self, memory_store):
        result = await memory_store.enqueue(make_draft())
        await memory_store.claim(result.job_id)
        job = await memory_store.get_job(result.job_id)
        assert await DeliveryRecorder(memory_store).record_success(job, "SM1")

    @pytest.mark.asyncio
    async def test_record_failure_on_terminal_job(self, memory_store, sink):
        result = await memory_store.enqueue(make_draft())
        await memory_store.cancel(result.job_id)
        job = await memory_store.get_job(result.job_id)
        assert await DeliveryRecorder(memory_store, sink).record_failure(job, "late") is False
        assert sink.events == []
        assert (await memory_store.get_job(job.id)).attempts == 0
