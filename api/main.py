"""
FastAPI Application — Admin REST API, status triggers, webhooks, live events.

Provides:
- Scheduled message listing, manual scheduling and cancel
- Client status-change trigger (runs the template enqueuer)
- Client message history
- Operator-triggered dispatcher tick
- Twilio SMS delivery-status webhook
- WebSocket stream of message_sent / message_failed events

The dispatcher runs inside this process, started and stopped by the
application lifespan.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from backend.directory import ClientDirectory, create_directory
from channels.base import SmsGateway
from channels.notifications import NotificationSink, WebSocketHub, create_notification_sink
from channels.sms_adapter import create_sms_gateway
from channels.telephony.twilio_client import TwilioClient
from config.settings import Settings, get_settings
from core.service import ClientNotFoundError, SchedulingService
from database.session import close_db, init_db
from database.store import SqlJobStore
from database.store_base import BaseJobStore
from database.store_factory import create_store
from job_queue.dispatcher import Dispatcher
from job_queue.recorder import DeliveryRecorder
from models.schemas import JobFilter, JobStatus, ScheduledJob
from utils.clock import ms_to_iso, now_ms

logger = structlog.get_logger()

router = APIRouter()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ScheduleMessageRequest(BaseModel):
    client_id: Union[int, str]
    send_time: Union[int, str]
    message: str


class StatusChangedRequest(BaseModel):
    trigger_time: Optional[Union[int, str]] = None


def _job_view(job: ScheduledJob) -> dict[str, Any]:
    data = job.model_dump(mode="json")
    data["send_time_iso"] = ms_to_iso(job.send_time)
    data["sent_time_iso"] = ms_to_iso(job.sent_time)
    return data


def _service(request: Request) -> SchedulingService:
    return request.app.state.service


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    state = request.app.state
    dispatcher: Optional[Dispatcher] = state.dispatcher
    gateway: Optional[SmsGateway] = state.gateway
    return {
        "status": "healthy",
        "timestamp": ms_to_iso(now_ms()),
        "store": type(state.store).__name__,
        "dispatcher_running": bool(dispatcher and dispatcher.is_running),
        "sms": gateway.metrics.to_dict() if gateway else None,
    }


# ══════════════════════════════════════════════════════════════
#  SCHEDULED MESSAGES
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/scheduled-messages")
async def list_scheduled_messages(
    request: Request,
    status: Optional[str] = None,
    client_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    try:
        job_status = JobStatus(status) if status else None
    except ValueError:
        raise HTTPException(400, f"Unknown status: {status}")
    jobs = await _service(request).list_jobs(
        JobFilter(status=job_status, client_ref=client_id, limit=limit)
    )
    return [_job_view(j) for j in jobs]


@router.post("/api/v1/scheduled-messages", status_code=201)
async def schedule_message(req: ScheduleMessageRequest, request: Request):
    service = _service(request)
    try:
        job_id = await service.schedule_manual(str(req.client_id), req.send_time, req.message)
    except ClientNotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    job = await service.get_job(job_id)
    return _job_view(job)


@router.post("/api/v1/scheduled-messages/{job_id}/cancel")
async def cancel_scheduled_message(job_id: int, request: Request):
    service = _service(request)
    job = await service.get_job(job_id)
    if job is None:
        raise HTTPException(404, "Scheduled message not found")
    if not await service.cancel(job_id):
        current = await service.get_job(job_id)
        raise HTTPException(409, f"Cannot cancel a message in status '{current.status.value}'")
    return {"status": "canceled", "id": job_id}


# ══════════════════════════════════════════════════════════════
#  CLIENTS
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/clients/{client_id}/status-changed")
async def client_status_changed(client_id: str, request: Request,
                                req: Optional[StatusChangedRequest] = None):
    trigger_time = req.trigger_time if req else None
    try:
        enqueued = await _service(request).trigger_status_change(client_id, trigger_time)
    except ClientNotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"client_id": client_id, "enqueued": enqueued}


@router.get("/api/v1/clients/{client_id}/messages")
async def client_messages(client_id: str, request: Request, limit: int = Query(50, ge=1, le=500)):
    messages = await _service(request).list_messages(client_id, limit=limit)
    return [m.model_dump(mode="json") for m in messages]


# ══════════════════════════════════════════════════════════════
#  SCHEDULER
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/scheduler/tick")
async def run_scheduler_tick(request: Request):
    dispatcher: Optional[Dispatcher] = request.app.state.dispatcher
    if dispatcher is None:
        raise HTTPException(503, "SMS gateway is not configured")
    return await dispatcher.tick()


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS
# ══════════════════════════════════════════════════════════════

@router.post("/webhooks/twilio/sms-status")
async def twilio_sms_status_webhook(request: Request):
    """Twilio message status callback — form-encoded."""
    body = dict(await request.form())
    normalized = TwilioClient.parse_status_webhook(body)
    if not normalized["message_sid"] or not normalized["status"]:
        raise HTTPException(400, "MessageSid and MessageStatus are required")
    updated = await _service(request).reconcile_delivery_status(
        normalized["message_sid"], normalized["status"],
    )
    logger.info("sms_status_callback", sid=normalized["message_sid"],
                status=normalized["status"], error_code=normalized["error_code"],
                matched=updated)
    return {"status": "ok", "updated": updated}


# ══════════════════════════════════════════════════════════════
#  WEBSOCKET: Live events
# ══════════════════════════════════════════════════════════════

@router.websocket("/ws/events")
async def websocket_events(websocket: WebSocket):
    hub = websocket.app.state.sink
    if not isinstance(hub, WebSocketHub):
        await websocket.close(code=4004, reason="Live events are published to Redis")
        return

    await websocket.accept()
    conn_id = hub.register(websocket)
    try:
        while True:
            # Inbound frames are ignored; reading detects the disconnect
            await websocket.receive_text()
    except (WebSocketDisconnect, asyncio.CancelledError):
        pass
    except Exception as e:
        logger.error("websocket_error", conn_id=conn_id, error=str(e))
    finally:
        hub.remove(conn_id)


# ══════════════════════════════════════════════════════════════
#  App factory
# ══════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[BaseJobStore] = None,
    directory: Optional[ClientDirectory] = None,
    gateway: Optional[SmsGateway] = None,
    sink: Optional[NotificationSink] = None,
) -> FastAPI:
    """
    Wire the scheduler components and build the app.

    Components not passed in are built from settings. The dispatcher only
    exists when an SMS gateway is available.
    """
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})
    directory = directory or create_directory({"directory_backend": settings.database.directory_backend})
    sink = sink or create_notification_sink(settings.notifications)
    if gateway is None:
        gateway = create_sms_gateway(settings.sms)

    dispatcher = None
    if gateway is not None:
        dispatcher = Dispatcher(
            store=store,
            gateway=gateway,
            directory=directory,
            recorder=DeliveryRecorder(store, sink),
            poll_interval_s=settings.scheduler.poll_interval_seconds,
            batch_limit=settings.scheduler.batch_limit,
            max_attempts=settings.scheduler.max_attempts,
            retry_cooldown_s=settings.scheduler.retry_cooldown_seconds,
            default_country_code=settings.sms.default_country_code,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(store, SqlJobStore):
            await init_db()

        if dispatcher and settings.scheduler.enabled:
            await dispatcher.start_background()
        elif dispatcher is None:
            logger.error("dispatcher_disabled", reason="sms gateway not configured")

        logger.info("caseline_scheduler_started", store=type(store).__name__,
                    dispatcher=bool(dispatcher and dispatcher.is_running))
        yield

        if dispatcher:
            await dispatcher.stop()
        if gateway:
            await gateway.close()
        await sink.close()
        if isinstance(store, SqlJobStore):
            await close_db()
        logger.info("caseline_scheduler_stopped")

    app = FastAPI(
        title=settings.app_name,
        description="Scheduled SMS follow-ups for client status changes",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.directory = directory
    app.state.gateway = gateway
    app.state.sink = sink
    app.state.dispatcher = dispatcher
    app.state.service = SchedulingService(store, directory)

    app.include_router(router)
    return app


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
