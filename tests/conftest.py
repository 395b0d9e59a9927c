"""Shared test fixtures for the scheduled-message service."""
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from backend.directory import InMemoryClientDirectory
from channels.base import ChannelError, SmsGateway
from channels.notifications import NotificationSink
from database.models import Base
from database.session import make_session_scope
from database.store import SqlJobStore
from database.store_memory import InMemoryJobStore
from models.schemas import ClientSnapshot, JobDraft, MessageTemplate
from utils.clock import now_ms


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class FakeGateway(SmsGateway):
    """Records every send; raises the queued errors first, in order."""

    def __init__(self, errors: list[Exception] = None):
        super().__init__()
        self.sent: list[tuple[str, str]] = []
        self.errors = list(errors or [])
        self._counter = 0

    async def _do_send(self, destination_phone: str, body_text: str) -> dict[str, Any]:
        if self.errors:
            raise self.errors.pop(0)
        self._counter += 1
        self.sent.append((destination_phone, body_text))
        return {"provider_message_id": f"SM{self._counter:04d}", "status": "queued"}


class RecordingSink(NotificationSink):
    def __init__(self, fail: bool = False):
        self.events: list[tuple[str, dict]] = []
        self.fail = fail

    async def _do_publish(self, event_name: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("listener unreachable")
        self.events.append((event_name, payload))


def transient_error(message: str = "carrier timeout") -> ChannelError:
    return ChannelError(message, "sms", permanent=False)


# ──────────────────────────────────────────────────────────────
#  Stores
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlJobStore(make_session_scope(factory))
    await engine.dispose()


@pytest.fixture
def memory_store():
    return InMemoryJobStore()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Every store contract test runs against both backends."""
    if request.param == "memory":
        yield InMemoryJobStore()
        return
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlJobStore(make_session_scope(factory))
    await engine.dispose()


# ──────────────────────────────────────────────────────────────
#  Domain data
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def jane() -> ClientSnapshot:
    return ClientSnapshot(id=1, name="Jane", phone="(602) 555-0143",
                          status_label="No Show", office="PHX")


@pytest.fixture
def no_show_template() -> MessageTemplate:
    return MessageTemplate(
        id=7, name="No show apology",
        status_filter="No Show", office_filter="", case_type_filter="",
        appointment_type_filter="", language_filter="",
        delay_hours=0, body_template="Hi {{name}}, sorry we missed you.",
    )


@pytest.fixture
def directory(jane, no_show_template) -> InMemoryClientDirectory:
    return InMemoryClientDirectory(clients=[jane], templates=[no_show_template])


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


def make_draft(client_ref: str = "1", send_time: int = None, text: str = "Reminder",
               template_ref: str = None, dedup_key: str = None) -> JobDraft:
    return JobDraft(
        client_ref=client_ref,
        send_time=now_ms() - 10_000 if send_time is None else send_time,
        payload_text=text,
        template_ref=template_ref,
        dedup_key=dedup_key,
    )
