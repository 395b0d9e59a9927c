"""
Client Directory — Read access to the CRM's clients and message templates.

The CRM owns client, status and template CRUD; this module only reads
the fields the scheduler needs. Two backends:

  - SqlClientDirectory      — reads the CRM's clients/templates tables in
                              the shared database
  - InMemoryClientDirectory — dicts, for development and tests

Errors from the SQL backend propagate: a dispatcher tick that cannot
resolve a client is a failed send, not silent data.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

from sqlalchemy import or_, select

from database.models import ClientRow, TemplateRow
from database.session import SessionScope, get_session
from models.schemas import ClientSnapshot, MessageTemplate
from utils.matching import filter_matches

logger = structlog.get_logger()

# template filter name → TemplateRow column
_TEMPLATE_FILTER_COLUMNS = {
    "status_filter": TemplateRow.status,
    "office_filter": TemplateRow.office,
    "case_type_filter": TemplateRow.case_type,
    "appointment_type_filter": TemplateRow.appointment_type,
    "language_filter": TemplateRow.language,
}


class ClientDirectory(abc.ABC):
    """Abstract base for client/template lookups."""

    @abc.abstractmethod
    async def get_client(self, client_id: str) -> Optional[ClientSnapshot]:
        """Fetch a single client snapshot by ID."""
        ...

    @abc.abstractmethod
    async def list_active_templates(
        self, filters: Optional[dict[str, str]] = None,
    ) -> list[MessageTemplate]:
        """
        Active templates, optionally narrowed by filter values.

        `filters` maps template filter names (e.g. "status_filter") to a
        client value; a template survives if its filter is a wildcard or
        equals that value. Callers still run full matching afterwards.
        """
        ...


class SqlClientDirectory(ClientDirectory):
    """Reads clients/templates from the shared CRM database."""

    def __init__(self, session_scope: SessionScope = get_session):
        self._session = session_scope

    async def get_client(self, client_id: str) -> Optional[ClientSnapshot]:
        try:
            key = int(client_id)
        except (TypeError, ValueError):
            return None
        async with self._session() as db:
            row = await db.get(ClientRow, key)
            return self._row_to_client(row) if row else None

    async def list_active_templates(
        self, filters: Optional[dict[str, str]] = None,
    ) -> list[MessageTemplate]:
        async with self._session() as db:
            stmt = select(TemplateRow).where(TemplateRow.active.is_(True))
            for name, value in (filters or {}).items():
                column = _TEMPLATE_FILTER_COLUMNS.get(name)
                if column is None:
                    continue
                stmt = stmt.where(or_(column == "", column.is_(None), column == (value or "")))
            stmt = stmt.order_by(TemplateRow.id.asc())
            result = await db.execute(stmt)
            return [self._row_to_template(r) for r in result.scalars().all()]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_client(row: ClientRow) -> ClientSnapshot:
        return ClientSnapshot(
            id=row.id, name=row.name, phone=row.phone,
            status_label=row.status, office=row.office,
            case_type=row.case_type, appointment_type=row.appointment_type,
            language=row.language,
        )

    @staticmethod
    def _row_to_template(row: TemplateRow) -> MessageTemplate:
        return MessageTemplate(
            id=row.id, name=row.name or "",
            status_filter=row.status, office_filter=row.office,
            case_type_filter=row.case_type,
            appointment_type_filter=row.appointment_type,
            language_filter=row.language,
            delay_hours=row.delay_hours or 0.0,
            body_template=row.template,
            active=bool(row.active),
        )


class InMemoryClientDirectory(ClientDirectory):
    """Dict-backed directory for development and testing."""

    def __init__(
        self,
        clients: Optional[list[ClientSnapshot]] = None,
        templates: Optional[list[MessageTemplate]] = None,
    ):
        self._clients: dict[str, ClientSnapshot] = {}
        self._templates: dict[str, MessageTemplate] = {}
        for c in clients or []:
            self.upsert_client(c)
        for t in templates or []:
            self.upsert_template(t)

    def upsert_client(self, client: ClientSnapshot) -> None:
        self._clients[client.id] = client

    def upsert_template(self, template: MessageTemplate) -> None:
        self._templates[template.id] = template

    async def get_client(self, client_id: str) -> Optional[ClientSnapshot]:
        return self._clients.get(str(client_id))

    async def list_active_templates(
        self, filters: Optional[dict[str, str]] = None,
    ) -> list[MessageTemplate]:
        templates = [t for t in self._templates.values() if t.active]
        for name, value in (filters or {}).items():
            if name in MessageTemplate.model_fields:
                templates = [t for t in templates if filter_matches(getattr(t, name), value)]
        return templates


def create_directory(config: dict[str, Any] = None) -> ClientDirectory:
    """Factory function to create the appropriate directory backend."""
    config = config or {}
    backend = config.get("directory_backend", "memory")
    if backend == "sql":
        return SqlClientDirectory()
    logger.warning("using_inmemory_directory", reason="directory_backend is not sql")
    return InMemoryClientDirectory()
