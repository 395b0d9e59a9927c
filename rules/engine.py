"""
Template Enqueuer — Turns a client status change into scheduled jobs.

For every active template whose filters match the client snapshot:
  send_time   = trigger_time + template delay
  dedup_key   = client:template
  payload     = template body with {{field}} placeholders rendered now

The store rejects a second job with the same dedup key, so a template is
scheduled at most once per client, whichever status triggers it.
Nothing is sent from here.
"""
from __future__ import annotations

import structlog
from typing import Any

from backend.directory import ClientDirectory
from database.store_base import BaseJobStore
from models.schemas import ClientSnapshot, JobDraft, MessageTemplate, make_dedup_key
from utils.clock import TimeInput, to_epoch_ms
from utils.matching import matching_templates
from utils.rendering import render_template

logger = structlog.get_logger()


def render_fields(client: ClientSnapshot) -> dict[str, Any]:
    """Placeholder values available to template bodies."""
    fields = client.model_dump()
    fields["status"] = client.status_label
    fields["first_name"] = client.name.split()[0] if client.name.strip() else ""
    return fields


class TemplateEnqueuer:
    """
    Resolves matching templates for a client and writes pending jobs.
    """

    def __init__(self, store: BaseJobStore, directory: ClientDirectory):
        self.store = store
        self.directory = directory

    async def enqueue_for_trigger(self, client: ClientSnapshot, trigger_time: TimeInput) -> int:
        """
        Enqueue one job per matching template.

        Returns the number of jobs newly created; 0 when nothing matched
        or every match was already scheduled.
        """
        trigger_ms = to_epoch_ms(trigger_time)

        # The directory may pre-narrow by status; full matching still runs here
        candidates = await self.directory.list_active_templates(
            {"status_filter": client.status_label}
        )
        templates = matching_templates(candidates, client)
        if not templates:
            logger.debug("no_templates_matched", client_id=client.id,
                         status=client.status_label, candidates=len(candidates))
            return 0

        fields = render_fields(client)
        enqueued = 0
        for template in templates:
            if await self._enqueue_template(client, template, trigger_ms, fields):
                enqueued += 1

        logger.info("templates_enqueued", client_id=client.id, status=client.status_label,
                    matched=len(templates), enqueued=enqueued)
        return enqueued

    async def _enqueue_template(
        self,
        client: ClientSnapshot,
        template: MessageTemplate,
        trigger_ms: int,
        fields: dict[str, Any],
    ) -> bool:
        draft = JobDraft(
            client_ref=client.id,
            template_ref=template.id,
            send_time=trigger_ms + template.delay_ms,
            payload_text=render_template(template.body_template, fields),
            dedup_key=make_dedup_key(client.id, template.id),
        )
        result = await self.store.enqueue(draft)
        if result.duplicate:
            logger.debug("template_already_scheduled", client_id=client.id,
                         template_id=template.id)
            return False
        return True
