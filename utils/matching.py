"""
Template filter matching — used by the enqueuer.

A template matches a client iff every one of its filters is either
empty (wildcard) or exactly equal to the corresponding client field.
Missing client fields are the empty string, so they only ever satisfy
wildcard filters.
"""
from __future__ import annotations

from models.schemas import ClientSnapshot, MessageTemplate

# template filter attribute → client snapshot attribute
FILTER_FIELDS: dict[str, str] = {
    "status_filter": "status_label",
    "office_filter": "office",
    "case_type_filter": "case_type",
    "appointment_type_filter": "appointment_type",
    "language_filter": "language",
}


def filter_matches(expected: str | None, actual: str | None) -> bool:
    """Empty filter is a wildcard; otherwise exact equality."""
    expected = expected or ""
    if expected == "":
        return True
    return expected == (actual or "")


def template_matches(template: MessageTemplate, client: ClientSnapshot) -> bool:
    if not template.active:
        return False
    return all(
        filter_matches(getattr(template, t_field), getattr(client, c_field))
        for t_field, c_field in FILTER_FIELDS.items()
    )


def matching_templates(
    templates: list[MessageTemplate], client: ClientSnapshot,
) -> list[MessageTemplate]:
    return [t for t in templates if template_matches(t, client)]
