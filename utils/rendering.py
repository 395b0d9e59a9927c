"""Placeholder rendering for template bodies: "Hi {{name}}" → "Hi Jane"."""
from __future__ import annotations

import re
from typing import Any

import structlog

logger = structlog.get_logger()

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def render_template(body: str, fields: dict[str, Any]) -> str:
    """
    Substitute {{field}} placeholders from a flat dict.

    None values and unknown placeholders render as the empty string so a
    half-rendered "{{...}}" never reaches a client's phone.
    """
    missing: list[str] = []

    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if key not in fields:
            missing.append(key)
            return ""
        value = fields[key]
        return "" if value is None else str(value)

    rendered = _PLACEHOLDER.sub(replacer, body or "")
    if missing:
        logger.debug("template_placeholders_missing", placeholders=missing)
    return rendered
