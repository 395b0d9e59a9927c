"""Phone number normalisation for outbound SMS (E.164)."""
from __future__ import annotations

import re


def to_e164(phone: str | None, default_country_code: str = "1") -> str:
    """
    Normalise a stored phone number to E.164.

    10 digits          → +{default_country_code}XXXXXXXXXX
    11 digits, leading country code → +XXXXXXXXXXX
    Already "+..." with 8–15 digits → kept as-is (digits only)

    Returns "" when the number cannot be normalised.
    """
    raw = str(phone or "").strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return ""
    if raw.startswith("+"):
        return f"+{digits}" if 8 <= len(digits) <= 15 else ""
    if len(digits) == 10:
        return f"+{default_country_code}{digits}"
    if len(digits) == 11 and digits.startswith(default_country_code):
        return f"+{digits}"
    return ""
