"""
SMS Gateways — the concrete send capabilities behind SmsGateway.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Automatic message truncation to max segment limit
- TwilioSmsGateway: production sends through the Twilio Messages API
- LoggingSmsGateway: development gateway that only logs
- create_sms_gateway(): pick one from SmsConfig
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

from channels.base import InvalidDestinationError, SmsGateway
from channels.telephony.twilio_client import TwilioClient
from config.settings import SmsConfig

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

# GSM-7 basic character set (includes space, digits, common punctuation, Latin letters)
_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM-7 (takes 2 bytes each): ^{}[~]|\€
_GSM7_EXTENDED = set("^{}[]~|\\€")


def _is_gsm7(text: str) -> bool:
    """Check if all characters in text are in the GSM-7 charset."""
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def _segment_count(text: str) -> int:
    """
    Calculate SMS segment count based on encoding.

    GSM-7: 160 chars single / 153 chars per segment (7 chars for UDH header)
    Unicode: 70 chars single / 67 chars per segment
    """
    if not text:
        return 0

    if _is_gsm7(text):
        # Count extended chars as 2
        char_count = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        if char_count <= 160:
            return 1
        return (char_count + 152) // 153  # ceil division
    else:
        if len(text) <= 70:
            return 1
        return (len(text) + 66) // 67


def truncate_to_segments(content: str, max_segments: int) -> str:
    """Truncate message to fit within max_segments."""
    if max_segments <= 0 or _segment_count(content) <= max_segments:
        return content

    if _is_gsm7(content):
        max_chars = 153 * max_segments - 3  # space for "..."
        # Extended chars count double; trim until it fits
        truncated = content[:max_chars]
        while _segment_count(truncated + "...") > max_segments and truncated:
            truncated = truncated[:-1]
        return truncated + "..."

    max_chars = 67 * max_segments - 3
    return content[:max_chars] + "..."


# ══════════════════════════════════════════════════════════════
#  GATEWAYS
# ══════════════════════════════════════════════════════════════

class TwilioSmsGateway(SmsGateway):
    """Sends texts through Twilio, respecting a segment cap."""

    def __init__(self, client: TwilioClient, max_segments: int = 3):
        super().__init__()
        self._client = client
        self._max_segments = max_segments

    async def _do_send(self, destination_phone: str, body_text: str) -> dict[str, Any]:
        if not destination_phone:
            raise InvalidDestinationError(destination_phone, self.channel)

        content = truncate_to_segments(body_text, self._max_segments)
        if content != body_text:
            logger.warning("sms_truncated", to=destination_phone,
                           original_segments=_segment_count(body_text),
                           max_segments=self._max_segments)

        result = await self._client.send_sms(destination_phone, content)
        return {
            "provider_message_id": result["sid"],
            "status": result.get("status", "queued"),
            "segments": _segment_count(content),
        }

    async def close(self) -> None:
        await self._client.close()


class LoggingSmsGateway(SmsGateway):
    """Development gateway: logs the text and returns a fake SID."""

    async def _do_send(self, destination_phone: str, body_text: str) -> dict[str, Any]:
        if not destination_phone:
            raise InvalidDestinationError(destination_phone, self.channel)
        msg_sid = f"SM{uuid.uuid4().hex}"
        logger.info("sms_logged", to=destination_phone, segments=_segment_count(body_text),
                    msg_sid=msg_sid)
        return {"provider_message_id": msg_sid, "status": "mock_sent",
                "segments": _segment_count(body_text)}


def create_sms_gateway(config: SmsConfig) -> Optional[SmsGateway]:
    """
    Build the configured gateway.

    Returns None when Twilio is selected but credentials are missing; the
    caller must then refuse to start the dispatcher.
    """
    if config.provider == "log":
        logger.warning("using_logging_sms_gateway")
        return LoggingSmsGateway()

    if not config.is_configured:
        logger.error("sms_gateway_not_configured", provider=config.provider,
                     missing=[k for k in ("account_sid", "auth_token", "from_number")
                              if not getattr(config, k)])
        return None

    client = TwilioClient(
        account_sid=config.account_sid,
        auth_token=config.auth_token,
        from_number=config.from_number,
        status_callback_url=config.status_callback_url,
    )
    return TwilioSmsGateway(client, max_segments=config.max_segments)
