"""
Channels — Base infrastructure for outbound delivery.

Provides:
- ChannelError: structured error hierarchy with a permanent/transient flag
- SmsGateway: the send capability the dispatcher depends on
- ChannelMetrics: per-gateway send/fail/latency tracking
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """
    Base exception for all channel operations.

    permanent=True means retrying can never succeed (bad number, opted out);
    the dispatcher moves such jobs straight to a terminal failure.
    """

    def __init__(self, message: str, channel: str = "", permanent: bool = False, code: str = ""):
        self.channel = channel
        self.permanent = permanent
        self.code = code
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = "", code: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, permanent=False, code=code)


class InvalidDestinationError(ChannelError):
    def __init__(self, destination: str, channel: str = "", code: str = ""):
        super().__init__(f"Invalid destination number: {destination!r}", channel, permanent=True, code=code)


class OptedOutError(ChannelError):
    def __init__(self, destination: str, channel: str = "", code: str = ""):
        super().__init__(f"Recipient has opted out: {destination}", channel, permanent=True, code=code)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-gateway send, failure and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latency_total_ms: float = 0.0
        self._latency_samples: int = 0
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latency_total_ms += latency_ms
            self._latency_samples += 1

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        if not self._latency_samples:
            return 0.0
        return self._latency_total_ms / self._latency_samples

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "messages_sent": self.messages_sent,
            "messages_failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-5:],
        }


# ══════════════════════════════════════════════════════════════
#  SMS GATEWAY
# ══════════════════════════════════════════════════════════════

class SmsGateway(abc.ABC):
    """
    The outbound text-message capability.

    Subclasses implement _do_send(); send_message() wraps it with metrics
    and logging. Errors surface as ChannelError; anything else raised by
    _do_send() is wrapped as a transient ChannelError.
    """

    channel = "sms"

    def __init__(self):
        self.metrics = ChannelMetrics(self.channel)

    async def send_message(self, destination_phone: str, body_text: str) -> dict[str, Any]:
        """Send one text. Returns {"provider_message_id": ...}."""
        started = time.monotonic()
        try:
            result = await self._do_send(destination_phone, body_text)
        except ChannelError as e:
            self.metrics.record_failure(str(e))
            logger.warning("sms_send_failed", to=destination_phone, error=str(e),
                           permanent=e.permanent, code=e.code)
            raise
        except Exception as e:
            self.metrics.record_failure(str(e))
            logger.warning("sms_send_error", to=destination_phone, error=str(e))
            raise ChannelError(str(e) or type(e).__name__, self.channel) from e

        self.metrics.record_send((time.monotonic() - started) * 1000)
        return result

    @abc.abstractmethod
    async def _do_send(self, destination_phone: str, body_text: str) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        pass
