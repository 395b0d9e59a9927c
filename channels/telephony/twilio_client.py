"""
Twilio Messaging Client — Outbound SMS through the Twilio REST API.

Send flow:
1. send_sms() POSTs to /Messages.json (form-encoded)
2. Twilio answers with the message SID and an initial status ("queued")
3. Delivery status callbacks arrive later at status_callback_url and are
   normalised by parse_status_webhook()

Error classification: Twilio reports a numeric error code in the JSON
body. Codes that can never succeed on retry (bad number, unsubscribed
recipient, ...) become permanent ChannelErrors; 429 and 5xx are transient.

API Docs: https://www.twilio.com/docs/messaging/api/message-resource
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, InvalidDestinationError, OptedOutError, RateLimitedError

logger = structlog.get_logger()

# Twilio error codes that will fail the same way on every retry
_INVALID_NUMBER_CODES = {"21211", "21212", "21214", "21217", "21401", "21408", "21612", "21614"}
_OPTED_OUT_CODES = {"21610"}


class TwilioClient:
    """Twilio REST API client for SMS messaging."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"
    channel = "sms"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, status_callback_url: str = ""):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.status_callback_url = status_callback_url
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    # Only connection failures are retried: the request never reached Twilio,
    # so a retry cannot produce a second text.
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        return await client.request(method, url, **kwargs)

    # ── Messaging ───────────────────────────────────────────

    async def send_sms(self, to: str, body: str) -> dict[str, Any]:
        """
        Send a text message.

        Args:
            to: Destination phone number (E.164)
            body: Message text

        Returns:
            {"sid": "SM...", "status": "queued", "to": "...", "from": "..."}
        """
        payload = {"From": self.from_number, "To": to, "Body": body}
        if self.status_callback_url.startswith("http"):
            payload["StatusCallback"] = self.status_callback_url

        try:
            resp = await self._request("POST", "/Messages", data=payload)
        except httpx.HTTPError as e:
            raise ChannelError(f"Twilio request failed: {e}", self.channel) from e

        if resp.status_code >= 400:
            raise self._classify_error(resp, to)

        result = resp.json()
        logger.info("twilio_sms_accepted", to=to, sid=result.get("sid", ""),
                    status=result.get("status", ""))
        return {
            "sid": result.get("sid", ""),
            "status": result.get("status", "queued"),
            "to": to,
            "from": self.from_number,
        }

    def _classify_error(self, resp: httpx.Response, to: str) -> ChannelError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        code = str(body.get("code", "") or "")
        message = body.get("message") or resp.text[:300]

        logger.error("twilio_api_error", status=resp.status_code, code=code, body=message)

        if code in _OPTED_OUT_CODES:
            return OptedOutError(to, self.channel, code=code)
        if code in _INVALID_NUMBER_CODES:
            return InvalidDestinationError(to, self.channel, code=code)
        if resp.status_code == 429:
            return RateLimitedError(self.channel, code=code)
        # Other 4xx are request problems (auth, bad From) that an operator
        # must fix; keep them retryable so jobs survive the fix.
        return ChannelError(
            f"Twilio error {resp.status_code}{f' ({code})' if code else ''}: {message}",
            self.channel, permanent=False, code=code,
        )

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Twilio message status callback.

        Twilio sends: MessageSid, MessageStatus (queued, sent, delivered,
        undelivered, failed, ...), ErrorCode, To, From.
        """
        return {
            "message_sid": payload.get("MessageSid", payload.get("SmsSid", "")),
            "status": str(payload.get("MessageStatus", payload.get("SmsStatus", ""))).lower(),
            "error_code": str(payload.get("ErrorCode", "") or ""),
            "to": payload.get("To", ""),
        }

    # ── Helpers ─────────────────────────────────────────────

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
