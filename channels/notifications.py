"""
Live Notifications — fire-and-forget events for connected listeners.

Sinks:
  - WebSocketHub          — in-process broadcast to /ws/events sockets
  - RedisNotificationSink — Redis pub/sub, for listeners in other processes

publish() never raises: a dead socket or an unreachable Redis is logged
and dropped, so a notification can never fail a dispatch.
"""
from __future__ import annotations

import abc
import json
import time
import uuid
import structlog
from typing import Any, Optional

from config.settings import NotificationConfig

logger = structlog.get_logger()


class NotificationSink(abc.ABC):
    """Broadcast capability used by the delivery recorder."""

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        try:
            await self._do_publish(event_name, payload)
        except Exception as e:
            logger.warning("notification_publish_failed", event_name=event_name, error=str(e))

    @abc.abstractmethod
    async def _do_publish(self, event_name: str, payload: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        pass

    @staticmethod
    def _envelope(event_name: str, payload: dict[str, Any]) -> str:
        return json.dumps({"event": event_name, "data": payload, "ts": int(time.time() * 1000)},
                          default=str)


class WebSocketHub(NotificationSink):
    """
    Tracks open WebSocket connections and broadcasts events to all of them.

    A socket whose send fails is assumed gone and is removed.
    """

    def __init__(self):
        self._connections: dict[str, Any] = {}

    def register(self, ws: Any) -> str:
        conn_id = uuid.uuid4().hex
        self._connections[conn_id] = ws
        logger.info("events_socket_connected", conn_id=conn_id, total=len(self._connections))
        return conn_id

    def remove(self, conn_id: str) -> None:
        if self._connections.pop(conn_id, None) is not None:
            logger.info("events_socket_disconnected", conn_id=conn_id,
                        total=len(self._connections))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def _do_publish(self, event_name: str, payload: dict[str, Any]) -> None:
        message = self._envelope(event_name, payload)
        for conn_id, ws in list(self._connections.items()):
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.debug("events_socket_dropped", conn_id=conn_id, error=str(e))
                self._connections.pop(conn_id, None)


class RedisNotificationSink(NotificationSink):
    """Publishes events as JSON on a Redis pub/sub channel."""

    def __init__(self, redis_url: str = "redis://localhost:6379", channel: str = "caseline:events"):
        self._redis_url = redis_url
        self._channel = channel
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_notifications_connected", url=self._redis_url, channel=self._channel)

    async def _do_publish(self, event_name: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            await self.connect()
        await self._redis.publish(self._channel, self._envelope(event_name, payload))

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None


def create_notification_sink(config: Optional[NotificationConfig] = None) -> NotificationSink:
    """Factory: pick the sink backend from configuration."""
    config = config or NotificationConfig()
    if config.backend == "redis":
        logger.info("notification_sink_created", backend="redis")
        return RedisNotificationSink(config.redis_url, config.channel)
    logger.info("notification_sink_created", backend="websocket")
    return WebSocketHub()
