"""
Channels — outbound SMS delivery and live notifications.
"""
from channels.base import (
    ChannelError, RateLimitedError, InvalidDestinationError, OptedOutError,
    ChannelMetrics, SmsGateway,
)
from channels.sms_adapter import TwilioSmsGateway, LoggingSmsGateway, create_sms_gateway
from channels.notifications import (
    NotificationSink, WebSocketHub, RedisNotificationSink, create_notification_sink,
)

__all__ = [
    "ChannelError", "RateLimitedError", "InvalidDestinationError", "OptedOutError",
    "ChannelMetrics", "SmsGateway",
    "TwilioSmsGateway", "LoggingSmsGateway", "create_sms_gateway",
    "NotificationSink", "WebSocketHub", "RedisNotificationSink", "create_notification_sink",
]
