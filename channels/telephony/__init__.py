"""
Telephony provider clients.

  - TwilioClient — Twilio REST Messages API (outbound SMS, status callbacks)
"""
from channels.telephony.twilio_client import TwilioClient

__all__ = ["TwilioClient"]
