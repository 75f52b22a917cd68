"""
Twilio REST call control: redirect a live call to the human line, record calls.

The twilio SDK is synchronous, so each request runs in a worker thread.
"""

import asyncio
from typing import Any, Optional

import structlog
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from src.intake.config import get_config

logger = structlog.get_logger(__name__)


def build_dial_twiml(number: str) -> str:
    """TwiML dialing the fixed transfer number."""
    response = VoiceResponse()
    response.dial(number)
    return str(response)


class CallControl:
    """Thin async wrapper over the Twilio REST client."""

    def __init__(self, config: Optional[Any] = None, client: Optional[TwilioClient] = None):
        self.config = config or get_config()
        self._client = client

    def _get_client(self) -> Optional[TwilioClient]:
        if self._client is None and self.config.twilio_account_sid and self.config.twilio_auth_token:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def forward(self, call_sid: str, number: Optional[str] = None) -> bool:
        """Redirect an in-progress call to `number` (the transfer number by default)."""
        client = self._get_client()
        if not client or not call_sid:
            logger.warning("Cannot forward call - missing Twilio client or call_sid", call_sid=call_sid)
            return False

        target = number or self.config.transfer_number
        twiml = build_dial_twiml(target)
        try:
            await asyncio.to_thread(lambda: client.calls(call_sid).update(twiml=twiml))
        except Exception as e:
            logger.error("Failed to forward call", call_sid=call_sid, number=target, error=str(e))
            return False

        logger.info("Call forwarded", call_sid=call_sid, number=target)
        return True

    async def start_recording(self, call_sid: str) -> bool:
        """Start a dual-channel recording of the call."""
        client = self._get_client()
        if not client or not call_sid:
            logger.warning("Cannot record call - missing Twilio client or call_sid", call_sid=call_sid)
            return False

        try:
            recording = await asyncio.to_thread(
                lambda: client.calls(call_sid).recordings.create(recording_channels="dual")
            )
        except Exception as e:
            logger.error("Failed to start recording", call_sid=call_sid, error=str(e))
            return False

        logger.info("Recording started", call_sid=call_sid, recording_sid=getattr(recording, "sid", None))
        return True


# Singleton instance
_call_control: Optional[CallControl] = None


def get_call_control() -> CallControl:
    """Get or create the call-control singleton."""
    global _call_control

    if _call_control is None:
        _call_control = CallControl()

    return _call_control


def reset_call_control() -> None:
    global _call_control
    _call_control = None
