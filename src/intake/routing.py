"""
Inbound call routing.

Every Twilio webhook for a call lands here. The Session Registry decides the
answer:

- transfer due for this CallSid -> <Dial> the human line
- otherwise -> <Connect><Stream> to the AI session, with the Connect action
  pointing back at the webhook so Twilio asks again when the stream closes

`consume` is check-and-clear, so a retried webhook (or the stream-status
callback racing the Connect action) can transfer the call only once.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.intake.call_control import CallControl, build_dial_twiml
from src.intake.config import get_config
from src.intake.registry import SessionRegistry

logger = structlog.get_logger(__name__)

STREAM_STOPPED = "stream-stopped"


class RouteAction(str, Enum):
    CONNECT = "connect"
    DIAL = "dial"


@dataclass
class RoutingDecision:
    call_sid: str
    action: RouteAction
    twiml: str


def build_connect_twiml(config: Any) -> str:
    """TwiML connecting the call to the media WebSocket."""
    response = VoiceResponse()
    connect = Connect(action=f"{config.base_url}/incoming", method="POST")
    connect.stream(
        url=config.ws_url,
        status_callback=f"{config.base_url}/stream-status",
        status_callback_method="POST",
    )
    response.append(connect)
    return str(response)


class CallRouter:
    """Chooses between the AI session and the human line for each webhook."""

    def __init__(
        self,
        registry: SessionRegistry,
        config: Optional[Any] = None,
        call_control: Optional[CallControl] = None,
    ):
        self.config = config or get_config()
        self.registry = registry
        self._call_control = call_control

    def route_incoming(self, call_sid: Optional[str]) -> RoutingDecision:
        call_sid = (call_sid or "").strip()

        if call_sid and self.registry.consume(call_sid):
            logger.info("Routing call to transfer number", call_sid=call_sid, number=self.config.transfer_number)
            return RoutingDecision(
                call_sid=call_sid,
                action=RouteAction.DIAL,
                twiml=build_dial_twiml(self.config.transfer_number),
            )

        if not call_sid:
            logger.warning("Incoming webhook without CallSid")
        logger.info("Routing call to AI session", call_sid=call_sid, ws_url=self.config.ws_url)
        return RoutingDecision(
            call_sid=call_sid,
            action=RouteAction.CONNECT,
            twiml=build_connect_twiml(self.config),
        )

    async def handle_stream_status(self, call_sid: Optional[str], stream_event: Optional[str]) -> bool:
        """
        Forward the call over REST if its stream stopped with a transfer due.

        Returns:
            True if the call was forwarded
        """
        call_sid = (call_sid or "").strip()
        logger.info("Stream status", call_sid=call_sid, stream_event=stream_event)

        if stream_event != STREAM_STOPPED or not call_sid:
            return False
        if not self.registry.consume(call_sid):
            return False
        if self._call_control is None:
            logger.error("Transfer due but no call control configured", call_sid=call_sid)
            self.registry.mark_due(call_sid)
            return False

        if await self._call_control.forward(call_sid, self.config.transfer_number):
            return True

        # Leave the transfer to the Connect action webhook
        logger.warning("REST forward failed - restoring transfer flag", call_sid=call_sid)
        self.registry.mark_due(call_sid)
        return False
