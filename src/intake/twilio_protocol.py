"""
Twilio Media Streams wire format for one intake call.

Inbound we care about start (call and stream SIDs), media (caller audio for
transcription), mark (playback acknowledgments) and stop. Outbound we send
mu-law media frames, a named mark after every audio segment, and clear on
barge-in. Marks that are sent but not yet acknowledged are what the session
treats as "audio in flight".
"""

import base64
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import msgspec
import structlog

from src.intake.audio import chunk_audio, decode_media_payload, TWILIO_FRAME_SIZE

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

# Mark RTT samples kept for session stats
RTT_WINDOW = 20


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    stream_sid: str
    call_sid: str
    account_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start") or {}
        return cls(
            # Some payloads only carry streamSid inside the start block
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
        )


@dataclass
class TwilioMediaEvent:
    stream_sid: str
    track: str
    payload: bytes  # mu-law, empty if the base64 was unreadable

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            payload=decode_media_payload(media.get("payload", "")),
        )


@dataclass
class TwilioMarkEvent:
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=(message.get("mark") or {}).get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=(message.get("dtmf") or {}).get("digit", ""),
        )


_PARSERS: Dict[TwilioEventType, Callable[[Dict[str, Any]], Any]] = {
    TwilioEventType.START: TwilioStartEvent.from_message,
    TwilioEventType.MEDIA: TwilioMediaEvent.from_message,
    TwilioEventType.MARK: TwilioMarkEvent.from_message,
    TwilioEventType.DTMF: TwilioDTMFEvent.from_message,
}


@dataclass
class CallState:
    """Per-stream state, created by the start event."""
    stream_sid: str = ""
    call_sid: str = ""
    stopped: bool = False
    pending_marks: Dict[str, float] = field(default_factory=dict)  # label -> send time
    mark_rtt_samples: Deque[float] = field(default_factory=lambda: deque(maxlen=RTT_WINDOW))

    @property
    def avg_mark_rtt_ms(self) -> float:
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


def parse_twilio_message(raw_message) -> tuple[TwilioEventType, Any]:
    """
    Parse one inbound frame.

    connected and stop come back as the raw dict; the others as their event
    dataclass.

    Raises:
        ValueError: malformed JSON, a non-object, or an unknown event
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_name = message.get("event", "")
    try:
        event_type = TwilioEventType(event_name)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_name)
        raise ValueError(f"Unknown event type: {event_name}")

    parser = _PARSERS.get(event_type)
    return event_type, parser(message) if parser else message


def _encode(message: Dict[str, Any]) -> str:
    return encoder.encode(message).decode("utf-8")


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """One outbound media frame (160 bytes is 20 ms at 8 kHz)."""
    return _encode({
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio_payload).decode("ascii")},
    })


def create_mark_message(stream_sid: str, name: str) -> str:
    return _encode({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})


def create_clear_message(stream_sid: str) -> str:
    return _encode({"event": "clear", "streamSid": stream_sid})


class TwilioProtocolHandler:
    """
    Stream state plus outbound message builders for one call.

    Builders return nothing until the start event has been seen, so audio
    produced before the stream exists cannot be addressed to a wrong SID.
    """

    def __init__(self):
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        return self.call_state.call_sid if self.call_state else ""

    @property
    def stopped(self) -> bool:
        return self.call_state is not None and self.call_state.stopped

    @property
    def audio_in_flight(self) -> bool:
        """True while any sent mark is still waiting for Twilio's acknowledgment."""
        return bool(self.call_state and self.call_state.pending_marks)

    @property
    def outstanding_marks(self) -> List[str]:
        return list(self.call_state.pending_marks) if self.call_state else []

    def handle_start(self, event: TwilioStartEvent) -> None:
        self.call_state = CallState(stream_sid=event.stream_sid, call_sid=event.call_sid)
        logger.info("Media stream started", stream_sid=event.stream_sid, call_sid=event.call_sid)

    def handle_stop(self) -> None:
        if self.call_state:
            self.call_state.stopped = True
            logger.info(
                "Media stream stopped",
                stream_sid=self.call_state.stream_sid,
                call_sid=self.call_state.call_sid,
                unacknowledged_marks=len(self.call_state.pending_marks),
            )

    def handle_mark(self, event: TwilioMarkEvent) -> float:
        """Clear an acknowledged mark. Returns its round trip in ms (0 if unknown)."""
        if not self.call_state:
            return 0.0
        sent_at = self.call_state.pending_marks.pop(event.name, None)
        if sent_at is None:
            return 0.0
        rtt_ms = (time.time() - sent_at) * 1000
        self.call_state.mark_rtt_samples.append(rtt_ms)
        return rtt_ms

    def create_audio_messages(self, audio_bytes: bytes) -> List[str]:
        if not self.call_state:
            return []
        return [
            create_media_message(self.call_state.stream_sid, chunk)
            for chunk in chunk_audio(audio_bytes, TWILIO_FRAME_SIZE)
        ]

    def create_mark(self, name: Optional[str] = None) -> str:
        """Build a mark and record it as outstanding; a uuid4 label is minted if none is given."""
        if not self.call_state:
            return ""
        name = name or str(uuid.uuid4())
        self.call_state.pending_marks[name] = time.time()
        return create_mark_message(self.call_state.stream_sid, name)

    def create_clear(self) -> str:
        if not self.call_state:
            return ""
        logger.info("Clearing Twilio audio buffer", stream_sid=self.call_state.stream_sid)
        return create_clear_message(self.call_state.stream_sid)
