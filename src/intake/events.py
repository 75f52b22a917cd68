"""
Session events.

Everything that can happen to a live call is posted into the session's queue
as one of these and handled one at a time by the session driver: inbound
Twilio messages, STT signals, completion replies, synthesis results and
timer firings.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ReplyKind(str, Enum):
    """Classification of a completion reply."""
    ORDINARY = "ordinary"
    TRANSFER = "transfer"


@dataclass
class CallerTurn:
    """A finalized unit of caller speech, consumed exactly once by completion."""
    text: str
    interaction_count: int
    arrived_at: float = field(default_factory=time.time)


@dataclass
class CompletionReply:
    """One segment of a completion reply, ready for synthesis."""
    index: int
    text: str
    interaction_count: int
    kind: ReplyKind = ReplyKind.ORDINARY
    trigger: Optional[str] = None  # tool name or marker that classified a transfer
    ack_label: Optional[str] = None

    @property
    def is_transfer(self) -> bool:
        return self.kind == ReplyKind.TRANSFER


@dataclass
class TransportMessage:
    """Raw text frame received from the Twilio WebSocket."""
    raw: str


@dataclass
class TransportClosed:
    """The media WebSocket went away (stop, disconnect, or our own close)."""
    code: Optional[int] = None
    reason: str = ""


@dataclass
class InterimTranscript:
    text: str


@dataclass
class FinalTranscript:
    text: str


@dataclass
class RecognitionFailed:
    """STT gave up reconnecting; the session keeps running but is text-deaf."""
    attempts: int


@dataclass
class ReplyReceived:
    reply: CompletionReply


@dataclass
class CompletionFailed:
    interaction_count: int
    error: str


@dataclass
class SynthesisCompleted:
    """Audio for one segment. `index` is None for audio outside the reply stream."""
    index: Optional[int]
    payload: bytes
    ack_label: Optional[str]
    text: str = ""


@dataclass
class SynthesisFailed:
    index: Optional[int]
    ack_label: Optional[str]
    error: str


@dataclass
class TimerFired:
    """A session timer elapsed. Stale firings are detected by generation."""
    slot: str
    generation: int
