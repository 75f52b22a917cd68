"""
Audio Sequencer.

Synthesis requests for the segments of a reply complete in arbitrary order.
The sequencer restores reply order before anything reaches Twilio:

- index None: delivered immediately (greeting and other out-of-band audio)
- index == next_expected: delivered, then any buffered successors are drained
- index > next_expected: held until its predecessors arrive
- index < next_expected: duplicate or stale, never redelivered

Each delivery is the audio as 20ms media frames followed by a mark carrying
the segment's ack label, so Twilio tells us when it finished playing.
Delivery fails closed: a closed transport or an empty payload is reported as
an error event and leaves the ordering state untouched.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Set

import structlog

from src.intake.audio import get_audio_duration_ms
from src.intake.errors import IntakeError, SynthesisFailure, TransportUnavailable
from src.intake.twilio_protocol import TwilioProtocolHandler

logger = structlog.get_logger(__name__)


class MediaTransport(Protocol):
    """The duplex connection to Twilio as seen by the session."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, message: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class SequencerEventType(str, Enum):
    AUDIO_SENT = "audio-sent"
    TRANSPORT_UNAVAILABLE = "transport-unavailable"
    SYNTHESIS_FAILURE = "synthesis-failure"


@dataclass
class SequencerEvent:
    """Something observers of the sequencer need to know about."""
    type: SequencerEventType
    label: Optional[str] = None
    index: Optional[int] = None
    error: Optional[IntakeError] = None


@dataclass
class _PendingSegment:
    payload: bytes
    label: Optional[str]


class AudioSequencer:
    """
    Reorders synthesized segments and delivers them to the transport.

    Args:
        transport: Twilio media connection
        protocol: Protocol handler used to frame audio and register marks
        listener: Optional callback receiving every SequencerEvent
    """

    def __init__(
        self,
        transport: MediaTransport,
        protocol: TwilioProtocolHandler,
        listener: Optional[Callable[[SequencerEvent], None]] = None,
    ):
        self._transport = transport
        self._protocol = protocol
        self._listeners: List[Callable[[SequencerEvent], None]] = []
        if listener:
            self._listeners.append(listener)

        self.next_expected = 0
        self._pending: Dict[int, _PendingSegment] = {}
        self._skipped: Set[int] = set()
        self._delivered_count = 0
        self._sent_labels: List[str] = []

    def add_listener(self, listener: Callable[[SequencerEvent], None]) -> None:
        self._listeners.append(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    @property
    def buffered_indices(self) -> List[int]:
        return sorted(self._pending)

    async def submit(self, index: Optional[int], payload: bytes, ack_label: Optional[str] = None) -> List[str]:
        """
        Accept one synthesized segment.

        Returns:
            Labels of every segment delivered as a result of this call, in order
        """
        if not payload:
            logger.error("Rejected empty audio segment", index=index, label=ack_label)
            self._emit(SequencerEvent(
                type=SequencerEventType.SYNTHESIS_FAILURE,
                label=ack_label,
                index=index,
                error=SynthesisFailure("Empty audio payload", index=index, label=ack_label),
            ))
            return []

        if index is None:
            label = await self._deliver(payload, ack_label, index=None)
            return [label] if label else []

        if index < self.next_expected or index in self._pending or index in self._skipped:
            logger.debug(
                "Ignoring duplicate audio segment",
                index=index,
                next_expected=self.next_expected,
            )
            return []

        if index > self.next_expected:
            self._pending[index] = _PendingSegment(payload=payload, label=ack_label)
            logger.debug(
                "Buffered out-of-order audio segment",
                index=index,
                next_expected=self.next_expected,
                buffered=len(self._pending),
            )
            return []

        label = await self._deliver(payload, ack_label, index=index)
        if label is None:
            return []
        self.next_expected += 1
        return [label] + await self._drain()

    async def skip(self, index: int) -> List[str]:
        """
        Abandon `index` (its synthesis failed) so later segments are not stranded.

        Nothing is delivered for the skipped index itself.

        Returns:
            Labels of buffered segments delivered because the gap closed
        """
        if index < self.next_expected or index in self._skipped:
            return []
        self._pending.pop(index, None)
        self._skipped.add(index)
        logger.warning("Skipping audio segment", index=index, next_expected=self.next_expected)
        return await self._drain()

    async def _drain(self) -> List[str]:
        delivered: List[str] = []
        while True:
            if self.next_expected in self._skipped:
                self._skipped.discard(self.next_expected)
                self.next_expected += 1
                continue

            segment = self._pending.get(self.next_expected)
            if segment is None:
                break

            label = await self._deliver(segment.payload, segment.label, index=self.next_expected)
            if label is None:
                break
            del self._pending[self.next_expected]
            delivered.append(label)
            self.next_expected += 1
        return delivered

    async def _deliver(self, payload: bytes, ack_label: Optional[str], *, index: Optional[int]) -> Optional[str]:
        label = ack_label or str(uuid.uuid4())

        if not self._transport.is_open or self._protocol.call_state is None:
            logger.warning("Attempted to send audio on closed transport", index=index, label=label)
            self._emit(SequencerEvent(
                type=SequencerEventType.TRANSPORT_UNAVAILABLE,
                label=label,
                index=index,
                error=TransportUnavailable(label),
            ))
            return None

        try:
            for message in self._protocol.create_audio_messages(payload):
                await self._transport.send_text(message)
            mark = self._protocol.create_mark(label)
            if mark:
                await self._transport.send_text(mark)
        except Exception as e:
            logger.error("Error sending audio/mark", index=index, label=label, error=str(e))
            self._emit(SequencerEvent(
                type=SequencerEventType.TRANSPORT_UNAVAILABLE,
                label=label,
                index=index,
                error=TransportUnavailable(label),
            ))
            return None

        self._delivered_count += 1
        self._sent_labels.append(label)
        logger.info(
            "Audio sent",
            index=index,
            label=label,
            bytes=len(payload),
            duration_ms=round(get_audio_duration_ms(payload), 1),
        )
        self._emit(SequencerEvent(type=SequencerEventType.AUDIO_SENT, label=label, index=index))
        return label

    def _emit(self, event: SequencerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Sequencer listener failed", event_type=event.type.value, error=str(e))

    def stats(self) -> dict:
        return {
            "stream_sid": self._protocol.stream_sid,
            "delivered": self._delivered_count,
            "sent_labels": list(self._sent_labels),
            "next_expected": self.next_expected,
            "buffered": len(self._pending),
            "outstanding_marks": len(self._protocol.outstanding_marks),
            "transport_open": self._transport.is_open,
        }
