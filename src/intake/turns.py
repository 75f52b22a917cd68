"""
Turn Aggregator.

Deepgram emits a stream of interim ("utterance") and final ("transcription")
signals, often re-transcribing the same words several times as it corrects
itself. The aggregator turns that stream into discrete caller turns:

- Signals are only accepted while the agent is waiting for an answer, i.e.
  right after it asked the caller a question. Anything said over the agent's
  own prompt is dropped.
- An interim replaces the buffer and restarts a quiet-period timer. When the
  timer elapses, the buffer is flushed as a turn.
- A final replaces the buffer and flushes immediately.
- A flush that repeats the previous turn is suppressed.
"""

from __future__ import annotations

import re
from typing import Optional

import structlog

from src.intake.events import CallerTurn, TimerFired
from src.intake.timers import TimerSlot

logger = structlog.get_logger(__name__)

DEFAULT_QUIET_PERIOD_S = 1.2

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(
    r"(?:\+?1[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}"
)


def redact_transcript_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs (to reduce accidental PII exposure).

    Intake calls are full of names, numbers and emails. This is not a
    compliance-grade scrubber; it masks common patterns:
    - emails -> [EMAIL]
    - phone numbers -> [PHONE-***1234]
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        last4 = digits[-4:] if len(digits) >= 4 else digits
        return f"[PHONE-***{last4}]"

    return _LOG_PHONE_RE.sub(_mask_phone, redacted)


def is_similar_input(new_input: Optional[str], last_input: Optional[str]) -> bool:
    """
    Near-duplicate test between a candidate turn and the previous turn.

    Similar when, after trimming and lowercasing:
    - the strings are equal, or
    - both are at least 4 characters and one contains the other, or
    - their lengths differ by at most 2 and at most 2 characters differ
      over the overlapping prefix.
    """
    if not new_input or not last_input:
        return False

    a = new_input.strip().lower()
    b = last_input.strip().lower()
    if a == b:
        return True
    if len(a) < 4 or len(b) < 4:
        return False
    if a in b or b in a:
        return True
    if abs(len(a) - len(b)) > 2:
        return False

    mismatches = sum(1 for x, y in zip(a, b) if x != y)
    return mismatches <= 2


class TurnAggregator:
    """
    Debounces and deduplicates recognition signals into caller turns.

    Args:
        quiet_timer: Timer slot owned by the session; its firings come back via `on_timer`
        quiet_period_s: Silence after the last interim before the buffer is flushed
    """

    def __init__(self, quiet_timer: TimerSlot, quiet_period_s: float = DEFAULT_QUIET_PERIOD_S):
        self._timer = quiet_timer
        self.quiet_period_s = quiet_period_s

        self.buffer = ""
        self.interaction_count = 0
        self.last_turn_text = ""
        self._waiting_for_answer = False
        self._closed = False

    @property
    def waiting_for_answer(self) -> bool:
        return self._waiting_for_answer

    @property
    def closed(self) -> bool:
        return self._closed

    def expect_answer(self) -> None:
        """The agent just asked a question: open the gate with an empty buffer."""
        if self._closed:
            return
        self._waiting_for_answer = True
        self.buffer = ""
        self._timer.cancel()

    def on_interim(self, text: Optional[str], *, audio_in_flight: bool) -> bool:
        """
        Handle an interim recognition signal.

        Returns:
            True if the caller is talking over audio still playing (barge-in),
            meaning queued audio should be cleared
        """
        if self._closed or not self._waiting_for_answer:
            return False

        text = (text or "").strip()
        if len(text) <= 1:
            return False

        self.buffer = text
        self._timer.arm(self.quiet_period_s, purpose="quiet")

        return audio_in_flight and not is_similar_input(text, self.last_turn_text)

    def on_final(self, text: Optional[str]) -> Optional[CallerTurn]:
        """Handle a provider-confirmed final signal: replace the buffer and flush now."""
        if self._closed or not self._waiting_for_answer:
            return None

        text = (text or "").strip()
        if len(text) <= 1:
            return None

        self.buffer = text
        self._timer.cancel()
        return self.flush()

    def on_timer(self, event: TimerFired) -> Optional[CallerTurn]:
        """Quiet period elapsed. Stale firings are ignored."""
        if self._timer.consume(event) is None:
            return None
        return self.flush()

    def flush(self) -> Optional[CallerTurn]:
        """Emit the buffer as a turn if it is long enough and not a repeat."""
        if self._closed or not self._waiting_for_answer:
            return None

        text = self.buffer.strip()
        if len(text) <= 1:
            return None

        if is_similar_input(text, self.last_turn_text):
            logger.info(
                "Suppressed duplicate turn",
                text=redact_transcript_for_logs(text)[:80],
                interaction_count=self.interaction_count,
            )
            self.buffer = ""
            return None

        turn = CallerTurn(text=text, interaction_count=self.interaction_count)
        self.interaction_count += 1
        self.last_turn_text = text
        self.buffer = ""
        self._waiting_for_answer = False
        self._timer.cancel()

        logger.info(
            "Caller turn finalized",
            text=redact_transcript_for_logs(text)[:80],
            interaction_count=turn.interaction_count,
        )
        return turn

    def close(self) -> None:
        """Stop aggregating for good (transfer committed or session torn down)."""
        self._closed = True
        self._waiting_for_answer = False
        self.buffer = ""
        self._timer.cancel()
