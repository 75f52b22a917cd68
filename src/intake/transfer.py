"""
Transfer Handshake.

Hands a live call from the AI to the human line exactly once:

    IDLE -> PENDING -> MESSAGE_PLAYED -> COMMITTED

- IDLE -> PENDING: a completion reply is classified as transfer intent. A
  unique ack label is minted for the transfer message and a fallback timer
  starts.
- PENDING -> MESSAGE_PLAYED: the sequencer reports `audio-sent` for that
  label. The fallback window keeps running.
- Twilio acknowledges the transfer mark (playback finished): the fallback
  timer is replaced by a short settle timer.
- -> COMMITTED: the call is marked due in the Session Registry and the media
  stream is closed with 1000. Twilio then requests the Connect action URL and
  routing dials the human line.

Every path into COMMITTED (settle elapsed, fallback elapsed, synthesis
failure while pending, abrupt disconnect mid-handshake) goes through
`commit()`, which is a no-op once committed. The handshake owns one timer
slot, so at most one of its timers is armed at a time.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from src.intake.events import CompletionReply, TimerFired
from src.intake.registry import SessionRegistry
from src.intake.timers import TimerSlot

logger = structlog.get_logger(__name__)

DEFAULT_FALLBACK_TIMEOUT_S = 15.0
DEFAULT_SETTLE_DELAY_S = 0.5
TRANSFER_CLOSE_CODE = 1000
TRANSFER_CLOSE_REASON = "Transfer complete"


class TransferState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    MESSAGE_PLAYED = "message_played"
    COMMITTED = "committed"


def _default_label() -> str:
    return f"transfer-{uuid.uuid4()}"


class TransferHandshake:
    """
    Per-session transfer state machine.

    Args:
        registry: Shared registry written on commit
        timer: Timer slot dedicated to the handshake
        close_transport: Coroutine closing the media stream with (code, reason)
        fallback_timeout_s: Force-commit if the transfer message is never acknowledged
        settle_delay_s: Grace period after the playback mark before teardown
        registry_ttl_s: Lifetime of the registry entry (registry default if None)
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        timer: TimerSlot,
        close_transport: Callable[[int, str], Awaitable[None]],
        fallback_timeout_s: float = DEFAULT_FALLBACK_TIMEOUT_S,
        settle_delay_s: float = DEFAULT_SETTLE_DELAY_S,
        registry_ttl_s: Optional[float] = None,
        label_factory: Callable[[], str] = _default_label,
    ):
        self._registry = registry
        self._timer = timer
        self._close_transport = close_transport
        self.fallback_timeout_s = fallback_timeout_s
        self.settle_delay_s = settle_delay_s
        self.registry_ttl_s = registry_ttl_s
        self._label_factory = label_factory

        self.call_sid = ""
        self.state = TransferState.IDLE
        self.label: Optional[str] = None
        self.trigger: Optional[str] = None
        self.commit_reason: Optional[str] = None

    @property
    def accepts_replies(self) -> bool:
        """Replies are only spoken while no transfer is under way."""
        return self.state == TransferState.IDLE

    @property
    def in_progress(self) -> bool:
        return self.state in (TransferState.PENDING, TransferState.MESSAGE_PLAYED)

    @property
    def committed(self) -> bool:
        return self.state == TransferState.COMMITTED

    def begin(self, reply: CompletionReply) -> Optional[str]:
        """
        Start a transfer for `reply` and attach the transfer ack label to it.

        Returns:
            The minted label, or None if a transfer already started
        """
        if self.state != TransferState.IDLE:
            logger.info(
                "Ignoring transfer request - handshake not idle",
                call_sid=self.call_sid,
                state=self.state.value,
            )
            return None

        self.label = self._label_factory()
        self.trigger = reply.trigger
        reply.ack_label = self.label
        self._set_state(TransferState.PENDING)
        self._timer.arm(self.fallback_timeout_s, purpose="fallback")

        logger.info(
            "Transfer pending",
            call_sid=self.call_sid,
            label=self.label,
            trigger=self.trigger,
            fallback_timeout_s=self.fallback_timeout_s,
        )
        return self.label

    def on_audio_sent(self, label: Optional[str]) -> None:
        if self.state != TransferState.PENDING or label is None or label != self.label:
            return
        logger.info("Transfer message delivered to transport", call_sid=self.call_sid, label=label)
        self._set_state(TransferState.MESSAGE_PLAYED)

    def on_mark(self, label: Optional[str]) -> None:
        """Twilio finished playing a marked segment."""
        if not self.in_progress or label is None or label != self.label:
            return
        if self._timer.purpose == "settle":
            return

        logger.info(
            "Transfer message mark received - message fully played",
            call_sid=self.call_sid,
            label=label,
        )
        self._set_state(TransferState.MESSAGE_PLAYED)
        self._timer.arm(self.settle_delay_s, purpose="settle")

    async def on_timer(self, event: TimerFired) -> bool:
        purpose = self._timer.consume(event)
        if purpose is None:
            return False

        if purpose == "settle":
            return await self.commit("message_played")

        logger.warning(
            "Transfer fallback elapsed - forcing transfer",
            call_sid=self.call_sid,
            label=self.label,
            state=self.state.value,
            timer=purpose,
        )
        return await self.commit("fallback_timeout")

    async def on_synthesis_failed(self, label: Optional[str] = None, error: str = "") -> bool:
        """A broken transfer message must not strand the call."""
        if self.state != TransferState.PENDING:
            return False
        logger.warning(
            "Synthesis failed during transfer - forcing transfer",
            call_sid=self.call_sid,
            label=label,
            transfer_label=self.label,
            error=error,
        )
        return await self.commit("synthesis_failure")

    async def on_disconnect(self) -> bool:
        """The stream dropped mid-handshake: record the transfer anyway, nothing to close."""
        if not self.in_progress:
            return False
        logger.warning(
            "Stream ended with pending transfer - forcing transfer",
            call_sid=self.call_sid,
            state=self.state.value,
        )
        return await self.commit("disconnect", close=False)

    async def commit(self, reason: str, *, close: bool = True) -> bool:
        """
        Mark the call due for transfer and close the stream, at most once.

        Returns:
            True if this call performed the commit
        """
        if self.state == TransferState.COMMITTED:
            logger.debug(
                "Ignoring duplicate transfer commit",
                call_sid=self.call_sid,
                reason=reason,
                committed_by=self.commit_reason,
            )
            return False

        self._set_state(TransferState.COMMITTED)
        self.commit_reason = reason
        self._timer.cancel()

        if self.call_sid:
            self._registry.mark_due(self.call_sid, self.registry_ttl_s)
        else:
            logger.error("Transfer committed without a call SID", reason=reason)

        logger.info("Transfer committed", call_sid=self.call_sid, reason=reason, label=self.label)

        if close:
            logger.info(
                "Closing media stream",
                call_sid=self.call_sid,
                code=TRANSFER_CLOSE_CODE,
                reason=TRANSFER_CLOSE_REASON,
            )
            try:
                await self._close_transport(TRANSFER_CLOSE_CODE, TRANSFER_CLOSE_REASON)
            except Exception as e:
                logger.error("Failed to close media stream after transfer", call_sid=self.call_sid, error=str(e))

        return True

    def cancel_timers(self) -> None:
        self._timer.cancel()

    def _set_state(self, state: TransferState) -> None:
        if state == self.state:
            return
        logger.debug(
            "Transfer state transition",
            call_sid=self.call_sid,
            from_state=self.state.value,
            to_state=state.value,
        )
        self.state = state
