"""
Per-call session reactor.

One queue, one driver. Every source of change for a call posts an event
into the queue:

- the transport reader (Twilio messages, disconnect)
- Deepgram STT callbacks (interim, final, reconnect exhausted)
- the completion task (reply segments, failure)
- synthesis tasks (audio, failure)
- session timers (quiet period, transfer fallback/settle)
- the audio sequencer (audio-sent, transport-unavailable, synthesis-failure)

`run()` takes events off the queue one at a time and hands them to the turn
aggregator, the audio sequencer and the transfer handshake. Nothing inside a
session needs a lock; the Session Registry is the only shared state.
"""

import asyncio
import time
from typing import Any, Callable, Coroutine, Optional, Protocol, Set

import structlog

from src.intake.call_control import CallControl
from src.intake.config import get_config
from src.intake.errors import RecognitionStreamFailure, SynthesisFailure
from src.intake.events import (
    CallerTurn,
    CompletionFailed,
    CompletionReply,
    FinalTranscript,
    InterimTranscript,
    RecognitionFailed,
    ReplyReceived,
    SynthesisCompleted,
    SynthesisFailed,
    TimerFired,
    TransportClosed,
    TransportMessage,
)
from src.intake.llm import CompletionService, get_greeting
from src.intake.registry import SessionRegistry, get_registry
from src.intake.sequencer import AudioSequencer, MediaTransport, SequencerEvent, SequencerEventType
from src.intake.stt import DeepgramSTT
from src.intake.timers import TimerSlot
from src.intake.transfer import TransferHandshake
from src.intake.tts import DeepgramTTS
from src.intake.turns import TurnAggregator, redact_transcript_for_logs
from src.intake.twilio_protocol import (
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class ReceivingTransport(MediaTransport, Protocol):
    """Media transport that can also be read from."""

    async def receive_text(self) -> Optional[str]:
        """Next text frame, or None once the connection is gone."""
        ...

    @property
    def close_code(self) -> Optional[int]: ...


class CallSession:
    """
    Orchestrates one live call.

    Collaborators are injectable so tests can drive the reactor without
    network access.
    """

    def __init__(
        self,
        transport: ReceivingTransport,
        *,
        config: Optional[Any] = None,
        registry: Optional[SessionRegistry] = None,
        completion: Optional[CompletionService] = None,
        tts: Optional[DeepgramTTS] = None,
        stt_factory: Optional[Callable[..., DeepgramSTT]] = DeepgramSTT,
        call_control: Optional[CallControl] = None,
    ):
        self.config = config or get_config()
        self.transport = transport
        self.registry = registry if registry is not None else get_registry()
        self.protocol = TwilioProtocolHandler()

        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._completion_lock = asyncio.Lock()
        self._finished = False
        self._closed = False
        self._started_at = time.time()

        self.sequencer = AudioSequencer(transport, self.protocol, listener=self.post)
        self._quiet_timer = TimerSlot("quiet", self.post)
        self._transfer_timer = TimerSlot("transfer", self.post)
        self.turns = TurnAggregator(self._quiet_timer, self.config.turn_quiet_period_s)
        self.transfer = TransferHandshake(
            registry=self.registry,
            timer=self._transfer_timer,
            close_transport=self._close_transport,
            fallback_timeout_s=self.config.transfer_fallback_seconds,
            settle_delay_s=self.config.transfer_settle_s,
            registry_ttl_s=self.config.transfer_registry_ttl_seconds,
        )

        self.completion = completion if completion is not None else CompletionService(self.config)
        self.tts = tts if tts is not None else DeepgramTTS(self.config)
        self.call_control = call_control
        self._stt_factory = stt_factory
        self.stt: Optional[DeepgramSTT] = None
        self.recognition_failed = False

        self._barge_ins = 0
        self._discarded_replies = 0
        self._skipped_segments = 0

    @property
    def call_sid(self) -> str:
        return self.protocol.call_sid

    @property
    def stream_sid(self) -> str:
        return self.protocol.stream_sid

    @property
    def finished(self) -> bool:
        return self._finished

    def post(self, event: Any) -> None:
        """Queue an event for the driver. Ignored once the session is closed."""
        if self._closed:
            return
        self._queue.put_nowait(event)

    async def run(self) -> None:
        """Drive the session until the call ends, then tear down."""
        logger.info("Call session started")
        if self._stt_factory is not None:
            self.stt = self._stt_factory(
                on_interim=self._on_stt_interim,
                on_final=self._on_stt_final,
                on_failure=self._on_stt_failure,
                config=self.config,
            )
            self._spawn(self.stt.start(), "stt_start")
        self._spawn(self._read_transport(), "transport_reader")

        try:
            while not self._finished:
                event = await self._queue.get()
                try:
                    await self.dispatch(event)
                except Exception as e:
                    logger.exception(
                        "Error handling session event",
                        call_sid=self.call_sid,
                        event_type=type(event).__name__,
                        error=str(e),
                    )
        finally:
            await self.close()

    async def dispatch(self, event: Any) -> None:
        """Apply one event to the session state."""
        if isinstance(event, TransportMessage):
            await self._handle_transport_message(event.raw)
        elif isinstance(event, TransportClosed):
            await self._handle_transport_closed(event)
        elif isinstance(event, InterimTranscript):
            await self._handle_interim(event.text)
        elif isinstance(event, FinalTranscript):
            self._start_completion(self.turns.on_final(event.text))
        elif isinstance(event, RecognitionFailed):
            self.recognition_failed = True
            logger.error(
                "Speech recognition unavailable for the rest of the call",
                call_sid=self.call_sid,
                attempts=event.attempts,
            )
        elif isinstance(event, ReplyReceived):
            self._handle_reply(event.reply)
        elif isinstance(event, CompletionFailed):
            logger.error(
                "Completion failed",
                call_sid=self.call_sid,
                interaction_count=event.interaction_count,
                error=event.error,
            )
            if self.transfer.accepts_replies:
                self.turns.expect_answer()
        elif isinstance(event, SynthesisCompleted):
            await self._handle_synthesis_completed(event)
        elif isinstance(event, SynthesisFailed):
            await self._handle_synthesis_failed(event.index, event.ack_label, event.error)
        elif isinstance(event, SequencerEvent):
            await self._handle_sequencer_event(event)
        elif isinstance(event, TimerFired):
            await self._handle_timer(event)
        else:
            logger.warning("Unknown session event", event_type=type(event).__name__)

        if self.transfer.committed:
            self.turns.close()
            self._finished = True

    # Transport

    async def _read_transport(self) -> None:
        try:
            while True:
                raw = await self.transport.receive_text()
                if raw is None:
                    break
                self.post(TransportMessage(raw))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Transport read failed", call_sid=self.call_sid, error=str(e))
        self.post(TransportClosed(code=getattr(self.transport, "close_code", None)))

    async def _handle_transport_message(self, raw: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")
        elif event_type == TwilioEventType.START:
            await self._handle_start(event)
        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)
        elif event_type == TwilioEventType.MARK:
            self._handle_mark(event)
        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", call_sid=self.call_sid, digit=event.digit)
        elif event_type == TwilioEventType.STOP:
            self.protocol.handle_stop()
            await self.transfer.on_disconnect()
            self._finished = True

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        self.protocol.handle_start(event)
        self.transfer.call_sid = event.call_sid
        self.completion.set_call_sid(event.call_sid)
        structlog.contextvars.bind_contextvars(call_sid=event.call_sid, stream_sid=event.stream_sid)

        if self.config.recording_enabled and self.call_control is not None:
            await self.call_control.start_recording(event.call_sid)

        logger.info("Starting AI intake process", call_sid=event.call_sid)
        greeting = get_greeting(self.config)
        self.completion.history.add_assistant_message(greeting)
        self._speak(None, greeting, None)
        if greeting.rstrip().endswith("?"):
            self.turns.expect_answer()

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if self.stt is None or self.recognition_failed or not event.payload:
            return
        await self.stt.send_audio(event.payload)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        rtt_ms = self.protocol.handle_mark(event)
        logger.debug("Audio mark completed", label=event.name, mark_rtt_ms=round(rtt_ms, 2))
        self.transfer.on_mark(event.name)

    async def _handle_transport_closed(self, event: TransportClosed) -> None:
        logger.info("WebSocket closed", call_sid=self.call_sid, code=event.code, reason=event.reason)
        await self.transfer.on_disconnect()
        self._finished = True

    async def _close_transport(self, code: int, reason: str) -> None:
        await self.transport.close(code=code, reason=reason)

    # Recognition

    async def _on_stt_interim(self, text: str) -> None:
        self.post(InterimTranscript(text))

    async def _on_stt_final(self, text: str) -> None:
        self.post(FinalTranscript(text))

    async def _on_stt_failure(self, failure: RecognitionStreamFailure) -> None:
        self.post(RecognitionFailed(failure.attempts))

    async def _handle_interim(self, text: str) -> None:
        barge_in = self.turns.on_interim(text, audio_in_flight=self.protocol.audio_in_flight)
        if not barge_in:
            return
        if not self.transfer.accepts_replies:
            logger.info("Ignoring barge-in during transfer", call_sid=self.call_sid)
            return

        clear = self.protocol.create_clear()
        if clear and self.transport.is_open:
            self._barge_ins += 1
            logger.warning("Interruption detected - clearing stream", call_sid=self.call_sid)
            try:
                await self.transport.send_text(clear)
            except Exception as e:
                logger.error("Failed to send clear", call_sid=self.call_sid, error=str(e))

    # Completion

    def _start_completion(self, turn: Optional[CallerTurn]) -> None:
        if turn is None or not self.transfer.accepts_replies:
            return
        self._spawn(self._run_completion(turn), "completion")

    async def _run_completion(self, turn: CallerTurn) -> None:
        async with self._completion_lock:
            try:
                async for reply in self.completion.complete(turn):
                    self.post(ReplyReceived(reply))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.post(CompletionFailed(turn.interaction_count, str(e)))

    def _handle_reply(self, reply: CompletionReply) -> None:
        if not self.transfer.accepts_replies:
            self._discarded_replies += 1
            logger.info(
                "Ignoring reply - transfer already pending",
                call_sid=self.call_sid,
                index=reply.index,
                state=self.transfer.state.value,
            )
            return

        if reply.is_transfer:
            self.transfer.begin(reply)

        logger.info(
            "Reply -> TTS",
            call_sid=self.call_sid,
            index=reply.index,
            kind=reply.kind.value,
            text=redact_transcript_for_logs(reply.text)[:80],
        )
        self._speak(reply.index, reply.text, reply.ack_label)

        if not reply.is_transfer and reply.text.rstrip().endswith("?"):
            self.turns.expect_answer()

    # Synthesis

    def _speak(self, index: Optional[int], text: str, label: Optional[str]) -> None:
        self._spawn(self._synthesize(index, text, label), "synthesis")

    async def _synthesize(self, index: Optional[int], text: str, label: Optional[str]) -> None:
        try:
            payload = await self.tts.synthesize(text, index=index, label=label)
        except SynthesisFailure as e:
            self.post(SynthesisFailed(index=index, ack_label=label, error=str(e)))
            return
        self.post(SynthesisCompleted(index=index, payload=payload, ack_label=label, text=text))

    async def _handle_synthesis_completed(self, event: SynthesisCompleted) -> None:
        if self.transfer.committed:
            return
        await self.sequencer.submit(event.index, event.payload, event.ack_label)

    async def _handle_synthesis_failed(self, index: Optional[int], label: Optional[str], error: str) -> None:
        logger.error("TTS error", call_sid=self.call_sid, index=index, label=label, error=error)
        if await self.transfer.on_synthesis_failed(label, error):
            return
        if index is not None and not self.transfer.committed:
            self._skipped_segments += 1
            await self.sequencer.skip(index)

    async def _handle_sequencer_event(self, event: SequencerEvent) -> None:
        if event.type == SequencerEventType.AUDIO_SENT:
            self.transfer.on_audio_sent(event.label)
        elif event.type == SequencerEventType.SYNTHESIS_FAILURE:
            await self._handle_synthesis_failed(event.index, event.label, str(event.error))
        elif event.type == SequencerEventType.TRANSPORT_UNAVAILABLE:
            logger.warning(
                "Audio dropped - transport unavailable",
                call_sid=self.call_sid,
                index=event.index,
                label=event.label,
            )

    # Timers

    async def _handle_timer(self, event: TimerFired) -> None:
        if event.slot == self._quiet_timer.name:
            self._start_completion(self.turns.on_timer(event))
        elif event.slot == self._transfer_timer.name:
            await self.transfer.on_timer(event)

    # Lifecycle

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Session task failed", call_sid=self.call_sid, task=task.get_name(), error=str(error))

    async def close(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if self._closed:
            return

        # A handshake that never committed still owes the registry its entry.
        await self.transfer.on_disconnect()

        self._closed = True
        self._finished = True
        self.turns.close()
        self.transfer.cancel_timers()
        self._quiet_timer.cancel()
        self.sequencer.remove_all_listeners()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self.stt is not None:
            try:
                await self.stt.disconnect()
            except Exception as e:
                logger.error("Error stopping STT", call_sid=self.call_sid, error=str(e))
        try:
            await self.tts.close()
        except Exception as e:
            logger.error("Error closing TTS client", call_sid=self.call_sid, error=str(e))

        logger.info("Call session ended", stats=self.stats())
        structlog.contextvars.unbind_contextvars("call_sid", "stream_sid")

    def stats(self) -> dict:
        call_state = self.protocol.call_state
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_s": round(time.time() - self._started_at, 2),
            "interaction_count": self.turns.interaction_count,
            "transfer_state": self.transfer.state.value,
            "transfer_reason": self.transfer.commit_reason,
            "barge_ins": self._barge_ins,
            "discarded_replies": self._discarded_replies,
            "skipped_segments": self._skipped_segments,
            "recognition_failed": self.recognition_failed,
            "mark_rtt_ms": round(call_state.avg_mark_rtt_ms, 2) if call_state else 0.0,
            "sequencer": self.sequencer.stats(),
        }
