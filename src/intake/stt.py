"""
Deepgram Speech-to-Text streaming client.

Accepts Twilio's mu-law 8kHz directly and turns Deepgram results into two
signals for the turn aggregator:
- interim: non-final text, streamed while the caller talks
- final: the final segments accumulated since the last emit, sent on
  `speech_final`, or on `UtteranceEnd` when speech was not already final

An abnormal close is retried with exponential backoff up to a cap; after
that the failure callback fires and the call carries on without recognition.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.intake.config import get_config
from src.intake.errors import RecognitionStreamFailure

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


def build_listen_url(config: Any) -> str:
    params = {
        "model": config.deepgram_model,
        "encoding": "mulaw",
        "sample_rate": "8000",
        "channels": "1",
        "punctuate": "true",
        "interim_results": "true",
        "endpointing": "200",
        "utterance_end_ms": "1000",
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    interim_transcripts: int = 0
    final_transcripts: int = 0
    reconnects: int = 0


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.

    Args:
        on_interim: Called with each non-final transcript
        on_final: Called with each accumulated final transcript
        on_failure: Called once reconnection gives up
        config: Configuration (defaults to get_config())
    """

    def __init__(
        self,
        on_interim: Optional[Callable[[str], Awaitable[None]]] = None,
        on_final: Optional[Callable[[str], Awaitable[None]]] = None,
        on_failure: Optional[Callable[[RecognitionStreamFailure], Awaitable[None]]] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.max_reconnect_attempts = config.stt_max_reconnect_attempts
        self.reconnect_delay_s = config.stt_reconnect_delay_ms / 1000

        self._on_interim = on_interim
        self._on_final = on_final
        self._on_failure = on_failure

        self._ws = None
        self._is_connected = False
        self._closing = False
        self._failed = False
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0

        self._final_result = ""
        self._speech_final = False
        self._metrics = STTMetrics()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def start(self) -> bool:
        """Connect, falling back to the reconnect policy if the first attempt fails."""
        if await self.connect():
            return True
        return await self._reconnect()

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            logger.info("Connecting to Deepgram", model=self.config.deepgram_model)
            self._ws = await websockets.connect(
                build_listen_url(self.config),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._reconnect_attempts = 0
        logger.info("Deepgram STT connected")
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram for good."""
        self._closing = True
        self._is_connected = False

        for task in (self._reconnect_task, self._receive_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._receive_task = None

        if self._ws:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws or not audio_bytes:
            return

        try:
            self._metrics.total_audio_ms += len(audio_bytes) / 8
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self, ws: Any) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                    await self.handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            if ws is self._ws:
                self._is_connected = False

        code = getattr(ws, "close_code", None)
        if self._closing or ws is not self._ws:
            return
        if code == 1000:
            logger.info("Deepgram closed normally", code=code)
            return

        logger.warning("Deepgram connection dropped", code=code)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> bool:
        """Bounded exponential backoff; notifies the failure callback at the cap."""
        while self._reconnect_attempts < self.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = self.reconnect_delay_s * (2 ** (self._reconnect_attempts - 1))
            logger.warning(
                "Attempting Deepgram reconnect",
                attempt=self._reconnect_attempts,
                max_attempts=self.max_reconnect_attempts,
                delay_s=delay,
            )
            await asyncio.sleep(delay)
            if self._closing:
                return False

            self._metrics.reconnects += 1
            if await self.connect():
                return True

        failure = RecognitionStreamFailure(self._reconnect_attempts)
        self._failed = True
        logger.error("Deepgram reconnect attempts exhausted", attempts=self._reconnect_attempts)
        if self._on_failure:
            await self._on_failure(failure)
        return False

    async def handle_message(self, data: dict) -> None:
        """Map one Deepgram message onto interim/final callbacks."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm in ("utteranceend", "utterance_end"):
            if self._speech_final:
                logger.debug("Speech was already final when UtteranceEnd received")
                return
            text = self._final_result.strip()
            self._final_result = ""
            if text:
                logger.debug("UtteranceEnd before speech_final, emitting collected text")
                await self._emit_final(text)
            return

        if msg_type_norm == "results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            text = (alternatives[0].get("transcript") or "") if alternatives else ""

            if data.get("is_final") and text.strip():
                self._final_result += f" {text}"
                if data.get("speech_final"):
                    self._speech_final = True
                    final_text = self._final_result.strip()
                    self._final_result = ""
                    await self._emit_final(final_text)
                else:
                    self._speech_final = False
                return

            if text.strip():
                self._metrics.interim_transcripts += 1
                logger.debug("STT interim", text=text[:50])
                if self._on_interim:
                    await self._on_interim(text)
            return

        if msg_type_norm == "error":
            logger.error("Deepgram error", error=data.get("message", "Unknown"), details=data)
        elif msg_type_norm == "metadata":
            logger.debug("Deepgram metadata", request_id=data.get("request_id"))

    async def _emit_final(self, text: str) -> None:
        self._metrics.final_transcripts += 1
        logger.debug("STT final", text=text[:50], at=time.time())
        if self._on_final:
            await self._on_final(text)
