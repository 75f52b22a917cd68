"""
Deepgram Aura text-to-speech.

One POST per reply segment; the response body is raw 8kHz mu-law (no
container), ready to frame for Twilio. Synthesis for the segments of a reply
runs concurrently and completes in any order; the sequencer puts the audio
back in order.
"""

from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.intake.config import get_config
from src.intake.errors import SynthesisError, SynthesisFailure

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class DeepgramTTS:
    """
    Per-call Deepgram speak client.

    Raises:
        SynthesisError: provider returned non-200 or could not be reached
        SynthesisFailure: provider returned an empty body
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None
        self._requests = 0
        self._failures = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        return self._client

    async def synthesize(
        self,
        text: str,
        *,
        index: Optional[int] = None,
        label: Optional[str] = None,
    ) -> bytes:
        """Synthesize `text` into Twilio-ready mu-law bytes."""
        if not text or not text.strip():
            raise SynthesisFailure("No text provided to TTS", index=index, label=label)

        params = {
            "model": self.config.voice_model,
            "encoding": "mulaw",
            "sample_rate": "8000",
            "container": "none",
        }
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }

        self._requests += 1
        started = time.time()
        try:
            response = await self._get_client().post(
                DEEPGRAM_SPEAK_URL,
                params=params,
                headers=headers,
                json={"text": text},
            )
        except httpx.HTTPError as e:
            self._failures += 1
            logger.error("Deepgram TTS request failed", index=index, label=label, error=str(e))
            raise SynthesisError(f"TTS service error: {e}", index=index, label=label) from e

        if response.status_code != 200:
            self._failures += 1
            logger.error(
                "Deepgram TTS error",
                index=index,
                label=label,
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise SynthesisError(
                f"TTS API error: {response.status_code}",
                index=index,
                label=label,
            )

        audio = response.content
        if not audio:
            self._failures += 1
            logger.error("TTS returned empty audio data", index=index, label=label)
            raise SynthesisFailure("TTS returned empty audio data", index=index, label=label)

        logger.info(
            "TTS generated audio",
            index=index,
            label=label,
            bytes=len(audio),
            elapsed_ms=round((time.time() - started) * 1000, 1),
        )
        return audio

    @property
    def stats(self) -> dict:
        return {"requests": self._requests, "failures": self._failures}

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
