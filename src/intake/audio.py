"""
Audio framing utilities for Twilio Media Streams.

Everything in this project stays in mu-law 8kHz end to end:
- Twilio sends mu-law 8kHz, forwarded to Deepgram STT as-is
- Deepgram TTS is asked for mu-law 8kHz with no container
- Outbound audio is only framed into 20ms chunks, never resampled
"""

import base64
from typing import Generator, List

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"


def decode_media_payload(payload_b64: str) -> bytes:
    """
    Decode a base64 media payload from Twilio.

    Returns empty bytes for a malformed payload instead of raising, since a
    single bad frame should never take down the call.
    """
    if not payload_b64:
        return b""
    try:
        return base64.b64decode(payload_b64)
    except (ValueError, TypeError):
        return b""


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk if needed
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk


def chunk_audio_list(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size))


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """
    Calculate the duration of mu-law audio in milliseconds.

    Args:
        audio_bytes: Mu-law audio bytes (1 byte per sample)
        sample_rate: Sample rate in Hz

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    return len(audio_bytes) / sample_rate * 1000
