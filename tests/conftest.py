"""
Pytest configuration and fixtures.
"""

import json
import base64
import os
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "SERVER": "test.ngrok.io",
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "VOICE_MODEL": "aura-asteria-en",
        "TRANSFER_NUMBER": "+16156175000",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache and process-wide singletons
        from src.intake.config import get_config
        from src.intake.registry import reset_registry
        from src.intake.call_control import reset_call_control

        get_config.cache_clear()
        reset_registry()
        reset_call_control()
        yield
        reset_registry()
        reset_call_control()


@pytest.fixture
def fake_transport():
    from tests.fakes import FakeTransport

    return FakeTransport()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
