"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64

from src.intake.twilio_protocol import (
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioDTMFEvent,
    CallState,
    parse_twilio_message,
    create_media_message,
    create_mark_message,
    create_clear_message,
    TwilioProtocolHandler,
    RTT_WINDOW,
)


def _started_handler() -> TwilioProtocolHandler:
    handler = TwilioProtocolHandler()
    handler.handle_start(TwilioStartEvent(
        stream_sid="MZ123",
        call_sid="CA456",
        account_sid="AC789",
    ))
    return handler


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        message = json.dumps({"event": "connected", "protocol": "Call"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_start_event(self, twilio_start_message):
        event_type, event = parse_twilio_message(twilio_start_message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123456"
        assert event.call_sid == "CA789012"
        assert event.account_sid == "AC345678"

    def test_parse_start_event_stream_sid_inside_start(self):
        """Some payloads only carry streamSid inside the start block."""
        message = json.dumps({
            "event": "start",
            "start": {"streamSid": "MZ999", "callSid": "CA1"},
        })

        _, event = parse_twilio_message(message)

        assert event.stream_sid == "MZ999"
        assert event.call_sid == "CA1"

    def test_parse_media_event(self, twilio_media_message, sample_ulaw_audio):
        event_type, event = parse_twilio_message(twilio_media_message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.stream_sid == "MZ123456"
        assert event.track == "inbound"
        assert event.payload == sample_ulaw_audio

    def test_parse_media_event_bad_payload(self):
        message = json.dumps({"event": "media", "media": {"payload": "%%%not-base64"}})

        _, event = parse_twilio_message(message)

        assert event.payload == b""

    def test_parse_mark_event(self):
        message = json.dumps({
            "event": "mark",
            "streamSid": "MZ123",
            "mark": {"name": "transfer-abc"},
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.name == "transfer-abc"

    def test_parse_dtmf_event(self):
        message = json.dumps({
            "event": "dtmf",
            "streamSid": "MZ123",
            "dtmf": {"digit": "5"},
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.DTMF
        assert isinstance(event, TwilioDTMFEvent)
        assert event.digit == "5"

    def test_parse_stop_event(self, twilio_stop_message):
        event_type, _ = parse_twilio_message(twilio_stop_message)

        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_non_object(self):
        with pytest.raises(ValueError):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        message = json.dumps({"event": "unknown_event"})
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(message)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self):
        audio_data = b"\xff" * 160
        parsed = json.loads(create_media_message("MZ123", audio_data))

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_create_mark_message(self):
        parsed = json.loads(create_mark_message("MZ123", "mark_42"))

        assert parsed == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "mark_42"}}

    def test_create_clear_message(self):
        parsed = json.loads(create_clear_message("MZ123"))

        assert parsed == {"event": "clear", "streamSid": "MZ123"}


class TestCallState:
    """Tests for CallState."""

    def test_call_state_defaults(self):
        state = CallState()

        assert state.stream_sid == ""
        assert state.call_sid == ""
        assert state.stopped is False
        assert state.pending_marks == {}
        assert state.avg_mark_rtt_ms == 0.0

    def test_avg_mark_rtt(self):
        state = CallState(mark_rtt_samples=[10.0, 30.0])

        assert state.avg_mark_rtt_ms == 20.0

    def test_rtt_samples_are_windowed(self):
        handler = _started_handler()

        for i in range(RTT_WINDOW + 5):
            handler.create_mark(f"seg-{i}")
            handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name=f"seg-{i}"))

        assert len(handler.call_state.mark_rtt_samples) == RTT_WINDOW
        assert handler.audio_in_flight is False


class TestProtocolHandler:
    """Tests for TwilioProtocolHandler."""

    def test_handler_initial_state(self):
        handler = TwilioProtocolHandler()

        assert handler.stream_sid == ""
        assert handler.call_sid == ""
        assert handler.stopped is False
        assert handler.audio_in_flight is False

    def test_handler_handle_start(self):
        handler = _started_handler()

        assert handler.stream_sid == "MZ123"
        assert handler.call_sid == "CA456"
        assert handler.stopped is False

    def test_handler_handle_stop(self):
        handler = _started_handler()
        handler.handle_stop()

        assert handler.stopped is True

    def test_handler_create_audio_messages(self):
        handler = _started_handler()

        # 320 bytes = 2 chunks of 160
        messages = handler.create_audio_messages(b"\xff" * 320)

        assert len(messages) == 2
        for msg in messages:
            parsed = json.loads(msg)
            assert parsed["event"] == "media"
            assert parsed["streamSid"] == "MZ123"

    def test_handler_pads_last_frame(self):
        handler = _started_handler()

        messages = handler.create_audio_messages(b"\x01" * 200)
        last = base64.b64decode(json.loads(messages[-1])["media"]["payload"])

        assert len(messages) == 2
        assert len(last) == 160
        assert last.endswith(b"\xff" * 120)

    def test_marks_are_tracked_until_acknowledged(self):
        handler = _started_handler()

        mark1 = json.loads(handler.create_mark())
        handler.create_mark("transfer-1")

        assert mark1["mark"]["name"]
        assert handler.audio_in_flight is True
        assert set(handler.outstanding_marks) == {mark1["mark"]["name"], "transfer-1"}

        handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="transfer-1"))
        handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name=mark1["mark"]["name"]))

        assert handler.audio_in_flight is False
        assert len(handler.call_state.mark_rtt_samples) == 2

    def test_unknown_mark_ack_is_harmless(self):
        handler = _started_handler()

        rtt = handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="never-sent"))

        assert rtt == 0.0

    def test_handler_create_clear(self):
        parsed = json.loads(_started_handler().create_clear())

        assert parsed["event"] == "clear"
        assert parsed["streamSid"] == "MZ123"

    def test_handler_no_messages_when_inactive(self):
        handler = TwilioProtocolHandler()

        assert handler.create_audio_messages(b"\xff" * 160) == []
        assert handler.create_mark() == ""
        assert handler.create_clear() == ""
