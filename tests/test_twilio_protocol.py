"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64

from src.phone_orders.twilio_protocol import (
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    parse_twilio_message,
    create_media_message,
    create_clear_message,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        """Test parsing connected event."""
        message = json.dumps({"event": "connected", "protocol": "Call"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_start_event(self):
        """Test parsing start event."""
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ123",
            "start": {
                "callSid": "CA456",
                "accountSid": "AC789",
                "tracks": ["inbound"],
                "customParameters": {"callerPhone": "+13155551234"},
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123"
        assert event.call_sid == "CA456"
        assert event.account_sid == "AC789"
        assert event.tracks == ["inbound"]
        assert event.caller_phone == "+13155551234"

    def test_start_event_without_caller_parameter(self):
        """Blocked caller ids arrive as an empty parameter."""
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ123",
            "start": {"callSid": "CA456", "customParameters": {"callerPhone": ""}},
        })

        _, event = parse_twilio_message(message)

        assert event.caller_phone is None

    def test_stream_sid_falls_back_to_start_block(self):
        message = json.dumps({
            "event": "start",
            "start": {"streamSid": "MZ999", "callSid": "CA456"},
        })

        _, event = parse_twilio_message(message)

        assert event.stream_sid == "MZ999"

    def test_parse_media_event(self):
        """Test parsing media event."""
        audio_data = b"\xff" * 160
        payload_b64 = base64.b64encode(audio_data).decode()

        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {
                "track": "inbound",
                "chunk": 1,
                "timestamp": "12345",
                "payload": payload_b64,
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.stream_sid == "MZ123"
        assert event.track == "inbound"
        assert event.chunk == 1
        assert event.payload == audio_data

    def test_parse_media_event_with_bad_payload(self):
        """Undecodable audio becomes an empty payload instead of an error."""
        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {"payload": "not base64!!", "chunk": "x"},
        })

        _, event = parse_twilio_message(message)

        assert event.payload == b""
        assert event.chunk == 0

    def test_parse_mark_event(self):
        """Test parsing mark event."""
        message = json.dumps({
            "event": "mark",
            "streamSid": "MZ123",
            "mark": {
                "name": "mark_1",
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.name == "mark_1"

    def test_parse_stop_event(self):
        """Test parsing stop event."""
        message = json.dumps({"event": "stop", "streamSid": "MZ123"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        """Test parsing invalid JSON raises error."""
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_non_object_json(self):
        with pytest.raises(ValueError, match="expected an object"):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        """Test parsing unknown event type raises error."""
        message = json.dumps({"event": "unknown_event"})
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(message)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self):
        """Test creating media message."""
        audio_data = b"\xff" * 160
        message = create_media_message("MZ123", audio_data)

        parsed = json.loads(message)

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_create_clear_message(self):
        """Test creating clear message."""
        message = create_clear_message("MZ123")

        parsed = json.loads(message)

        assert parsed["event"] == "clear"
        assert parsed["streamSid"] == "MZ123"
