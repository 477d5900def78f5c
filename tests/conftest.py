"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_REALTIME_MODEL": "gpt-realtime-mini",
        "MENU_PATH": "",
        "SHEETS_WEBHOOK_URL": "",
        "POS_WEBHOOK_URL": "",
        "ORDER_WEBHOOK_URL": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.phone_orders.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRealtimeConnection:
    """
    In-memory stand-in for a speech endpoint socket.

    Sent events are recorded; events pushed with `feed()` come out of `events()`
    until `finish()` is called.
    """

    def __init__(self, *, open_: bool = True, accept_sends: bool = True):
        self.sent: List[Dict[str, Any]] = []
        self.open = open_
        self.accept_sends = accept_sends
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self._queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self.open and not self.closed

    async def send(self, event: Dict[str, Any]) -> bool:
        if not self.is_open or not self.accept_sends:
            return False
        self.sent.append(event)
        return True

    def sent_types(self) -> List[str]:
        return [event.get("type") for event in self.sent]

    def feed(self, event: Dict[str, Any]) -> None:
        self._queue.put_nowait(event)

    def finish(self, code: int = 1006) -> None:
        self.close_code = code
        self.open = False
        self._queue.put_nowait(None)

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_connection():
    """Factory for fake speech endpoint connections."""
    return FakeRealtimeConnection


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
            "customParameters": {"callerPhone": "+13155551234"},
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
