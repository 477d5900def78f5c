"""
Telephony side of a call: Twilio Media Streams frames.

Inbound frames are JSON objects tagged by ``event``. We only act on ``start``,
``media`` and ``stop``; ``connected``, ``mark`` and ``dtmf`` are parsed so they
don't show up as protocol errors. Outbound we emit ``media`` (caller playback)
and ``clear`` (flush whatever Twilio still has buffered, used on barge-in).
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import msgspec
import structlog

logger = structlog.get_logger(__name__)

_decoder = msgspec.json.Decoder()
_encoder = msgspec.json.Encoder()

CALLER_PARAMETER = "callerPhone"


class TwilioEventType(str, Enum):
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


def _section(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = message.get(key)
    return value if isinstance(value, dict) else {}


@dataclass
class TwilioStartEvent:
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def caller_phone(self) -> Optional[str]:
        """Raw caller number, as forwarded by the TwiML ``<Parameter>``."""
        for key in (CALLER_PARAMETER, "From", "from"):
            value = self.custom_parameters.get(key)
            if value:
                return str(value)
        return None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = _section(message, "start")
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=list(start.get("tracks") or []),
            custom_parameters=_section(start, "customParameters"),
        )


@dataclass
class TwilioMediaEvent:
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # mu-law 8kHz

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = _section(message, "media")
        encoded = media.get("payload") or ""

        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Dropping undecodable media payload", size=len(encoded))
            payload = b""

        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=_section(message, "mark").get("name", ""),
        )


_PARSERS: Dict[TwilioEventType, Callable[[Dict[str, Any]], Any]] = {
    TwilioEventType.START: TwilioStartEvent.from_message,
    TwilioEventType.MEDIA: TwilioMediaEvent.from_message,
    TwilioEventType.MARK: TwilioMarkEvent.from_message,
}


def parse_twilio_message(raw_message) -> Tuple[TwilioEventType, Any]:
    """
    Decode one Media Streams frame.

    Returns ``(event_type, event)`` where ``event`` is a typed dataclass for
    start/media/mark and the raw dict for everything else.

    Raises:
        ValueError: invalid JSON, a non-object payload or an unknown event.
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        message = _decoder.decode(data)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid JSON: expected an object")

    name = message.get("event", "")
    try:
        event_type = TwilioEventType(name)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=name)
        raise ValueError(f"Unknown event type: {name}")

    parser = _PARSERS.get(event_type)
    return event_type, parser(message) if parser else message


def _dumps(message: Dict[str, Any]) -> str:
    return _encoder.encode(message).decode("utf-8")


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Wrap mu-law bytes for playback to the caller."""
    return _dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio_payload).decode("ascii")},
    })


def create_clear_message(stream_sid: str) -> str:
    return _dumps({"event": "clear", "streamSid": stream_sid})
