"""
Bidirectional audio relay between Twilio and the speech endpoint.

Inbound caller audio is buffered in a bounded FIFO until the speech endpoint
signals readiness, flushed as one concatenated append, then passed through.
Outbound synthesized audio is forwarded to the caller as soon as it arrives.
"""

from __future__ import annotations

import base64
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

import structlog

from src.phone_orders.realtime_client import RealtimeConnection
from src.phone_orders.twilio_protocol import create_media_message

logger = structlog.get_logger(__name__)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


class AudioRelay:
    def __init__(
        self,
        send_to_caller: Callable[[str], Awaitable[None]],
        *,
        stream_sid: str = "",
        max_queued_chunks: int = 100,
    ):
        self._send_to_caller = send_to_caller
        self.stream_sid = stream_sid
        self._queue: Deque[bytes] = deque(maxlen=max(1, max_queued_chunks))
        self._speech: Optional[RealtimeConnection] = None
        self._ready = False

        self.chunks_forwarded = 0
        self.chunks_dropped = 0
        self.outbound_frames = 0

    @property
    def ready(self) -> bool:
        return self._ready and self._speech is not None and self._speech.is_open

    @property
    def queued_chunks(self) -> int:
        return len(self._queue)

    def attach(self, connection: RealtimeConnection) -> None:
        """Use a (new) speech endpoint socket. Audio queues until `mark_ready`."""
        self._speech = connection
        self._ready = False

    def mark_not_ready(self) -> None:
        self._ready = False

    async def mark_ready(self) -> int:
        """Flush queued audio in order as one send and switch to pass-through."""
        if self._speech is None:
            logger.warning("Relay marked ready without a speech connection", stream_sid=self.stream_sid)
            return 0

        self._ready = True
        if not self._queue:
            return 0

        count = len(self._queue)
        payload = b"".join(self._queue)
        self._queue.clear()

        sent = await self._speech.send({"type": "input_audio_buffer.append", "audio": _b64encode(payload)})
        if sent:
            self.chunks_forwarded += count
            logger.info("Flushed queued caller audio", stream_sid=self.stream_sid, chunks=count, bytes=len(payload))
        else:
            self.chunks_dropped += count
            logger.error("Failed to flush queued caller audio", stream_sid=self.stream_sid, chunks=count)
        return count

    async def push_inbound(self, chunk: bytes) -> bool:
        if not chunk:
            return False

        if not self.ready:
            if len(self._queue) == self._queue.maxlen:
                # deque drops the oldest chunk on append
                self.chunks_dropped += 1
            self._queue.append(chunk)
            return False

        sent = await self._speech.send({"type": "input_audio_buffer.append", "audio": _b64encode(chunk)})
        if sent:
            self.chunks_forwarded += 1
        else:
            self.chunks_dropped += 1
        return sent

    async def forward_outbound(self, audio: bytes) -> bool:
        if not audio:
            return False
        if not self.stream_sid:
            logger.warning("No stream sid; dropping outbound audio", bytes=len(audio))
            return False
        try:
            await self._send_to_caller(create_media_message(self.stream_sid, audio))
        except Exception as e:
            logger.warning("Failed to send audio to caller", stream_sid=self.stream_sid, error=str(e))
            return False
        self.outbound_frames += 1
        return True

    def reset(self) -> None:
        self._queue.clear()
        self._speech = None
        self._ready = False
