"""
OpenAI Realtime websocket connection.

Thin wrapper over a `websockets` client connection: JSON events in and out via
msgspec, sends to a closed socket are logged no-ops, and iteration ends quietly
when the socket closes (the caller decides whether that was expected).
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import msgspec
import structlog
import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from src.phone_orders.config import Config

logger = structlog.get_logger(__name__)

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder()


class RealtimeConnection:
    def __init__(self, ws: Any, *, label: str = ""):
        self._ws = ws
        self._label = label
        self.close_code: Optional[int] = None
        self.close_reason: str = ""

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def send(self, event: Dict[str, Any]) -> bool:
        event_type = event.get("type")
        if not self.is_open:
            logger.warning("Speech endpoint not open; dropping event", type=event_type, call=self._label)
            return False
        try:
            await self._ws.send(_encoder.encode(event).decode("utf-8"))
            return True
        except ConnectionClosed as e:
            logger.warning("Speech endpoint closed during send", type=event_type, code=e.rcvd.code if e.rcvd else None)
            return False
        except Exception as e:
            logger.error("Speech endpoint send failed", type=event_type, error=str(e))
            return False

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for raw in self._ws:
                try:
                    event = _decoder.decode(raw)
                except msgspec.DecodeError:
                    logger.warning("Undecodable speech endpoint event", size=len(raw))
                    continue
                if isinstance(event, dict):
                    yield event
        except ConnectionClosed as e:
            if e.rcvd is not None:
                self.close_code = e.rcvd.code
                self.close_reason = e.rcvd.reason
            logger.warning("Speech endpoint connection closed", code=self.close_code, reason=self.close_reason)
        else:
            close = getattr(self._ws, "close_code", None)
            self.close_code = close if isinstance(close, int) else self.close_code

    async def close(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug("Error closing speech endpoint", error=str(e))


Connector = Callable[[Config, str], Awaitable[RealtimeConnection]]


async def connect_realtime(config: Config, label: str = "") -> RealtimeConnection:
    api_key = (config.openai_api_key or "").strip()
    if not api_key or not config.openai_realtime_model:
        raise RuntimeError("OpenAI Realtime requires OPENAI_API_KEY and OPENAI_REALTIME_MODEL")

    headers = {
        "Authorization": f"Bearer {api_key}",
        "OpenAI-Beta": "realtime=v1",
    }
    ws = await websockets.connect(
        config.realtime_ws_url,
        additional_headers=headers,
        open_timeout=config.openai_connect_timeout_seconds,
    )
    logger.info("OpenAI Realtime connected", model=config.openai_realtime_model, call=label)
    return RealtimeConnection(ws, label=label)
