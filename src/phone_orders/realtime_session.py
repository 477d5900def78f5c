"""
OpenAI Realtime ordering pipeline for Twilio Media Streams.

Twilio (g711_ulaw 8kHz) <-> OpenAI Realtime (g711_ulaw 8kHz)

One pipeline per Twilio websocket. It owns the call's Session (via the shared
registry), relays audio both ways, turns function calls into order mutations,
and keeps the call alive through rate limits, provider errors and dropped
speech endpoint connections.

Interface is compatible with `server/app.py`:
- `start()`
- `stop()`
- `handle_message(raw_message)`
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import msgspec
import structlog

from src.phone_orders.audio_relay import AudioRelay
from src.phone_orders.config import Config, get_config
from src.phone_orders.finalize import (
    TRIGGER_CALL_END,
    TRIGGER_CONFIRM,
    FinalizationGateway,
    completion_nudge,
    looks_like_completion,
    missing_fields,
)
from src.phone_orders.guard import (
    LOOP_BREAK_INSTRUCTION,
    RECOVERY_INSTRUCTION,
    FailureKind,
    LoopBreaker,
    ReconnectPolicy,
    WordOverlapDetector,
    classify_failure,
    retry_delay_from,
)
from src.phone_orders.menu import MenuProvider
from src.phone_orders.order_builder import OrderBuilder, tool_definitions
from src.phone_orders.prompt import greeting_text, resolve_instructions
from src.phone_orders.realtime_client import Connector, RealtimeConnection, connect_realtime
from src.phone_orders.session import UNKNOWN_PHONE, Session, SessionRegistry
from src.phone_orders.turn_taking import TurnTakingController
from src.phone_orders.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    create_clear_message,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

_encoder = msgspec.json.Encoder()

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class CallStats:
    tool_calls: int = 0
    tool_rejections: int = 0
    responses_cancelled: int = 0
    audio_suppressed: int = 0
    inbound_dropped: int = 0
    loop_breaks: int = 0
    reconnects: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError):
        return b""


class RealtimeOrderPipeline:
    """
    Per-call orchestrator between Twilio Media Streams and OpenAI Realtime.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        registry: SessionRegistry,
        gateway: FinalizationGateway,
        menu_provider: Optional[MenuProvider] = None,
        config: Optional[Config] = None,
        connector: Connector = connect_realtime,
        loop_breaker: Optional[LoopBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self.registry = registry
        self.gateway = gateway
        self.menu_provider = menu_provider or MenuProvider(
            self.config.menu_path, ttl_seconds=self.config.menu_cache_seconds
        )
        self._connector = connector
        self._clock = clock
        self.loop_breaker = loop_breaker or LoopBreaker(
            WordOverlapDetector(self.config.duplicate_threshold),
            window_seconds=self.config.duplicate_window_s,
        )
        self.reconnect_policy = ReconnectPolicy(
            max_attempts=self.config.reconnect_max_attempts,
            base_ms=self.config.reconnect_base_ms,
            max_ms=self.config.reconnect_max_ms,
        )

        self.relay = AudioRelay(send_message, max_queued_chunks=self.config.audio_queue_max_chunks)
        self.session: Optional[Session] = None
        self.controller: Optional[TurnTakingController] = None
        self.builder: Optional[OrderBuilder] = None
        self.stats = CallStats()

        self._is_running = False
        self._speech: Optional[RealtimeConnection] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._resumed = False
        self._tool_names: Dict[str, str] = {}

        self._handlers: Dict[str, EventHandler] = {
            "session.created": self._on_session_created,
            "session.updated": self._on_session_updated,
            "input_audio_buffer.speech_started": self._on_speech_started,
            "input_audio_buffer.speech_stopped": self._on_speech_stopped,
            "input_audio_buffer.committed": self._on_speech_committed,
            "response.created": self._on_response_created,
            "response.done": self._on_response_done,
            "response.audio.delta": self._on_audio_delta,
            "response.output_audio.delta": self._on_audio_delta,
            "response.audio_transcript.done": self._on_assistant_transcript,
            "response.output_audio_transcript.done": self._on_assistant_transcript,
            "response.output_item.added": self._on_output_item_added,
            "response.output_item.done": self._on_output_item_done,
            "response.function_call_arguments.done": self._on_function_call_arguments_done,
            "conversation.item.input_audio_transcription.completed": self._on_caller_transcript,
            "conversation.item.input_audio_transcription.failed": self._on_transcription_failed,
            "error": self._on_error,
        }

    @property
    def stream_sid(self) -> str:
        return self.relay.stream_sid

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        self._is_running = True
        logger.info("Realtime ordering pipeline started")

    async def stop(self) -> None:
        if not self._is_running:
            return
        self._is_running = False

        await self._end_session(TRIGGER_CALL_END)
        await self._close_speech()

        logger.info("Realtime ordering pipeline stopped", **self.stats.to_dict())

    async def handle_message(self, raw_message: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if self.session is not None:
            self.session.touch()

        if event_type == TwilioEventType.START:
            await self._handle_start(event)
            return

        if event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)
            return

        if event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", stream_sid=self.stream_sid)
            await self.stop()
            return

        # connected / mark / dtmf need no action

    # Twilio side

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self.session is not None:
            # a reused transport starts a brand new call
            await self._end_session(TRIGGER_CALL_END)
            await self._close_speech()

        session = self.registry.create(event.stream_sid, caller_phone=event.caller_phone, call_id=event.call_sid)
        self.session = session
        self.stats = CallStats()
        self._reconnect_attempts = 0
        self._resumed = False
        self._tool_names.clear()

        self.relay.reset()
        self.relay.stream_sid = event.stream_sid

        self.controller = TurnTakingController(
            session,
            self._send_speech,
            settle_window_ms=self.config.settle_window_ms,
            greeting_grace_ms=self.config.greeting_grace_ms,
            debounce_ms=self.config.response_debounce_ms,
            confirmation_delay_ms=self.config.confirmation_delay_ms,
            clear_caller_audio=self._clear_caller_audio,
            clock=self._clock,
        )
        self.builder = OrderBuilder(session, self.menu_provider.snapshot(), on_rejection=self._count_rejection)

        logger.info(
            "Call started (realtime)",
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            caller_known=session.caller_phone != UNKNOWN_PHONE,
        )

        if not await self._connect():
            self._schedule_reconnect()

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self._is_running or self.session is None or not event.payload:
            return
        await self.relay.push_inbound(event.payload)

    async def _clear_caller_audio(self) -> None:
        if self.stream_sid:
            await self._send_message(create_clear_message(self.stream_sid))

    def _count_rejection(self, reason: str) -> None:
        self.stats.tool_rejections += 1

    # Speech endpoint connection

    async def _connect(self) -> bool:
        session = self.session
        if session is None:
            return False

        try:
            connection = await self._connector(self.config, session.call_id or session.id)
        except Exception as e:
            logger.error("Speech endpoint connect failed", session_id=session.id, error=str(e))
            return False

        if not self._is_running or self.session is not session:
            await connection.close()
            return False

        self._speech = connection
        self.relay.attach(connection)
        await self._send_session_update()
        self._recv_task = asyncio.create_task(self._receive_loop(connection), name=f"{session.id}:speech-recv")
        return True

    def _session_config(self) -> Dict[str, Any]:
        config = self.config
        menu = self.builder.menu if self.builder else self.menu_provider.snapshot()
        instructions = resolve_instructions(config, menu)
        if self._resumed and self.session is not None:
            instructions += (
                "\n\nThe call was briefly interrupted and has resumed. Do not greet the caller again. "
                f"Order so far: {self.session.order.summary()}. Continue where you left off."
            )

        session: Dict[str, Any] = {
            "modalities": ["audio", "text"],
            "instructions": instructions,
            "voice": config.openai_realtime_voice,
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
            "turn_detection": {
                "type": "server_vad",
                "threshold": min(1.0, max(0.0, config.openai_realtime_vad_threshold)),
                "prefix_padding_ms": config.openai_realtime_prefix_padding_ms,
                "silence_duration_ms": config.openai_realtime_turn_silence_ms,
            },
            "temperature": config.openai_realtime_temperature,
            "max_response_output_tokens": config.openai_realtime_max_output_tokens,
            "tools": tool_definitions(),
            "tool_choice": "auto",
        }
        if config.openai_realtime_transcription_model:
            session["input_audio_transcription"] = {"model": config.openai_realtime_transcription_model}
        return session

    async def _send_session_update(self) -> None:
        await self._send_speech({"type": "session.update", "session": self._session_config()})
        logger.info(
            "Speech session configured",
            session_id=self.session.id if self.session else None,
            model=self.config.openai_realtime_model,
            voice=self.config.openai_realtime_voice,
            vad_threshold=self.config.openai_realtime_vad_threshold,
            turn_silence_ms=self.config.openai_realtime_turn_silence_ms,
            resumed=self._resumed,
        )

    async def _send_speech(self, event: Dict[str, Any]) -> bool:
        if self._speech is None:
            logger.debug("No speech endpoint connection; dropping event", type=event.get("type"))
            return False
        return await self._speech.send(event)

    async def _receive_loop(self, connection: RealtimeConnection) -> None:
        async for event in connection.events():
            if not self._is_running:
                break
            await self._dispatch(event)

        if self._is_running and connection is self._speech:
            await self._on_speech_closed(connection)

    async def _dispatch(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        if self.session is not None:
            self.session.touch()
        handler = self._handlers.get(event_type) if isinstance(event_type, str) else None
        if handler is None:
            return
        try:
            await handler(event)
        except Exception:
            # Don't crash the call on a single bad event
            logger.exception("Speech event handler failed", type=event_type)

    async def _on_speech_closed(self, connection: RealtimeConnection) -> None:
        logger.warning(
            "Speech endpoint closed unexpectedly",
            session_id=self.session.id if self.session else None,
            code=connection.close_code,
            reason=connection.close_reason,
        )
        self._speech = None
        self.relay.mark_not_ready()
        if self.controller is not None:
            self.controller.reset_response_state()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        session = self.session
        if session is None or not self._is_running:
            return

        if not self.reconnect_policy.should_retry(self._reconnect_attempts):
            session.relay_only = True
            logger.error(
                "Speech endpoint unavailable; call continues without assistant",
                session_id=session.id,
                attempts=self._reconnect_attempts,
            )
            return

        delay = self.reconnect_policy.delay(self._reconnect_attempts)
        self._reconnect_attempts += 1
        logger.info("Scheduling speech endpoint reconnect", session_id=session.id, attempt=self._reconnect_attempts, delay_s=delay)
        session.schedule("reconnect", delay, self._reconnect)

    async def _reconnect(self) -> None:
        if not self._is_running or self.session is None:
            return
        self.stats.reconnects += 1
        self._resumed = self.session.greeting_triggered
        if not await self._connect():
            self._schedule_reconnect()

    async def _close_speech(self) -> None:
        connection, self._speech = self._speech, None
        task, self._recv_task = self._recv_task, None
        if connection is not None:
            await connection.close()
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _end_session(self, trigger: str) -> None:
        session = self.session
        if session is None:
            return
        if self.controller is not None:
            self.stats.responses_cancelled = self.controller.responses_cancelled
        self.stats.inbound_dropped = self.relay.chunks_dropped

        self.gateway.submit(session, trigger)
        self.registry.delete(session.id)
        self.session = None
        logger.info(
            "Call ended",
            session_id=session.id,
            call_id=session.call_id,
            items=len(session.order.items),
            logged=session.logged,
        )

    # Speech endpoint events

    async def _on_session_created(self, event: Dict[str, Any]) -> None:
        logger.debug("Speech session created", session_id=self.session.id if self.session else None)

    async def _on_session_updated(self, event: Dict[str, Any]) -> None:
        session = self.session
        if session is None or self.controller is None:
            return

        self._reconnect_attempts = 0
        flushed = await self.relay.mark_ready()
        logger.info("Speech endpoint ready", session_id=session.id, flushed_chunks=flushed)

        if not session.greeting_triggered:
            await self.controller.trigger_greeting(greeting_text(self.config))

    async def _on_speech_started(self, event: Dict[str, Any]) -> None:
        if self.controller is not None:
            await self.controller.on_speech_started()

    async def _on_speech_stopped(self, event: Dict[str, Any]) -> None:
        # committed is the authoritative end of the caller's turn
        logger.debug("Caller paused", session_id=self.session.id if self.session else None)

    async def _on_speech_committed(self, event: Dict[str, Any]) -> None:
        if self.controller is not None:
            self.controller.on_speech_committed()

    async def _on_response_created(self, event: Dict[str, Any]) -> None:
        if self.controller is None:
            return
        response = event.get("response") or {}
        response_id = response.get("id") or event.get("response_id")
        await self.controller.on_response_created(response_id)

    async def _on_response_done(self, event: Dict[str, Any]) -> None:
        session = self.session
        if session is None or self.controller is None:
            return

        response = event.get("response") or {}
        response_id = response.get("id")
        status = response.get("status")
        self.controller.on_response_finished(response_id)

        if status == "completed":
            session.rate_limit_retries = 0
            session.generic_recovery_attempted = False
            session.pending_critical_confirmation = False
        elif status == "failed":
            await self._handle_failure(response.get("status_details") or {}, response_id=response_id)

    async def _on_audio_delta(self, event: Dict[str, Any]) -> None:
        if self.controller is None:
            return
        if self.controller.is_suppressed(event.get("response_id")):
            self.stats.audio_suppressed += 1
            return
        delta = event.get("delta") or event.get("audio")
        if isinstance(delta, str) and delta:
            await self.relay.forward_outbound(_b64decode(delta))

    async def _on_assistant_transcript(self, event: Dict[str, Any]) -> None:
        session = self.session
        if session is None or self.controller is None:
            return
        if self.controller.is_suppressed(event.get("response_id")):
            return

        transcript = str(event.get("transcript") or "")
        if self.config.log_transcripts and transcript:
            logger.info("Assistant said", session_id=session.id, text=transcript[:200])

        if self.loop_breaker.observe(session, transcript, self._clock()):
            self.stats.loop_breaks += 1
            await self.controller.send_system_message(
                f"{LOOP_BREAK_INSTRUCTION} Order so far: {session.order.summary()}."
            )

    async def _on_output_item_added(self, event: Dict[str, Any]) -> None:
        item = event.get("item") or {}
        if isinstance(item, dict) and item.get("type") == "function_call":
            call_id = item.get("call_id")
            name = item.get("name")
            if isinstance(call_id, str) and call_id and isinstance(name, str) and name:
                self._tool_names[call_id] = name

    async def _on_output_item_done(self, event: Dict[str, Any]) -> None:
        item = event.get("item") or {}
        if not isinstance(item, dict) or item.get("type") != "function_call":
            return
        call_id = item.get("call_id")
        await self._handle_tool_call(
            call_id,
            item.get("name") or self._tool_names.get(call_id or ""),
            item.get("arguments"),
        )

    async def _on_function_call_arguments_done(self, event: Dict[str, Any]) -> None:
        call_id = event.get("call_id")
        await self._handle_tool_call(
            call_id,
            event.get("name") or self._tool_names.get(call_id or ""),
            event.get("arguments"),
        )

    async def _on_caller_transcript(self, event: Dict[str, Any]) -> None:
        session = self.session
        if session is None or self.controller is None:
            return

        transcript = str(event.get("transcript") or "").strip()
        if not transcript:
            return
        if self.config.log_transcripts:
            logger.info("Caller said", session_id=session.id, text=transcript[:200])

        order = session.order
        if order.logged or not order.items or not looks_like_completion(transcript):
            return

        order.confirmed = True
        missing = missing_fields(order)
        logger.info("Caller finished ordering", session_id=session.id, missing=missing)
        await self.controller.send_system_message(completion_nudge(missing))

    async def _on_transcription_failed(self, event: Dict[str, Any]) -> None:
        error = event.get("error") or {}
        logger.warning(
            "Caller transcription failed",
            session_id=self.session.id if self.session else None,
            error=error.get("message") if isinstance(error, dict) else str(error),
        )

    async def _on_error(self, event: Dict[str, Any]) -> None:
        error = event.get("error") or {}
        code = error.get("code") if isinstance(error, dict) else None

        if code == "response_cancel_not_active":
            logger.debug("Cancel had no active response")
            if self.controller is not None:
                self.controller.reset_response_state()
            return

        kind = classify_failure(error)
        logger.error("OpenAI Realtime error", kind=kind.value, details=error)
        if kind != FailureKind.GENERIC:
            await self._handle_failure(error)

    # Tool calls

    async def _handle_tool_call(self, call_id: Any, name: Optional[str], arguments: Any) -> None:
        session = self.session
        if session is None or self.builder is None or self.controller is None:
            return
        if not isinstance(call_id, str) or not call_id:
            return
        if call_id in session.handled_call_ids:
            return

        session.handled_call_ids.append(call_id)
        self._tool_names.pop(call_id, None)
        self.stats.tool_calls += 1

        result = self.builder.execute(name or "", arguments)
        await self._send_speech(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "function_call_output",
                    "call_id": call_id,
                    "output": _encoder.encode(result.to_output()).decode("utf-8"),
                },
            }
        )

        if result.ok and result.critical:
            session.pending_critical_confirmation = True
        # the model needs a turn to speak after every tool output
        self.controller.schedule_confirmation()

        if result.ok and name == "confirm_order":
            session.schedule("finalize", self.config.finalize_delay_ms / 1000.0, self._finalize_confirmed)

    async def _finalize_confirmed(self) -> None:
        if self.session is not None:
            self.gateway.submit(self.session, TRIGGER_CONFIRM)

    # Failures

    async def _handle_failure(self, details: Any, *, response_id: Optional[str] = None) -> None:
        session = self.session
        if session is None or self.controller is None:
            return

        self.stats.failures += 1
        kind = classify_failure(details)
        logger.warning("Response failed", session_id=session.id, response_id=response_id, kind=kind.value)
        debounce = self.config.response_debounce_ms / 1000.0

        if kind == FailureKind.QUOTA:
            session.responses_disabled = True
            logger.error(
                "OpenAI quota exhausted; assistant responses disabled for this call",
                session_id=session.id,
            )
            return

        if kind == FailureKind.RATE_LIMIT:
            if session.rate_limit_retries >= self.config.rate_limit_max_retries:
                logger.error("Rate limit retries exhausted", session_id=session.id, retries=session.rate_limit_retries)
                return
            session.rate_limit_retries += 1
            delay = retry_delay_from(details)
            if delay is None:
                delay = self.config.rate_limit_backoff_ms / 1000.0
            force = session.pending_critical_confirmation
            controller = self.controller

            async def _retry() -> None:
                await controller.request_response("rate_limit_retry", force=force)

            logger.info(
                "Retrying after rate limit",
                session_id=session.id,
                attempt=session.rate_limit_retries,
                delay_s=max(delay, debounce),
                force=force,
            )
            session.schedule("rate_limit_retry", max(delay, debounce), _retry)
            return

        if session.generic_recovery_attempted:
            logger.error("Response failed again after recovery; waiting for caller", session_id=session.id)
            return
        session.generic_recovery_attempted = True

        await self.controller.send_system_message(
            f"{RECOVERY_INSTRUCTION} Order so far: {session.order.summary()}."
        )
        controller = self.controller

        async def _recover() -> None:
            await controller.request_response("recovery")

        session.schedule("recovery", max(self.config.recovery_delay_ms / 1000.0, debounce), _recover)
