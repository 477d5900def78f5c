"""
Turn-taking and response lifecycle control.

`transition` is the pure state machine over `SpeakingState`; the controller
applies it to a Session and owns every response.create / response.cancel the
call issues, so debounce and settle-window rules live in one place.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from src.phone_orders.session import Session, SpeakingState

logger = structlog.get_logger(__name__)

SendEvent = Callable[[Dict[str, Any]], Awaitable[bool]]

RESPONSE_MODALITIES = ["audio", "text"]


class TurnEvent(str, Enum):
    SPEECH_STARTED = "speech_started"
    SPEECH_COMMITTED = "speech_committed"
    RESPONSE_STARTED = "response_started"
    RESPONSE_FINISHED = "response_finished"


class TurnAction(str, Enum):
    NONE = "none"
    CANCEL_RESPONSE = "cancel_response"


def transition(
    state: SpeakingState,
    event: TurnEvent,
    *,
    in_settle_window: bool = False,
    allow_over_caller: bool = False,
) -> Tuple[SpeakingState, TurnAction]:
    """
    Compute (next_state, action) for one turn-taking event.

    `in_settle_window` is true when a response starts after the greeting grace
    period but before the settle window ends. `allow_over_caller` lets a forced
    retry start while the caller is talking.
    """
    if event == TurnEvent.SPEECH_STARTED:
        if state == SpeakingState.RESPONSE_IN_FLIGHT:
            return SpeakingState.CALLER_SPEAKING, TurnAction.CANCEL_RESPONSE
        return SpeakingState.CALLER_SPEAKING, TurnAction.NONE

    if event == TurnEvent.SPEECH_COMMITTED:
        if state == SpeakingState.CALLER_SPEAKING:
            return SpeakingState.IDLE, TurnAction.NONE
        return state, TurnAction.NONE

    if event == TurnEvent.RESPONSE_STARTED:
        if in_settle_window:
            return state, TurnAction.CANCEL_RESPONSE
        if state == SpeakingState.CALLER_SPEAKING and not allow_over_caller:
            return state, TurnAction.CANCEL_RESPONSE
        return SpeakingState.RESPONSE_IN_FLIGHT, TurnAction.NONE

    if event == TurnEvent.RESPONSE_FINISHED:
        if state == SpeakingState.RESPONSE_IN_FLIGHT:
            return SpeakingState.IDLE, TurnAction.NONE
        return state, TurnAction.NONE

    return state, TurnAction.NONE


class TurnTakingController:
    """Applies turn-taking transitions to one Session and issues response control events."""

    def __init__(
        self,
        session: Session,
        send: SendEvent,
        *,
        settle_window_ms: int = 5000,
        greeting_grace_ms: int = 2000,
        debounce_ms: int = 800,
        confirmation_delay_ms: int = 150,
        clear_caller_audio: Optional[Callable[[], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self._send = send
        self._settle_window = settle_window_ms / 1000.0
        self._grace = greeting_grace_ms / 1000.0
        self._debounce = debounce_ms / 1000.0
        self._confirmation_delay = confirmation_delay_ms / 1000.0
        self._clear_caller_audio = clear_caller_audio
        self._clock = clock
        self._forced_pending = False
        self._confirmation_wanted = False

        self.responses_requested = 0
        self.responses_skipped = 0
        self.responses_cancelled = 0

    # Settle window

    def mark_greeting(self, now: Optional[float] = None) -> None:
        self.session.greeting_anchor = self._clock() if now is None else now

    def _since_greeting(self, now: float) -> Optional[float]:
        if self.session.greeting_anchor is None:
            return None
        return now - self.session.greeting_anchor

    def in_settle_window(self, now: Optional[float] = None) -> bool:
        """True between the greeting grace period and the end of the settle window."""
        elapsed = self._since_greeting(self._clock() if now is None else now)
        return elapsed is not None and self._grace <= elapsed < self._settle_window

    def settling(self, now: Optional[float] = None) -> bool:
        elapsed = self._since_greeting(self._clock() if now is None else now)
        return elapsed is not None and elapsed < self._settle_window

    # Speech endpoint signals

    def _apply(self, event: TurnEvent, **kwargs: Any) -> TurnAction:
        previous = self.session.speaking_state
        state, action = transition(previous, event, **kwargs)
        self.session.speaking_state = state
        if state != previous:
            logger.debug(
                "Turn state changed",
                session_id=self.session.id,
                event=event.value,
                previous=previous.value,
                state=state.value,
            )
        return action

    async def on_speech_started(self) -> None:
        active = self.session.active_response_id
        action = self._apply(TurnEvent.SPEECH_STARTED)
        if action == TurnAction.CANCEL_RESPONSE:
            if active:
                self.session.suppressed_response_ids.append(active)
            await self.cancel_response("caller_barge_in", clear_caller=True)

    def on_speech_committed(self) -> None:
        self._apply(TurnEvent.SPEECH_COMMITTED)

    async def on_response_created(self, response_id: Optional[str]) -> bool:
        """
        Decide whether a response that just started may continue.

        Returns True when it was cancelled; its audio is suppressed from then on.
        """
        now = self._clock()
        allow = self._forced_pending
        self._forced_pending = False
        caller_speaking = self.session.caller_speaking

        action = self._apply(
            TurnEvent.RESPONSE_STARTED,
            in_settle_window=self.in_settle_window(now),
            allow_over_caller=allow,
        )
        if action == TurnAction.NONE:
            self.session.active_response_id = response_id
            # any response that gets to speak serves as the confirmation
            self._confirmation_wanted = False
            return False

        reason = "caller_speaking" if caller_speaking and not allow else "settle_window"
        if response_id:
            self.session.suppressed_response_ids.append(response_id)
        logger.info(
            "Cancelling response",
            session_id=self.session.id,
            response_id=response_id,
            reason=reason,
            since_greeting_ms=int((self._since_greeting(now) or 0.0) * 1000),
        )
        await self.cancel_response(reason)
        return True

    def on_response_finished(self, response_id: Optional[str] = None) -> None:
        self._apply(TurnEvent.RESPONSE_FINISHED)
        if response_id is None or response_id == self.session.active_response_id:
            self.session.active_response_id = None
        if self._confirmation_wanted and self.session.pending_task("confirm_response") is None:
            self.session.schedule("confirm_response", self._confirmation_delay, self._confirm)

    def reset_response_state(self) -> None:
        """Leave response-in-flight without waiting for the endpoint (failed cancel, lost socket)."""
        if self.session.speaking_state == SpeakingState.RESPONSE_IN_FLIGHT:
            self.session.speaking_state = SpeakingState.IDLE
        self.session.active_response_id = None

    def is_suppressed(self, response_id: Optional[str]) -> bool:
        return bool(response_id) and response_id in self.session.suppressed_response_ids

    # Response control

    async def cancel_response(self, reason: str, *, clear_caller: bool = False) -> None:
        """Fire-and-forget cancel. Local state is reset whether or not the send succeeds."""
        self.responses_cancelled += 1
        sent = await self._send({"type": "response.cancel"})
        if not sent:
            logger.warning("Response cancel not delivered", session_id=self.session.id, reason=reason)

        if self.session.speaking_state == SpeakingState.RESPONSE_IN_FLIGHT:
            self.session.speaking_state = SpeakingState.IDLE
        self.session.active_response_id = None

        if clear_caller and self._clear_caller_audio is not None:
            try:
                await self._clear_caller_audio()
            except Exception as e:
                logger.warning("Failed to clear caller audio", session_id=self.session.id, error=str(e))

    async def request_response(
        self,
        reason: str,
        *,
        force: bool = False,
        instructions: Optional[str] = None,
    ) -> bool:
        """
        Ask the speech endpoint for a new response.

        Refused while responses are disabled, inside the settle window, while a
        response is in flight, within the debounce interval, or while the caller
        is speaking (unless `force`).
        """
        session = self.session
        now = self._clock()

        skip: Optional[str] = None
        if session.responses_disabled:
            skip = "responses_disabled"
        elif session.caller_speaking and not force:
            skip = "caller_speaking"
        elif self.settling(now):
            skip = "settle_window"
        elif session.speaking_state == SpeakingState.RESPONSE_IN_FLIGHT:
            skip = "response_in_flight"
        elif session.last_response_create_at is not None and now - session.last_response_create_at < self._debounce:
            skip = "debounced"

        if skip:
            self.responses_skipped += 1
            logger.debug("Response request skipped", session_id=session.id, reason=reason, skip=skip)
            return False

        response: Dict[str, Any] = {"modalities": RESPONSE_MODALITIES}
        if instructions:
            response["instructions"] = instructions

        session.last_response_create_at = now
        sent = await self._send({"type": "response.create", "response": response})
        if not sent:
            return False

        self._forced_pending = force and session.caller_speaking
        self.responses_requested += 1
        logger.debug("Response requested", session_id=session.id, reason=reason, forced=force)
        return True

    def schedule_confirmation(self) -> None:
        """
        Speak a short confirmation after an order mutation lands.

        If the request is refused because a response is still in flight, it is
        retried when that response finishes.
        """
        self._confirmation_wanted = True
        self.session.schedule("confirm_response", self._confirmation_delay, self._confirm)

    async def _confirm(self) -> None:
        if await self.request_response("confirmation"):
            self._confirmation_wanted = False
        elif self.session.speaking_state != SpeakingState.RESPONSE_IN_FLIGHT:
            # nothing in flight will retry it; the caller's next turn gets its own response
            self._confirmation_wanted = False

    async def send_system_message(self, text: str) -> bool:
        return await self._send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "system",
                    "content": [{"type": "input_text", "text": text}],
                },
            }
        )

    async def trigger_greeting(self, greeting_text: str) -> bool:
        """Inject the greeting and create exactly one greeting response per call."""
        session = self.session
        if session.greeting_triggered:
            return False

        if not await self.send_system_message(greeting_text):
            return False

        session.greeting_triggered = True
        now = self._clock()
        self.mark_greeting(now)
        session.last_response_create_at = now
        sent = await self._send({"type": "response.create", "response": {"modalities": RESPONSE_MODALITIES}})
        if sent:
            self.responses_requested += 1
            logger.info("Greeting triggered", session_id=session.id)
        return sent
