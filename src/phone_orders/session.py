"""
Per-call session state.

One Session per active call: identity, the order in progress, turn-taking state
and conversation bookkeeping. Sessions live in a SessionRegistry keyed by the
telephony stream id; nothing here is persisted across process restarts.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, List, Optional

import structlog

logger = structlog.get_logger(__name__)

UNKNOWN_PHONE = "unknown"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Reduce a phone number to its 10 national digits.

    Returns None when no 10-digit number can be extracted (blocked/anonymous
    caller ids, partial numbers, international numbers).
    """
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return digits


class SpeakingState(str, Enum):
    IDLE = "idle"
    CALLER_SPEAKING = "caller_speaking"
    RESPONSE_IN_FLIGHT = "response_in_flight"


class DeliveryMethod(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


@dataclass
class OrderItem:
    name: str
    size: str
    quantity: int
    price: float

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "quantity": self.quantity,
            "price": self.price,
        }


@dataclass
class Order:
    items: List[OrderItem] = field(default_factory=list)
    delivery_method: Optional[DeliveryMethod] = None
    address: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    payment_method: Optional[str] = None
    confirmed: bool = False
    logged: bool = False

    def priced_items(self) -> List[OrderItem]:
        return [item for item in self.items if item.name and item.price > 0 and item.quantity > 0]

    def subtotal(self) -> float:
        return round(sum(item.line_total for item in self.priced_items()), 2)

    def summary(self) -> str:
        if not self.items:
            return "No items yet"
        return ", ".join(f"{item.quantity}x {item.size} {item.name}" for item in self.items)


class Session:
    """Live state for one phone call."""

    def __init__(
        self,
        session_id: str,
        *,
        call_id: str = "",
        caller_phone: Optional[str] = None,
        recent_utterances: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.id = session_id
        self.call_id = call_id
        self.caller_phone = normalize_phone(caller_phone) or UNKNOWN_PHONE
        self._clock = clock
        self.created_at = clock()
        self.last_activity_at = self.created_at

        self.order = Order(
            customer_phone=self.caller_phone if self.caller_phone != UNKNOWN_PHONE else None,
        )

        # Turn taking
        self.speaking_state = SpeakingState.IDLE
        self.greeting_anchor: Optional[float] = None
        self.greeting_triggered = False
        self.last_response_create_at: Optional[float] = None
        self.active_response_id: Optional[str] = None
        self.suppressed_response_ids: Deque[str] = deque(maxlen=16)

        # Conversation bookkeeping
        self.recent_utterances: Deque[str] = deque(maxlen=max(1, recent_utterances))
        self.last_utterance_at: Optional[float] = None
        self.handled_call_ids: Deque[str] = deque(maxlen=64)

        # Failure handling
        self.pending_critical_confirmation = False
        self.rate_limit_retries = 0
        self.generic_recovery_attempted = False
        self.responses_disabled = False
        self.relay_only = False

        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def logged(self) -> bool:
        return self.order.logged

    @property
    def caller_speaking(self) -> bool:
        return self.speaking_state == SpeakingState.CALLER_SPEAKING

    def touch(self) -> None:
        self.last_activity_at = self._clock()

    def schedule(
        self,
        name: str,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task:
        """
        Run `callback` after `delay` seconds as a task owned by this session.

        A pending task with the same name is cancelled first, so repeated
        scheduling coalesces into the latest request.
        """
        previous = self._tasks.get(name)
        if previous and not previous.done() and previous is not asyncio.current_task():
            previous.cancel()

        async def _run() -> None:
            try:
                if delay > 0:
                    await asyncio.sleep(delay)
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled session task failed", session_id=self.id, task=name)
            finally:
                if self._tasks.get(name) is asyncio.current_task():
                    self._tasks.pop(name, None)

        task = asyncio.create_task(_run(), name=f"{self.id}:{name}")
        self._tasks[name] = task
        return task

    def pending_task(self, name: str) -> Optional[asyncio.Task]:
        task = self._tasks.get(name)
        if task and not task.done():
            return task
        return None

    def cancel_tasks(self) -> int:
        cancelled = 0
        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()
                cancelled += 1
        self._tasks.clear()
        return cancelled


class SessionRegistry:
    """
    Keyed store of active sessions (stream id -> Session).

    Entries are written only by the owning call's event stream; unknown ids are
    logged no-ops because the call may already have ended.
    """

    def __init__(self, *, recent_utterances: int = 10, clock: Callable[[], float] = time.monotonic):
        self._sessions: Dict[str, Session] = {}
        self._recent_utterances = recent_utterances
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create(self, session_id: str, *, caller_phone: Optional[str] = None, call_id: str = "") -> Session:
        previous = self._sessions.pop(session_id, None)
        if previous is not None:
            cancelled = previous.cancel_tasks()
            logger.warning(
                "Replacing existing session",
                session_id=session_id,
                cancelled_tasks=cancelled,
            )

        session = Session(
            session_id,
            call_id=call_id,
            caller_phone=caller_phone,
            recent_utterances=self._recent_utterances,
            clock=self._clock,
        )
        self._sessions[session_id] = session
        logger.info(
            "Session created",
            session_id=session_id,
            call_id=call_id,
            caller_known=session.caller_phone != UNKNOWN_PHONE,
            active_sessions=len(self._sessions),
        )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("Session not found", session_id=session_id)
        return session

    def delete(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.info("Delete for unknown session ignored", session_id=session_id)
            return None
        session.cancel_tasks()
        logger.info("Session deleted", session_id=session_id, active_sessions=len(self._sessions))
        return session

    def sweep(self, max_age_seconds: float) -> List[Session]:
        """
        Evict sessions with no activity for longer than `max_age_seconds`.

        Live calls touch their session on every telephony and speech endpoint
        event, so only sessions whose call went away without cleanup age out.
        """
        now = self._clock()
        stale = [sid for sid, s in self._sessions.items() if now - s.last_activity_at > max_age_seconds]
        evicted: List[Session] = []
        for sid in stale:
            session = self._sessions.pop(sid)
            session.cancel_tasks()
            evicted.append(session)
        if evicted:
            logger.info("Swept stale sessions", session_ids=stale, active_sessions=len(self._sessions))
        return evicted
