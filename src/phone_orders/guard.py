"""
Response lifecycle guard.

- Loop breaking: spot the assistant repeating itself and nudge it once.
- Failure classification for failed responses and error events.
- Reconnect backoff policy for the speech endpoint socket.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

import structlog

from src.phone_orders.session import Session

logger = structlog.get_logger(__name__)

LOOP_BREAK_INSTRUCTION = (
    "You just repeated yourself. Do not say the same thing again. "
    "Stop, wait for the caller to speak, and respond only to what they say next."
)

RECOVERY_INSTRUCTION = (
    "Continue the conversation naturally from where it left off. "
    "If you were in the middle of taking the order, briefly ask the caller what they would like next."
)

_WORD_RE = re.compile(r"[a-z0-9']+")
_RETRY_RE = re.compile(r"try again in\s*([0-9]+(?:\.[0-9]+)?)\s*(ms|s|sec|seconds?)?", re.IGNORECASE)


class NearDuplicateDetector(Protocol):
    def is_near_duplicate(self, previous: str, current: str) -> bool:
        ...


def _words(text: str) -> list[str]:
    return [w for w in _WORD_RE.findall(text.lower()) if len(w) > 2]


class WordOverlapDetector:
    """
    Exact match, or the share of common words (longer than two characters)
    relative to the longer utterance above `threshold`.
    """

    def __init__(self, threshold: float = 0.75):
        self.threshold = threshold

    def similarity(self, previous: str, current: str) -> float:
        a = _words(previous)
        b = _words(current)
        if not a or not b:
            return 0.0
        common = len(set(a) & set(b))
        return common / max(len(a), len(b))

    def is_near_duplicate(self, previous: str, current: str) -> bool:
        prev = " ".join(previous.lower().split())
        cur = " ".join(current.lower().split())
        if not prev or not cur:
            return False
        if prev == cur:
            return True
        return self.similarity(prev, cur) > self.threshold


class LoopBreaker:
    """Single-shot circuit breaker over consecutive near-duplicate assistant utterances."""

    def __init__(self, detector: Optional[NearDuplicateDetector] = None, *, window_seconds: float = 10.0):
        self.detector = detector or WordOverlapDetector()
        self.window_seconds = window_seconds
        self.detections = 0

    def observe(self, session: Session, transcript: str, now: float) -> bool:
        """
        Record a completed assistant utterance.

        Returns True when it repeats the previous one within the window; the
        caller should then inject one corrective instruction. The duplicate is
        not recorded, so the next utterance is compared against the original.
        """
        text = (transcript or "").strip()
        if not text:
            return False

        previous = session.recent_utterances[-1] if session.recent_utterances else None
        recent = session.last_utterance_at is not None and now - session.last_utterance_at <= self.window_seconds

        if previous is not None and recent and self.detector.is_near_duplicate(previous, text):
            self.detections += 1
            logger.warning("Repeated assistant utterance", session_id=session.id, text=text[:120])
            return True

        session.recent_utterances.append(text)
        session.last_utterance_at = now
        return False


class FailureKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    GENERIC = "generic"


def _error_fields(details: Any) -> tuple[str, str]:
    if not isinstance(details, Mapping):
        return "", str(details or "")
    error = details.get("error")
    if isinstance(error, Mapping):
        details = error
    code = str(details.get("code") or details.get("type") or "")
    message = str(details.get("message") or "")
    return code.lower(), message


def classify_failure(details: Any) -> FailureKind:
    """
    Classify the `status_details` of a failed response, or an error event body.
    """
    code, message = _error_fields(details)
    text = f"{code} {message}".lower()
    if "insufficient_quota" in text or "quota" in code or "billing" in text:
        return FailureKind.QUOTA
    if "rate_limit" in text or "rate limit" in text:
        return FailureKind.RATE_LIMIT
    return FailureKind.GENERIC


def retry_delay_from(details: Any) -> Optional[float]:
    """Seconds from provider guidance like 'Please try again in 1.2s' (or 350ms)."""
    _, message = _error_fields(details)
    match = _RETRY_RE.search(message)
    if not match:
        return None
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return value / 1000.0 if unit == "ms" else value


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 3
    base_ms: int = 1000
    max_ms: int = 5000

    def delay(self, attempt: int) -> float:
        """Delay in seconds before reconnect attempt `attempt` (0-based)."""
        return min(self.base_ms * (2 ** max(0, attempt)), self.max_ms) / 1000.0

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
