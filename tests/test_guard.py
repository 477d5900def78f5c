"""
Tests for the response lifecycle guard.
"""

import pytest

from src.phone_orders.guard import (
    FailureKind,
    LoopBreaker,
    ReconnectPolicy,
    WordOverlapDetector,
    classify_failure,
    retry_delay_from,
)
from src.phone_orders.session import Session


class TestWordOverlapDetector:

    def test_exact_match_ignores_case_and_spacing(self):
        detector = WordOverlapDetector()

        assert detector.is_near_duplicate("Anything  else?", "anything else?") is True

    def test_similarity_uses_words_longer_than_two_chars(self):
        detector = WordOverlapDetector()

        # "a", "is", "it" are ignored
        assert detector.similarity("is it a large pizza", "large pizza") == 1.0
        assert detector.similarity("", "large pizza") == 0.0

    def test_threshold(self):
        detector = WordOverlapDetector(threshold=0.75)
        previous = "would you like pickup or delivery today"

        assert detector.is_near_duplicate(previous, "would you like pickup or delivery tonight") is True
        assert detector.is_near_duplicate(previous, "what name should put the order under") is False
        assert detector.is_near_duplicate(previous, "") is False


class TestLoopBreaker:

    def _session(self):
        return Session("MZ1")

    def test_single_corrective_instruction_per_duplicate(self):
        session = self._session()
        breaker = LoopBreaker(WordOverlapDetector(0.75), window_seconds=10.0)
        text = "Would you like pickup or delivery for your order today?"

        assert breaker.observe(session, text, now=0.0) is False
        assert breaker.observe(session, text, now=3.0) is True
        assert breaker.detections == 1

        # the duplicate was not recorded; a different line resets the comparison
        assert list(session.recent_utterances) == [text]
        assert breaker.observe(session, "Great, what name should I put the order under?", now=4.0) is False
        assert breaker.observe(session, "Thanks, your order will be ready soon.", now=5.0) is False
        assert breaker.detections == 1

    def test_duplicates_outside_window_are_not_flagged(self):
        session = self._session()
        breaker = LoopBreaker(window_seconds=10.0)
        text = "Anything else for you today?"

        breaker.observe(session, text, now=0.0)

        assert breaker.observe(session, text, now=11.0) is False
        assert session.last_utterance_at == 11.0

    def test_empty_transcripts_ignored(self):
        session = self._session()
        breaker = LoopBreaker()

        assert breaker.observe(session, "   ", now=0.0) is False
        assert list(session.recent_utterances) == []


class TestFailureClassification:

    @pytest.mark.parametrize(
        "details,kind",
        [
            ({"error": {"code": "rate_limit_exceeded", "message": "Please try again in 1.2s"}}, FailureKind.RATE_LIMIT),
            ({"type": "failed", "error": {"type": "requests", "message": "Rate limit reached"}}, FailureKind.RATE_LIMIT),
            ({"error": {"code": "insufficient_quota", "message": "You exceeded your current quota"}}, FailureKind.QUOTA),
            ({"code": "billing_hard_limit_reached", "message": "Billing hard limit"}, FailureKind.QUOTA),
            ({"error": {"code": "server_error", "message": "Something went wrong"}}, FailureKind.GENERIC),
            (None, FailureKind.GENERIC),
            ("unexpected", FailureKind.GENERIC),
        ],
    )
    def test_classify(self, details, kind):
        assert classify_failure(details) == kind

    def test_retry_delay_parsing(self):
        assert retry_delay_from({"error": {"message": "Please try again in 1.2s."}}) == 1.2
        assert retry_delay_from({"message": "Please try again in 350ms"}) == 0.35
        assert retry_delay_from({"message": "try again in 2 seconds"}) == 2.0
        assert retry_delay_from({"message": "slow down"}) is None


class TestReconnectPolicy:

    def test_exponential_backoff_with_cap(self):
        policy = ReconnectPolicy(max_attempts=3, base_ms=1000, max_ms=5000)

        assert [policy.delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_should_retry(self):
        policy = ReconnectPolicy(max_attempts=3)

        assert policy.should_retry(2) is True
        assert policy.should_retry(3) is False
