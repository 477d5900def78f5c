"""
Tests for per-call session state and the session registry.
"""

import asyncio

import pytest

from src.phone_orders.session import (
    UNKNOWN_PHONE,
    DeliveryMethod,
    Order,
    OrderItem,
    Session,
    SessionRegistry,
    SpeakingState,
    normalize_phone,
)


class TestNormalizePhone:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("+1 (315) 555-1234", "3155551234"),
            ("315.555.1234", "3155551234"),
            ("13155551234", "3155551234"),
            ("555-1234", None),
            ("anonymous", None),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestOrder:

    def test_priced_items_and_subtotal(self):
        order = Order(
            items=[
                OrderItem("pepperoni pizza", "large", 2, 20.99),
                OrderItem("soda", "regular", 1, 2.99),
                OrderItem("mystery", "regular", 1, 0.0),
            ]
        )

        assert [item.name for item in order.priced_items()] == ["pepperoni pizza", "soda"]
        assert order.subtotal() == 44.97

    def test_summary(self):
        assert Order().summary() == "No items yet"
        order = Order(items=[OrderItem("garlic knots", "regular", 2, 6.99)])
        assert order.summary() == "2x regular garlic knots"


class TestSession:

    def test_known_caller_prefills_phone(self):
        session = Session("MZ1", call_id="CA1", caller_phone="+13155551234")

        assert session.caller_phone == "3155551234"
        assert session.order.customer_phone == "3155551234"
        assert session.speaking_state == SpeakingState.IDLE
        assert session.logged is False

    def test_blocked_caller_uses_sentinel(self):
        session = Session("MZ1", caller_phone="anonymous")

        assert session.caller_phone == UNKNOWN_PHONE
        assert session.order.customer_phone is None

    def test_recent_utterances_are_bounded(self):
        session = Session("MZ1", recent_utterances=2)
        for text in ("one", "two", "three"):
            session.recent_utterances.append(text)

        assert list(session.recent_utterances) == ["two", "three"]

    def test_logged_mirrors_order(self):
        session = Session("MZ1")
        session.order.logged = True

        assert session.logged is True

    @pytest.mark.asyncio
    async def test_schedule_replaces_pending_task_with_same_name(self):
        session = Session("MZ1")
        calls = []

        async def first():
            calls.append("first")

        async def second():
            calls.append("second")

        session.schedule("confirm", 0.05, first)
        task = session.schedule("confirm", 0.0, second)
        await task
        await asyncio.sleep(0.1)

        assert calls == ["second"]
        assert session.pending_task("confirm") is None

    @pytest.mark.asyncio
    async def test_scheduled_failure_is_contained(self):
        session = Session("MZ1")

        async def boom():
            raise RuntimeError("boom")

        task = session.schedule("boom", 0.0, boom)
        await task

        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_cancel_tasks(self):
        session = Session("MZ1")
        calls = []

        async def later():
            calls.append("ran")

        session.schedule("a", 10.0, later)
        session.schedule("b", 10.0, later)

        assert session.cancel_tasks() == 2
        await asyncio.sleep(0)
        assert session.pending_task("a") is None
        assert calls == []


class TestSessionRegistry:

    def test_create_get_delete(self):
        registry = SessionRegistry()
        session = registry.create("MZ1", caller_phone="3155551234", call_id="CA1")

        assert registry.get("MZ1") is session
        assert "MZ1" in registry
        assert len(registry) == 1

        assert registry.delete("MZ1") is session
        assert registry.get("MZ1") is None
        assert len(registry) == 0

    def test_delete_unknown_is_noop(self):
        registry = SessionRegistry()

        assert registry.delete("missing") is None

    def test_create_replaces_and_resets_existing(self):
        registry = SessionRegistry()
        first = registry.create("MZ1")
        first.order.items.append(OrderItem("soda", "regular", 1, 2.99))
        first.order.delivery_method = DeliveryMethod.PICKUP

        second = registry.create("MZ1")

        assert second is not first
        assert second.order.items == []
        assert second.order.delivery_method is None
        assert len(registry) == 1

    def test_sweep_evicts_stale_sessions(self):
        now = [0.0]
        registry = SessionRegistry(clock=lambda: now[0])
        old = registry.create("old")
        now[0] = 500.0
        registry.create("new")
        now[0] = 700.0

        evicted = registry.sweep(600.0)

        assert evicted == [old]
        assert "old" not in registry
        assert "new" in registry

    def test_sweep_keeps_long_calls_with_recent_activity(self):
        now = [0.0]
        registry = SessionRegistry(clock=lambda: now[0])
        long_call = registry.create("long")
        now[0] = 650.0
        long_call.touch()
        now[0] = 700.0

        assert registry.sweep(600.0) == []
        assert "long" in registry
