"""
Order finalization and logging gateway.

Decides whether (and at most once per call) an order is handed to the logging
sinks. Triggers are the explicit confirm_order tool call and the end-of-call
sweep; completion phrases only nudge the conversation toward missing details.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from src.phone_orders.session import DeliveryMethod, Order, OrderItem, Session
from src.phone_orders.sinks import OrderRecord, OrderSink

logger = structlog.get_logger(__name__)

TRIGGER_CONFIRM = "confirm_order"
TRIGGER_CALL_END = "call_end"
TRIGGER_SWEEP = "stale_sweep"

COMPLETION_PHRASES = (
    "that's it",
    "that's all",
    "that is it",
    "that is all",
    "i'm all set",
    "i am all set",
    "nothing else",
    "that'll be it",
    "that's everything",
    "done",
)

_COMPLETION_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in COMPLETION_PHRASES) + r")\b"
)

_FIELD_PROMPTS = {
    "items": "what they would like to order",
    "customer_name": "the name for the order",
    "delivery_method": "whether it is pickup or delivery",
    "address": "the delivery address",
}

_CENTS = Decimal("0.01")


def looks_like_completion(transcript: str) -> bool:
    text = " ".join((transcript or "").lower().replace("’", "'").split())
    return bool(text) and _COMPLETION_RE.search(text) is not None


def missing_fields(order: Order) -> List[str]:
    """Unmet completeness conditions, in the order they should be asked for."""
    missing: List[str] = []
    if not order.priced_items():
        missing.append("items")
    if not (order.customer_name or "").strip():
        missing.append("customer_name")
    if order.delivery_method is None:
        missing.append("delivery_method")
    elif order.delivery_method == DeliveryMethod.DELIVERY and not (order.address or "").strip():
        missing.append("address")
    elif order.delivery_method == DeliveryMethod.PICKUP and order.address:
        missing.append("address_without_delivery")
    return missing


def completion_nudge(missing: Sequence[str]) -> str:
    asks = [_FIELD_PROMPTS[f] for f in missing if f in _FIELD_PROMPTS]
    if not asks:
        return (
            "The caller says the order is complete. Read the full order back with the total "
            "and ask them to confirm it."
        )
    return (
        "The caller says they are done ordering. Before confirming, ask for "
        + ", then ".join(asks)
        + ". Ask one question at a time."
    )


def _money(value: Decimal) -> float:
    return float(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def compute_totals(items: Iterable[OrderItem], tax_rate: float) -> Tuple[float, float, float]:
    """(subtotal, tax, total) rounded to cents."""
    subtotal = sum(
        (Decimal(str(item.price)) * item.quantity for item in items),
        Decimal("0"),
    ).quantize(_CENTS, rounding=ROUND_HALF_UP)
    tax = (subtotal * Decimal(str(tax_rate))).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return _money(subtotal), _money(tax), _money(subtotal + tax)


def build_record(
    session: Session,
    *,
    tax_rate: float,
    store_name: str,
    store_location: str,
    trigger: str,
    now: Optional[datetime] = None,
) -> OrderRecord:
    order = session.order
    items = order.priced_items()
    subtotal, tax, total = compute_totals(items, tax_rate)
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return OrderRecord(
        items=[item.to_dict() for item in items],
        delivery_method=order.delivery_method.value if order.delivery_method else "",
        address=order.address if order.delivery_method == DeliveryMethod.DELIVERY else None,
        customer_name=(order.customer_name or "").strip(),
        customer_phone=order.customer_phone,
        payment_method=order.payment_method,
        subtotal=subtotal,
        tax=tax,
        total=total,
        timestamp=stamp,
        store_name=store_name,
        store_location=store_location,
        call_id=session.call_id or session.id,
        trigger=trigger,
    )


class FinalizationGateway:
    """
    Single writer of `Order.logged`.

    `submit` is synchronous up to the point where `logged` is set, so two
    triggers racing on the same session can never both dispatch.
    """

    def __init__(
        self,
        sinks: Sequence[OrderSink],
        *,
        tax_rate: float = 0.08,
        store_name: str = "",
        store_location: str = "",
        timeout_s: float = 5.0,
    ):
        self.sinks = list(sinks)
        self.tax_rate = tax_rate
        self.store_name = store_name
        self.store_location = store_location
        self.timeout_s = timeout_s
        self._pending: Set[asyncio.Task] = set()

        self.orders_logged = 0
        self.orders_incomplete = 0
        self.dispatch_failures = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, session: Session, trigger: str) -> Optional[asyncio.Task]:
        order = session.order
        if order.logged:
            logger.debug("Order already logged", session_id=session.id, trigger=trigger)
            return None

        missing = missing_fields(order)
        if missing:
            self.orders_incomplete += 1
            logger.warning(
                "Order not logged: incomplete",
                session_id=session.id,
                call_id=session.call_id,
                trigger=trigger,
                missing=missing,
                items=len(order.items),
            )
            return None

        order.logged = True
        record = build_record(
            session,
            tax_rate=self.tax_rate,
            store_name=self.store_name,
            store_location=self.store_location,
            trigger=trigger,
        )
        logger.info(
            "Order finalized",
            session_id=session.id,
            call_id=record.call_id,
            trigger=trigger,
            items=len(record.items),
            delivery_method=record.delivery_method,
            total=record.total,
        )

        task = asyncio.create_task(self._dispatch(session, record), name=f"{session.id}:dispatch")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _dispatch(self, session: Session, record: OrderRecord) -> bool:
        if not self.sinks:
            logger.warning("No sinks configured; order kept in logs only", call_id=record.call_id, record=record.to_dict())
            self.orders_logged += 1
            return True

        results = await asyncio.gather(*(self._send_one(sink, record) for sink in self.sinks))
        succeeded = [sink.name for sink, ok in zip(self.sinks, results) if ok]
        failed = [sink.name for sink, ok in zip(self.sinks, results) if not ok]

        if succeeded:
            self.orders_logged += 1
            if failed:
                logger.warning("Order partially delivered", call_id=record.call_id, succeeded=succeeded, failed=failed)
            return True

        # every sink failed; allow a later trigger to retry
        session.order.logged = False
        self.dispatch_failures += 1
        logger.error("Order delivery failed on all sinks", call_id=record.call_id, failed=failed)
        return False

    async def _send_one(self, sink: OrderSink, record: OrderRecord) -> bool:
        try:
            return bool(await asyncio.wait_for(sink.send(record), timeout=self.timeout_s))
        except asyncio.TimeoutError:
            logger.error("Order sink timed out", sink=sink.name, call_id=record.call_id, timeout_s=self.timeout_s)
        except Exception:
            logger.exception("Order sink raised", sink=sink.name, call_id=record.call_id)
        return False

    async def drain(self) -> None:
        """Wait for in-flight dispatches (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for sink in self.sinks:
            await sink.close()
