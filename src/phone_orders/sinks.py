from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog

from src.phone_orders.config import Config

logger = structlog.get_logger(__name__)


@dataclass
class OrderRecord:
    """Finalized order as handed to the logging sinks."""

    items: List[Dict[str, Any]]
    delivery_method: str
    address: Optional[str]
    customer_name: str
    customer_phone: Optional[str]
    payment_method: Optional[str]
    subtotal: float
    tax: float
    total: float
    timestamp: str
    store_name: str
    store_location: str
    call_id: str = ""
    trigger: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OrderSink(ABC):
    name: str = "sink"

    @abstractmethod
    async def send(self, record: OrderRecord) -> bool:
        """Deliver one record. Returns False on failure; must not raise."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class WebhookSink(OrderSink):
    """
    POSTs the order record as JSON.

    The spreadsheet, POS and notification integrations are all webhook
    endpoints that accept the same record shape.
    """

    def __init__(
        self,
        name: str,
        url: str,
        *,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.url = url
        self.timeout_s = timeout_s
        self._transport = transport

    async def send(self, record: OrderRecord) -> bool:
        started = time.time()
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s), transport=self._transport) as client:
                resp = await client.post(self.url, json=record.to_dict())
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Order sink rejected record",
                sink=self.name,
                status_code=e.response.status_code,
                response=e.response.text[:200],
                call_id=record.call_id,
            )
            return False
        except httpx.HTTPError as e:
            logger.error("Order sink request failed", sink=self.name, error=str(e) or type(e).__name__, call_id=record.call_id)
            return False

        logger.info(
            "Order sent to sink",
            sink=self.name,
            call_id=record.call_id,
            status_code=resp.status_code,
            ms=int((time.time() - started) * 1000),
        )
        return True


def build_sinks(config: Config, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[OrderSink]:
    sinks: List[OrderSink] = []
    for name, url in (
        ("sheets", config.sheets_webhook_url),
        ("pos", config.pos_webhook_url),
        ("webhook", config.order_webhook_url),
    ):
        if url:
            sinks.append(WebhookSink(name, url, timeout_s=config.sink_timeout_seconds, transport=transport))
    if not sinks:
        logger.warning("No order sinks configured; confirmed orders will only be logged locally")
    return sinks
