"""
Tool layer for OpenAI Realtime function calling.

Each function call from the speech endpoint becomes one mutation of the
session's Order. Arguments are validated with pydantic; anything that fails
validation is a protocol violation and leaves the order untouched. Domain
rejections (unknown item, zero price, bad delivery method) are returned as
ok=false results the model can recover from without the caller hearing an error.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import msgspec
import structlog
from pydantic import BaseModel, Field, ValidationError

from src.phone_orders.menu import MenuIndex
from src.phone_orders.session import DeliveryMethod, OrderItem, Session, normalize_phone

logger = structlog.get_logger(__name__)

_json_decoder = msgspec.json.Decoder()


class AddItemArgs(BaseModel):
    name: str = Field(..., min_length=1)
    size: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)


class DeliveryMethodArgs(BaseModel):
    method: str


class AddressArgs(BaseModel):
    address: str


class CustomerNameArgs(BaseModel):
    name: str


class CustomerPhoneArgs(BaseModel):
    phone: str


class PaymentMethodArgs(BaseModel):
    method: str


class ConfirmOrderArgs(BaseModel):
    pass


@dataclass
class ToolResult:
    ok: bool
    mutated: bool = False
    critical: bool = False
    error: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_output(self) -> Dict[str, Any]:
        output: Dict[str, Any] = {"ok": self.ok}
        if self.error:
            output["error"] = self.error
        output.update(self.payload)
        return output


def tool_definitions() -> List[Dict[str, Any]]:
    common_note = "Returns JSON. ok=false means the change was not applied; ask the caller again."
    return [
        {
            "type": "function",
            "name": "add_item_to_order",
            "description": (
                "Add a menu item to the order. Use the exact menu item name. "
                "Call once per item the caller asks for. " + common_note
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Menu item name, e.g. 'pepperoni pizza'."},
                    "size": {"type": "string", "description": "Size if the item has sizes, e.g. 'large'."},
                    "quantity": {"type": "integer", "minimum": 1, "description": "How many. Defaults to 1."},
                },
                "required": ["name"],
            },
        },
        {
            "type": "function",
            "name": "set_delivery_method",
            "description": "Record whether the order is for pickup or delivery. " + common_note,
            "parameters": {
                "type": "object",
                "properties": {"method": {"type": "string", "enum": ["pickup", "delivery"]}},
                "required": ["method"],
            },
        },
        {
            "type": "function",
            "name": "set_address",
            "description": "Record the full delivery street address. Implies delivery. " + common_note,
            "parameters": {
                "type": "object",
                "properties": {"address": {"type": "string"}},
                "required": ["address"],
            },
        },
        {
            "type": "function",
            "name": "set_customer_name",
            "description": "Record the name the order is under. " + common_note,
            "parameters": {
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
        },
        {
            "type": "function",
            "name": "set_customer_phone",
            "description": "Record a callback phone number (10 digits). " + common_note,
            "parameters": {
                "type": "object",
                "properties": {"phone": {"type": "string"}},
                "required": ["phone"],
            },
        },
        {
            "type": "function",
            "name": "set_payment_method",
            "description": "Record how the caller will pay (e.g. cash, card). " + common_note,
            "parameters": {
                "type": "object",
                "properties": {"method": {"type": "string"}},
                "required": ["method"],
            },
        },
        {
            "type": "function",
            "name": "confirm_order",
            "description": (
                "Call only after reading the full order back and the caller confirms it is correct. "
                + common_note
            ),
            "parameters": {"type": "object", "properties": {}},
        },
    ]


TOOL_NAMES = frozenset(tool["name"] for tool in tool_definitions())


def decode_arguments(raw_args: Union[str, bytes, Dict[str, Any], None]) -> Dict[str, Any]:
    """Decode function-call arguments. Raises ValueError when they are not a JSON object."""
    if raw_args is None or raw_args == "" or raw_args == b"":
        return {}
    if isinstance(raw_args, dict):
        return raw_args
    try:
        value = _json_decoder.decode(raw_args.encode("utf-8") if isinstance(raw_args, str) else raw_args)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON arguments: {e}") from e
    if not isinstance(value, dict):
        raise ValueError("Arguments must be a JSON object")
    return value


class OrderBuilder:
    """
    Applies tool calls to one session's order, using the menu snapshot taken
    when the call started.
    """

    def __init__(self, session: Session, menu: MenuIndex, *, on_rejection: Optional[Callable[[str], None]] = None):
        self.session = session
        self.menu = menu
        self._on_rejection = on_rejection
        self._handlers: Dict[str, Callable[[Any], ToolResult]] = {
            "add_item_to_order": self._add_item,
            "set_delivery_method": self._set_delivery_method,
            "set_address": self._set_address,
            "set_customer_name": self._set_customer_name,
            "set_customer_phone": self._set_customer_phone,
            "set_payment_method": self._set_payment_method,
            "confirm_order": self._confirm_order,
        }
        self._models: Dict[str, type] = {
            "add_item_to_order": AddItemArgs,
            "set_delivery_method": DeliveryMethodArgs,
            "set_address": AddressArgs,
            "set_customer_name": CustomerNameArgs,
            "set_customer_phone": CustomerPhoneArgs,
            "set_payment_method": PaymentMethodArgs,
            "confirm_order": ConfirmOrderArgs,
        }

    @property
    def order(self):
        return self.session.order

    def execute(self, tool_name: str, raw_args: Union[str, bytes, Dict[str, Any], None]) -> ToolResult:
        started = time.time()
        handler = self._handlers.get(tool_name)
        if handler is None:
            return self._reject(tool_name, f"unknown_tool:{tool_name}")

        try:
            args = self._models[tool_name].model_validate(decode_arguments(raw_args))
        except (ValueError, ValidationError) as e:
            logger.warning(
                "Dropping malformed tool call",
                session_id=self.session.id,
                tool=tool_name,
                error=str(e).splitlines()[0],
            )
            return self._reject(tool_name, "invalid_arguments", log=False)

        try:
            result = handler(args)
        except Exception as e:
            logger.exception("Tool execution failed", session_id=self.session.id, tool=tool_name)
            return ToolResult(ok=False, error=str(e))

        logger.info(
            "Tool call applied" if result.ok else "Tool call rejected",
            session_id=self.session.id,
            tool=tool_name,
            ok=result.ok,
            error=result.error,
            ms=int((time.time() - started) * 1000),
        )
        if not result.ok and self._on_rejection is not None:
            self._on_rejection(result.error or "rejected")
        return result

    def _reject(self, tool_name: str, error: str, *, log: bool = True) -> ToolResult:
        if log:
            logger.warning("Tool call rejected", session_id=self.session.id, tool=tool_name, error=error)
        if self._on_rejection is not None:
            self._on_rejection(error)
        return ToolResult(ok=False, error=error)

    def _order_payload(self) -> Dict[str, Any]:
        return {"order_summary": self.order.summary(), "subtotal": self.order.subtotal()}

    def _add_item(self, args: AddItemArgs) -> ToolResult:
        item = self.menu.lookup(args.name)
        if item is None:
            return ToolResult(ok=False, error="item_not_on_menu", payload={"requested": args.name})

        size = self.menu.resolve_size(item, args.size)
        price = self.menu.resolve_price(item, args.size)
        if price <= 0:
            return ToolResult(ok=False, error="item_not_priced", payload={"requested": item.name})

        quantity = args.quantity or 1
        for line in self.order.items:
            if line.name == item.name and line.size == size:
                line.quantity += quantity
                break
        else:
            line = OrderItem(name=item.name, size=size, quantity=quantity, price=price)
            self.order.items.append(line)

        return ToolResult(ok=True, mutated=True, payload={"item": line.to_dict(), **self._order_payload()})

    def _set_delivery_method(self, args: DeliveryMethodArgs) -> ToolResult:
        value = args.method.strip().lower()
        if value.replace(" ", "").isdigit():
            return ToolResult(ok=False, error="numeric_delivery_method")
        try:
            method = DeliveryMethod(value)
        except ValueError:
            return ToolResult(ok=False, error="invalid_delivery_method", payload={"allowed": ["pickup", "delivery"]})

        if method == DeliveryMethod.PICKUP and self.order.address:
            # an address on file always means delivery
            return ToolResult(ok=False, error="address_implies_delivery", payload={"address": self.order.address})

        self.order.delivery_method = method
        return ToolResult(ok=True, mutated=True, critical=True, payload={"delivery_method": method.value})

    def _set_address(self, args: AddressArgs) -> ToolResult:
        address = " ".join(args.address.split())
        if not address:
            return ToolResult(ok=False, error="empty_address")
        if address.replace(" ", "").replace("-", "").isdigit():
            return ToolResult(ok=False, error="incomplete_address")

        self.order.address = address
        repaired = self.order.delivery_method != DeliveryMethod.DELIVERY
        if repaired:
            self.order.delivery_method = DeliveryMethod.DELIVERY
            logger.info("Address implies delivery", session_id=self.session.id)
        return ToolResult(
            ok=True,
            mutated=True,
            critical=True,
            payload={"address": address, "delivery_method": DeliveryMethod.DELIVERY.value},
        )

    def _set_customer_name(self, args: CustomerNameArgs) -> ToolResult:
        name = " ".join(args.name.split())
        if not name:
            return ToolResult(ok=False, error="empty_name")
        self.order.customer_name = name
        return ToolResult(ok=True, mutated=True, critical=True, payload={"customer_name": name})

    def _set_customer_phone(self, args: CustomerPhoneArgs) -> ToolResult:
        phone = normalize_phone(args.phone)
        if phone is None:
            return ToolResult(ok=False, error="invalid_phone")
        self.order.customer_phone = phone
        return ToolResult(ok=True, mutated=True, payload={"customer_phone": phone})

    def _set_payment_method(self, args: PaymentMethodArgs) -> ToolResult:
        method = args.method.strip().lower()
        if not method:
            return ToolResult(ok=False, error="empty_payment_method")
        self.order.payment_method = method
        return ToolResult(ok=True, mutated=True, payload={"payment_method": method})

    def _confirm_order(self, args: ConfirmOrderArgs) -> ToolResult:
        # logging is still gated on completeness
        self.order.confirmed = True
        return ToolResult(ok=True, mutated=True, payload={"confirmed": True, **self._order_payload()})
