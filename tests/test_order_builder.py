"""
Tests for the tool-call order builder.
"""

import json

import pytest

from src.phone_orders.menu import default_menu
from src.phone_orders.order_builder import (
    TOOL_NAMES,
    OrderBuilder,
    decode_arguments,
    tool_definitions,
)
from src.phone_orders.session import DeliveryMethod, Session


@pytest.fixture
def session():
    return Session("MZ1", call_id="CA1")


@pytest.fixture
def rejections():
    return []


@pytest.fixture
def builder(session, rejections):
    return OrderBuilder(session, default_menu(), on_rejection=rejections.append)


class TestToolSchema:

    def test_all_tools_declared(self):
        names = {tool["name"] for tool in tool_definitions()}

        assert names == TOOL_NAMES
        assert names == {
            "add_item_to_order",
            "set_delivery_method",
            "set_address",
            "set_customer_name",
            "set_customer_phone",
            "set_payment_method",
            "confirm_order",
        }
        assert all(tool["type"] == "function" for tool in tool_definitions())

    def test_decode_arguments(self):
        assert decode_arguments('{"name": "soda"}') == {"name": "soda"}
        assert decode_arguments(None) == {}
        assert decode_arguments("") == {}
        assert decode_arguments({"a": 1}) == {"a": 1}

        with pytest.raises(ValueError):
            decode_arguments("{not json")
        with pytest.raises(ValueError):
            decode_arguments("[1, 2]")


class TestAddItem:

    def test_large_pepperoni_uses_menu_price(self, builder, session):
        result = builder.execute(
            "add_item_to_order",
            json.dumps({"name": "pepperoni pizza", "size": "large", "quantity": 1}),
        )

        assert result.ok is True
        assert [item.to_dict() for item in session.order.items] == [
            {"name": "pepperoni pizza", "size": "large", "quantity": 1, "price": 20.99}
        ]
        assert result.to_output()["subtotal"] == 20.99

    def test_name_is_canonicalized_and_quantity_defaults_to_one(self, builder, session):
        result = builder.execute("add_item_to_order", {"name": "  Garlic KNOTS "})

        assert result.ok is True
        line = session.order.items[0]
        assert (line.name, line.size, line.quantity, line.price) == ("garlic knots", "regular", 1, 6.99)

    def test_same_item_and_size_merge(self, builder, session):
        builder.execute("add_item_to_order", {"name": "cheese pizza", "size": "medium", "quantity": 2})
        builder.execute("add_item_to_order", {"name": "Cheese Pizza", "size": "MEDIUM", "quantity": 3})

        assert len(session.order.items) == 1
        assert session.order.items[0].quantity == 5

    def test_different_sizes_are_separate_lines(self, builder, session):
        builder.execute("add_item_to_order", {"name": "cheese pizza", "size": "small"})
        builder.execute("add_item_to_order", {"name": "cheese pizza", "size": "large"})

        assert [(item.size, item.price) for item in session.order.items] == [("small", 12.99), ("large", 18.99)]

    def test_unknown_item_rejected(self, builder, session, rejections):
        result = builder.execute("add_item_to_order", {"name": "pineapple calzone deluxe"})

        assert result.ok is False
        assert result.error == "item_not_on_menu"
        assert session.order.items == []
        assert rejections == ["item_not_on_menu"]

    def test_zero_priced_item_rejected(self, session, rejections):
        from src.phone_orders.menu import MenuIndex, MenuItem

        menu = MenuIndex([MenuItem(name="mystery box", sizes=("regular",), prices={"regular": 0.0}, price=0.0)])
        builder = OrderBuilder(session, menu, on_rejection=rejections.append)

        result = builder.execute("add_item_to_order", {"name": "mystery box"})

        assert result.error == "item_not_priced"
        assert session.order.items == []

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            '{"size": "large"}',
            '{"name": ""}',
            '{"name": "soda", "quantity": 0}',
            '{"name": "soda", "quantity": "lots"}',
        ],
    )
    def test_malformed_arguments_leave_order_untouched(self, builder, session, rejections, raw):
        result = builder.execute("add_item_to_order", raw)

        assert result.ok is False
        assert result.error == "invalid_arguments"
        assert session.order.items == []
        assert rejections == ["invalid_arguments"]


class TestDeliveryAndAddress:

    def test_set_delivery_method(self, builder, session):
        result = builder.execute("set_delivery_method", {"method": " Pickup "})

        assert result.ok is True
        assert result.critical is True
        assert session.order.delivery_method == DeliveryMethod.PICKUP

    def test_zip_code_is_not_a_delivery_method(self, builder, session):
        result = builder.execute("set_delivery_method", {"method": "46031"})

        assert result.ok is False
        assert result.error == "numeric_delivery_method"
        assert session.order.delivery_method is None

    def test_unknown_delivery_method(self, builder, session):
        result = builder.execute("set_delivery_method", {"method": "drone"})

        assert result.error == "invalid_delivery_method"
        assert session.order.delivery_method is None

    def test_address_implies_delivery(self, builder, session):
        builder.execute("set_delivery_method", {"method": "pickup"})
        result = builder.execute("set_address", {"address": "12  Main   St, Syracuse"})

        assert result.ok is True
        assert session.order.address == "12 Main St, Syracuse"
        assert session.order.delivery_method == DeliveryMethod.DELIVERY

    def test_pickup_after_address_keeps_delivery(self, builder, session):
        builder.execute("set_address", {"address": "12 Main St"})
        result = builder.execute("set_delivery_method", {"method": "pickup"})

        assert result.ok is False
        assert result.error == "address_implies_delivery"
        assert session.order.delivery_method == DeliveryMethod.DELIVERY

    @pytest.mark.parametrize("address,error", [("   ", "empty_address"), ("46031", "incomplete_address"), ("13202-1234", "incomplete_address")])
    def test_incomplete_addresses_rejected(self, builder, session, address, error):
        result = builder.execute("set_address", {"address": address})

        assert result.error == error
        assert session.order.address is None
        assert session.order.delivery_method is None


class TestCustomerDetails:

    def test_customer_name(self, builder, session):
        result = builder.execute("set_customer_name", {"name": "  Maria  Lopez "})

        assert result.ok is True
        assert result.critical is True
        assert session.order.customer_name == "Maria Lopez"

    def test_empty_customer_name_rejected(self, builder, session):
        assert builder.execute("set_customer_name", {"name": "  "}).error == "empty_name"
        assert session.order.customer_name is None

    def test_customer_phone_normalized(self, builder, session):
        result = builder.execute("set_customer_phone", {"phone": "(315) 555-0199"})

        assert result.ok is True
        assert session.order.customer_phone == "3155550199"

    def test_invalid_phone_rejected(self, builder, session):
        assert builder.execute("set_customer_phone", {"phone": "555"}).error == "invalid_phone"
        assert session.order.customer_phone is None

    def test_payment_method_lowercased(self, builder, session):
        builder.execute("set_payment_method", {"method": "Card"})

        assert session.order.payment_method == "card"


class TestConfirmAndUnknown:

    def test_confirm_empty_order_still_marks_confirmed(self, builder, session):
        result = builder.execute("confirm_order", "{}")

        assert result.ok is True
        assert session.order.confirmed is True
        assert result.to_output()["order_summary"] == "No items yet"

    def test_confirm_order(self, builder, session):
        builder.execute("add_item_to_order", {"name": "soda", "quantity": 2})

        result = builder.execute("confirm_order", None)

        assert result.ok is True
        assert session.order.confirmed is True
        assert result.to_output()["confirmed"] is True

    def test_unknown_tool(self, builder, rejections):
        result = builder.execute("delete_everything", "{}")

        assert result.ok is False
        assert result.error == "unknown_tool:delete_everything"
        assert rejections == ["unknown_tool:delete_everything"]
