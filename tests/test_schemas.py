import dataclasses
from decimal import Decimal

import pytest

from order_engine.core.exceptions import ValidationError
from order_engine.schemas import (
    ChangeStatusRequest,
    CreateOrderRequest,
    InboundFrame,
    OrderItemIn,
    PaymentRequest,
    UpdateOrderRequest,
    parse,
    resolve_items,
)
from order_engine.services.orders.codec import order_from_wire, order_to_wire
from order_engine.services.orders.entities import Channel, Order, OrderItem, PaymentStatus, compute_total
from order_engine.services.orders.field_map import ORDER_FIELD_MAP, check_field_map

from .conftest import item


class TestFieldMap:
    def test_covers_every_order_attribute(self):
        assert set(ORDER_FIELD_MAP) == {f.name for f in dataclasses.fields(Order)}

    def test_missing_attribute_fails(self):
        @dataclasses.dataclass
        class Extended(Order):
            loyalty_points: int = 0

        with pytest.raises(RuntimeError, match="loyalty_points"):
            check_field_map(Extended, ORDER_FIELD_MAP)

    def test_duplicate_wire_names_fail(self):
        @dataclasses.dataclass
        class Pair:
            a: int
            b: int

        with pytest.raises(RuntimeError, match="duplicate"):
            check_field_map(Pair, {"a": "x", "b": "x"})


class TestCodec:
    def test_wire_form_is_camel_case(self):
        items = [item(quantity=2)]
        order = Order(id="order-1", channel=Channel.DELIVERY, items=items, total=compute_total(items),
                      customer_name="Ana", customer_phone="987654321")
        wire = order_to_wire(order)

        assert wire["customerPhone"] == "987654321"
        assert wire["total"] == 20.0
        assert wire["paymentStatus"] == "pending"
        assert wire["items"][0]["quantity"] == 2
        assert "customer_phone" not in wire

    def test_decoding_restores_types(self):
        items = [item(price="13.00")]
        order = Order(id="order-1", channel=Channel.LOCAL, items=items, total=compute_total(items),
                      cash_received=Decimal("5.50"), payment_status=PaymentStatus.PARTIAL, version=3)
        restored = order_from_wire(order_to_wire(order))

        assert restored == order


class TestRequests:
    def test_create_accepts_numeric_phone_and_table(self):
        request = parse(CreateOrderRequest, {"channel": "local", "tableNumber": 4, "customerPhone": 987654321})
        assert request.table_number == "4"
        assert request.customer_phone == "987654321"

    def test_missing_order_id(self):
        with pytest.raises(ValidationError) as e:
            parse(ChangeStatusRequest, {"status": "ready"})
        assert e.value.errors[0].field == "orderId"

    def test_status_alias(self):
        request = parse(ChangeStatusRequest, {"orderId": "order-1", "newStatus": "ready"})
        assert request.status == "ready"

    def test_payment_aliases(self):
        request = parse(PaymentRequest, {"orderId": "order-1", "cashReceived": 25, "yape": "4.5"})
        tender = request.to_tender()
        assert tender.cash == Decimal("25.00")
        assert tender.yape == Decimal("4.50")
        assert tender.card == Decimal("0.00")

    def test_payment_amount_must_be_numeric(self):
        request = parse(PaymentRequest, {"orderId": "order-1", "cash": "lots"})
        with pytest.raises(ValidationError, match="cash must be a number"):
            request.to_tender()

    def test_update_only_reports_sent_fields(self):
        request = parse(UpdateOrderRequest, {"orderId": "order-1", "notes": "sin ají", "customerPhone": None})
        assert request.changes() == {"notes": "sin ají", "customer_phone": None}

    def test_frame_request_id_coerced(self):
        frame = parse(InboundFrame, {"event": "get_orders", "requestId": 7})
        assert frame.request_id == "7"


class TestResolveItems:
    async def test_menu_reference(self, catalog):
        [resolved] = await resolve_items([OrderItemIn(menuItemId="choripapa", quantity=2)], catalog)
        assert resolved.name == "Choripapa"
        assert resolved.price == Decimal("13.00")
        assert resolved.category == "salchipapas"
        assert resolved.quantity == 2

    async def test_full_tuple(self, catalog):
        [resolved] = await resolve_items(
            [OrderItemIn(name="Especial", price="12.5", quantity=1.0)], catalog
        )
        assert resolved.price == Decimal("12.50")
        assert resolved.quantity == 1
        assert resolved.category == "general"

    async def test_unknown_and_unavailable_menu_items(self, catalog):
        await catalog.set_availability("agua", False)
        with pytest.raises(ValidationError) as e:
            await resolve_items(
                [OrderItemIn(menuItemId="ceviche", quantity=1), OrderItemIn(menuItemId="agua", quantity=1)],
                catalog,
                start_index=2,
            )
        assert [v.field for v in e.value.errors] == ["items[2].menuItemId", "items[3].menuItemId"]

    async def test_missing_price(self, catalog):
        with pytest.raises(ValidationError, match="price is required"):
            await resolve_items([OrderItemIn(name="Especial", quantity=1)], catalog)

    async def test_resolved_items_are_order_items(self, catalog):
        resolved = await resolve_items([OrderItemIn(menuItemId="papa", quantity=1)], catalog)
        assert all(isinstance(i, OrderItem) for i in resolved)
