"""
Order Wire Codec

Converts orders to and from the camelCase JSON shape clients and
repositories see. Driven entirely by the field maps, so a new Order
attribute is either on the wire or the process refuses to start.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from order_engine.services.orders.entities import (
    Channel,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    to_money,
)
from order_engine.services.orders.field_map import (
    ORDER_FIELD_MAP,
    ORDER_ITEM_FIELD_MAP,
)


MONEY_FIELDS = frozenset({"total", "cash_received", "yape_amount", "card_amount"})
DATETIME_FIELDS = frozenset({
    "timestamp", "prep_start_time", "ready_time", "completed_time", "payment_completed_time",
})
ENUM_FIELDS = {
    "channel": Channel,
    "status": OrderStatus,
    "payment_method": PaymentMethod,
    "payment_status": PaymentStatus,
}


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def item_to_wire(item: OrderItem) -> dict:
    return {wire: _encode(getattr(item, attr)) for attr, wire in ORDER_ITEM_FIELD_MAP.items()}


def order_to_wire(order: Order) -> dict:
    payload = {}
    for attr, wire in ORDER_FIELD_MAP.items():
        value = getattr(order, attr)
        if attr == "items":
            payload[wire] = [item_to_wire(item) for item in value]
        else:
            payload[wire] = _encode(value)
    return payload


def item_from_wire(data: dict) -> OrderItem:
    values = {attr: data[wire] for attr, wire in ORDER_ITEM_FIELD_MAP.items() if wire in data}
    values["price"] = to_money(values["price"])
    return OrderItem(**values)


def order_from_wire(data: dict) -> Order:
    """
    Rebuild an Order from its wire form (as stored by repositories).

    Raises:
        KeyError: If id or channel is missing
        ValueError: If a money, enum or timestamp value is malformed
    """
    values = {}
    for attr, wire in ORDER_FIELD_MAP.items():
        if wire not in data:
            continue
        value = data[wire]
        if attr == "items":
            value = [item_from_wire(item) for item in value or []]
        elif value is None:
            pass
        elif attr in MONEY_FIELDS:
            value = to_money(value)
        elif attr in DATETIME_FIELDS:
            value = datetime.fromisoformat(value)
        elif attr in ENUM_FIELDS:
            value = ENUM_FIELDS[attr](value)
        values[attr] = value
    return Order(**values)
