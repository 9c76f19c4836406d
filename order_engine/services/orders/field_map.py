"""
Order Field Mapping

Single source of truth for the names an order field has on the wire. The
table must list every Order attribute exactly once; the check below runs
at import so an added attribute without a wire name stops the service
from starting instead of being dropped from every payload.
"""

import dataclasses

from order_engine.services.orders.entities import Order, OrderItem


ORDER_FIELD_MAP: dict[str, str] = {
    "id": "id",
    "channel": "channel",
    "items": "items",
    "total": "total",
    "payment_method": "paymentMethod",
    "cash_received": "cashReceived",
    "yape_amount": "yapeAmount",
    "card_amount": "cardAmount",
    "payment_status": "paymentStatus",
    "status": "status",
    "can_modify": "canModify",
    "customer_name": "customerName",
    "customer_phone": "customerPhone",
    "delivery_address": "deliveryAddress",
    "table_number": "tableNumber",
    "manager_name": "managerName",
    "notes": "notes",
    "estimated_time": "estimatedTime",
    "timestamp": "timestamp",
    "prep_start_time": "prepStartTime",
    "ready_time": "readyTime",
    "completed_time": "completedTime",
    "payment_completed_time": "paymentCompletedTime",
    "created_by": "createdBy",
    "version": "version",
}

ORDER_ITEM_FIELD_MAP: dict[str, str] = {
    "id": "id",
    "name": "name",
    "price": "price",
    "quantity": "quantity",
    "category": "category",
}


def check_field_map(cls: type, mapping: dict[str, str]) -> None:
    """Raise RuntimeError unless mapping covers exactly the dataclass fields of cls."""
    attributes = {f.name for f in dataclasses.fields(cls)}
    missing = sorted(attributes - mapping.keys())
    unknown = sorted(mapping.keys() - attributes)
    if missing or unknown:
        raise RuntimeError(
            f"{cls.__name__} field map out of date (missing={missing}, unknown={unknown})"
        )
    wire_names = list(mapping.values())
    if len(set(wire_names)) != len(wire_names):
        raise RuntimeError(f"{cls.__name__} field map has duplicate wire names")


check_field_map(Order, ORDER_FIELD_MAP)
check_field_map(OrderItem, ORDER_ITEM_FIELD_MAP)

WIRE_TO_ORDER_FIELD: dict[str, str] = {wire: attr for attr, wire in ORDER_FIELD_MAP.items()}


def wire_name(attribute: str) -> str:
    return ORDER_FIELD_MAP[attribute]
