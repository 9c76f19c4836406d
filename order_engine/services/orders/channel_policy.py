"""
Channel Policy

Which contact fields each sales channel requires, and whether the channel
expects payment up front. Everything here is a pure function of the order
it is given; nothing mutates except apply_defaults, which only fills the
dine-in customer name.

    local     no contact fields, payment may be deferred
    delivery  customerName + customerPhone, payment up front
    takeaway  customerName, payment up front
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from order_engine.core.exceptions import FieldViolation
from order_engine.services.orders.entities import Channel, Order, OrderItem
from order_engine.services.orders.field_map import wire_name


@dataclass(frozen=True)
class ChannelRules:
    required_fields: tuple[str, ...]
    optional_fields: tuple[str, ...]
    payment_upfront_required: bool

    @property
    def auto_advances_on_payment(self) -> bool:
        return self.payment_upfront_required


CHANNEL_RULES: dict[Channel, ChannelRules] = {
    Channel.LOCAL: ChannelRules(
        required_fields=(),
        optional_fields=("customer_name", "customer_phone", "table_number"),
        payment_upfront_required=False,
    ),
    Channel.DELIVERY: ChannelRules(
        required_fields=("customer_name", "customer_phone"),
        optional_fields=("delivery_address",),
        payment_upfront_required=True,
    ),
    Channel.TAKEAWAY: ChannelRules(
        required_fields=("customer_name",),
        optional_fields=("customer_phone",),
        payment_upfront_required=True,
    ),
}


def rules_for(channel: Channel) -> ChannelRules:
    return CHANNEL_RULES[channel]


def _is_blank(value) -> bool:
    return not isinstance(value, str) or not value.strip()


def validate(order: Order) -> list[FieldViolation]:
    """
    Check the channel's required contact fields.

    Returns:
        Empty list if every required field is a non-empty string
    """
    rules = rules_for(order.channel)
    violations = []
    for attribute in rules.required_fields:
        if _is_blank(getattr(order, attribute)):
            field = wire_name(attribute)
            violations.append(
                FieldViolation(field, f"channel '{order.channel.value}' requires {field}")
            )
    return violations


def validate_items(items: Iterable[OrderItem], start_index: int = 0) -> list[FieldViolation]:
    """Shape checks for item tuples; menu existence is not our concern."""
    violations = []
    for index, item in enumerate(items, start=start_index):
        prefix = f"items[{index}]"
        if _is_blank(item.name):
            violations.append(FieldViolation(f"{prefix}.name", f"{prefix}: name is required"))
        if not isinstance(item.price, Decimal) or item.price < 0:
            violations.append(
                FieldViolation(f"{prefix}.price", f"{prefix}: price must be zero or greater")
            )
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity < 1:
            violations.append(
                FieldViolation(f"{prefix}.quantity", f"{prefix}: quantity must be a whole number of at least 1")
            )
        if _is_blank(item.category):
            violations.append(FieldViolation(f"{prefix}.category", f"{prefix}: category is required"))
    return violations


def validate_has_items(order: Order) -> list[FieldViolation]:
    if not order.items:
        return [FieldViolation("items", "order has no items")]
    return []


def default_customer_name(order: Order, placeholder: str) -> str:
    if not _is_blank(order.table_number):
        return f"Mesa {order.table_number.strip()}"
    return placeholder


def apply_defaults(order: Order, placeholder: str, previous: Optional[Order] = None) -> None:
    """
    Give dine-in orders a display name when the customer left it blank.

    With previous (the order before an edit), a name that was itself the
    default and was not changed follows the new table number.
    """
    if order.channel != Channel.LOCAL:
        return
    kept_default = (
        previous is not None
        and order.customer_name == previous.customer_name
        and previous.customer_name == default_customer_name(previous, placeholder)
    )
    if _is_blank(order.customer_name) or kept_default:
        order.customer_name = default_customer_name(order, placeholder)
