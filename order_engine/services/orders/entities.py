"""
Order Domain Entities

Plain dataclasses for the order aggregate. Committed Order instances are
treated as immutable snapshots: the store copies, mutates the copy, and
swaps it in, so a reader never observes items and total disagreeing.

Money is Decimal quantized to cents everywhere in the domain.
"""

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class Channel(str, Enum):
    """Sales context of an order."""
    LOCAL = "local"
    DELIVERY = "delivery"
    TAKEAWAY = "takeaway"


class OrderStatus(str, Enum):
    """Kitchen-facing order workflow."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMethod(str, Enum):
    CASH = "cash"
    YAPE = "yape"
    CARD = "card"
    MIXED = "mixed"
    PENDING = "pending"


# Instruments that can actually receive money, with the accumulator each feeds.
TENDER_INSTRUMENTS: dict[PaymentMethod, str] = {
    PaymentMethod.CASH: "cash_received",
    PaymentMethod.YAPE: "yape_amount",
    PaymentMethod.CARD: "card_amount",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value: Any) -> Decimal:
    """
    Convert a number or numeric string to a cent-quantized Decimal.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError(f"not a monetary amount: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"not a monetary amount: {value!r}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValueError(f"not a monetary amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"not a monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def new_order_id() -> str:
    return f"order-{uuid4().hex[:12]}"


def new_item_id() -> str:
    return f"item-{uuid4().hex[:10]}"


@dataclass
class OrderItem:
    """A line on the order. Price is per unit."""
    name: str
    price: Decimal
    quantity: int
    category: str = "general"
    id: str = field(default_factory=new_item_id)

    @property
    def line_total(self) -> Decimal:
        return (self.price * self.quantity).quantize(CENT)


@dataclass(frozen=True)
class Tender:
    """Money applied toward an order in one request, split by instrument."""
    cash: Decimal = ZERO
    yape: Decimal = ZERO
    card: Decimal = ZERO

    @property
    def amount(self) -> Decimal:
        return self.cash + self.yape + self.card

    def for_instrument(self, method: PaymentMethod) -> Decimal:
        return {
            PaymentMethod.CASH: self.cash,
            PaymentMethod.YAPE: self.yape,
            PaymentMethod.CARD: self.card,
        }[method]


@dataclass
class Order:
    """
    The order aggregate.

    Derived fields (total, payment_method, payment_status, can_modify) are
    recomputed by the services that mutate the order and are never set
    directly from client input.
    """
    id: str
    channel: Channel
    items: list[OrderItem] = field(default_factory=list)
    total: Decimal = ZERO
    payment_method: PaymentMethod = PaymentMethod.PENDING
    cash_received: Decimal = ZERO
    yape_amount: Decimal = ZERO
    card_amount: Decimal = ZERO
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.PENDING
    can_modify: bool = True
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    delivery_address: Optional[str] = None
    table_number: Optional[str] = None
    manager_name: Optional[str] = None
    notes: Optional[str] = None
    estimated_time: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)
    prep_start_time: Optional[datetime] = None
    ready_time: Optional[datetime] = None
    completed_time: Optional[datetime] = None
    payment_completed_time: Optional[datetime] = None
    created_by: Optional[str] = None
    version: int = 0

    @property
    def tendered(self) -> Decimal:
        return self.cash_received + self.yape_amount + self.card_amount

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self) -> "Order":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"<Order {self.id} - {self.channel.value} - {self.status.value} - {self.total}>"


def compute_total(items: list[OrderItem]) -> Decimal:
    """Sum of price x quantity over the items."""
    return sum((item.line_total for item in items), ZERO).quantize(CENT)


@dataclass
class DailyStats:
    """Per-day sales summary for the reports view."""
    day: str
    total_orders: int = 0
    total_sales: Decimal = ZERO
    cash_amount: Decimal = ZERO
    yape_amount: Decimal = ZERO
    card_amount: Decimal = ZERO
    orders_by_channel: dict[str, int] = field(
        default_factory=lambda: {c.value: 0 for c in Channel}
    )
    orders_by_status: dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in OrderStatus}
    )
    orders_by_payment: dict[str, int] = field(
        default_factory=lambda: {m.value: 0 for m in PaymentMethod}
    )

    def to_dict(self) -> dict:
        return {
            "day": self.day,
            "totalOrders": self.total_orders,
            "totalSales": float(self.total_sales),
            "cashAmount": float(self.cash_amount),
            "yapeAmount": float(self.yape_amount),
            "cardAmount": float(self.card_amount),
            "ordersByChannel": dict(self.orders_by_channel),
            "ordersByStatus": dict(self.orders_by_status),
            "ordersByPayment": dict(self.orders_by_payment),
        }
