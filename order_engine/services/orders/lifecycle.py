"""
Order Lifecycle

The status machine. Every status change, whether a staff action or the
payment auto-advance, goes through transition() so the same checks and
timestamp rules apply regardless of where the request came from.

    pending -> preparing -> ready -> completed
    pending | preparing | ready -> cancelled

Nothing leaves completed or cancelled.
"""

from datetime import datetime
from typing import Optional, Union

from order_engine.core.exceptions import (
    FieldViolation,
    InvalidTransition,
    TerminalStateError,
    ValidationError,
)
from order_engine.services.orders.entities import Order, OrderStatus, utcnow


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def allowed_targets(status: OrderStatus) -> frozenset[OrderStatus]:
    return TRANSITIONS[status]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def _later_of(now: datetime, floor: Optional[datetime]) -> datetime:
    # Keeps prep <= ready <= completed even if the clock steps backwards.
    if floor is not None and floor > now:
        return floor
    return now


def transition(order: Order, target: Union[OrderStatus, str], now: Optional[datetime] = None) -> Order:
    """
    Move order to target and return the new snapshot.

    Raises:
        TerminalStateError: If the order is already completed or cancelled
        InvalidTransition: If target is unknown or not reachable from the current status
        ValidationError: If advancing an order that has no items
    """
    if order.is_terminal:
        raise TerminalStateError(order.id, order.status.value)

    if not isinstance(target, OrderStatus):
        try:
            target = OrderStatus(target)
        except ValueError:
            raise InvalidTransition(order.status.value, str(target))

    if not can_transition(order.status, target):
        raise InvalidTransition(order.status.value, target.value)

    if target != OrderStatus.CANCELLED and not order.items:
        raise ValidationError.from_violations(
            [FieldViolation("items", f"cannot move order {order.id} to '{target.value}' without items")]
        )

    now = now or utcnow()
    updated = order.copy()
    updated.status = target

    if target == OrderStatus.PREPARING and updated.prep_start_time is None:
        updated.prep_start_time = _later_of(now, updated.timestamp)
    elif target == OrderStatus.READY and updated.ready_time is None:
        updated.ready_time = _later_of(now, updated.prep_start_time)
    elif target == OrderStatus.COMPLETED and updated.completed_time is None:
        updated.completed_time = _later_of(now, updated.ready_time)

    if updated.is_terminal:
        updated.can_modify = False
    return updated


def start_preparation(order: Order, now: Optional[datetime] = None) -> Order:
    return transition(order, OrderStatus.PREPARING, now)


def mark_ready(order: Order, now: Optional[datetime] = None) -> Order:
    return transition(order, OrderStatus.READY, now)


def complete(order: Order, now: Optional[datetime] = None) -> Order:
    """Delivered, picked up or served."""
    return transition(order, OrderStatus.COMPLETED, now)


def cancel(order: Order, now: Optional[datetime] = None) -> Order:
    """Payments and items stay on the order for the audit trail."""
    return transition(order, OrderStatus.CANCELLED, now)


def prep_minutes(order: Order, now: Optional[datetime] = None) -> Optional[int]:
    """Minutes spent in preparation so far (or until ready), None if never started."""
    if order.prep_start_time is None:
        return None
    end = order.ready_time or now or utcnow()
    return round((end - order.prep_start_time).total_seconds() / 60)


def is_delayed(order: Order, max_minutes: int = 30, now: Optional[datetime] = None) -> bool:
    if order.is_terminal:
        return False
    elapsed = (now or utcnow()) - order.timestamp
    return elapsed.total_seconds() / 60 > max_minutes
