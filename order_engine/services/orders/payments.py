"""
Payment Reconciler

Accumulates manual tenders (cash, yape, card) against an order's running
total and derives everything that depends on them: payment method,
payment status, change owed, and whether the order may still be edited.

Payment confirmation is attested by staff; no gateway is involved. The
accumulators only ever grow; there is no decrement operation.

Usage:
    outcome = apply_tender(order, Tender(cash=to_money(25)))
    outcome.order.payment_status   # PaymentStatus.PAID
    outcome.change                 # Decimal("5.00")
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from order_engine.core.exceptions import (
    FieldViolation,
    TerminalStateError,
    ValidationError,
)
from order_engine.services.orders import channel_policy, lifecycle
from order_engine.services.orders.entities import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Tender,
    TENDER_INSTRUMENTS,
    ZERO,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class PaymentOutcome:
    """
    Result of applying one tender.

    Attributes:
        order: The updated order (a new snapshot, never the input)
        change: Cash owed back to the customer; informational, not stored
        fully_paid: Whether the order is now paid in full
        auto_advanced: Whether payment moved the order into preparation
    """
    order: Order
    change: Decimal = ZERO
    fully_paid: bool = False
    auto_advanced: bool = False

    def to_dict(self) -> dict:
        return {
            "change": float(self.change),
            "fullyPaid": self.fully_paid,
            "autoAdvanced": self.auto_advanced,
        }


def payment_method_for(cash: Decimal, yape: Decimal, card: Decimal) -> PaymentMethod:
    """Classify by which instruments have ever received money."""
    used = [
        method
        for method, amount in ((PaymentMethod.CASH, cash), (PaymentMethod.YAPE, yape), (PaymentMethod.CARD, card))
        if amount > 0
    ]
    if not used:
        return PaymentMethod.PENDING
    if len(used) == 1:
        return used[0]
    return PaymentMethod.MIXED


def payment_status_for(
    cash: Decimal, yape: Decimal, card: Decimal, total: Decimal, has_items: bool = True
) -> PaymentStatus:
    """
    Paid exactly when the tendered amount covers the total, so an order of
    complimentary items is paid as soon as it exists.
    """
    tendered = cash + yape + card
    if tendered >= total:
        # An empty order with nothing tendered is waiting for items, not paid.
        if tendered == 0 and not has_items:
            return PaymentStatus.PENDING
        return PaymentStatus.PAID
    if tendered > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def change_for(order: Order) -> Decimal:
    """Change is only owed when cash was involved and the order is overpaid."""
    if order.payment_method not in (PaymentMethod.CASH, PaymentMethod.MIXED):
        return ZERO
    overpaid = order.tendered - order.total
    return overpaid if overpaid > 0 else ZERO


def remaining_for(order: Order) -> Decimal:
    remaining = order.total - order.tendered
    return remaining if remaining > 0 else ZERO


def reconcile(order: Order, now: Optional[datetime] = None) -> None:
    """
    Recompute every payment-derived field of order in place.

    Called when an order is created and after tenders and item changes,
    since each of them sets or moves the tendered/total balance.
    """
    order.payment_method = payment_method_for(order.cash_received, order.yape_amount, order.card_amount)
    order.payment_status = payment_status_for(
        order.cash_received, order.yape_amount, order.card_amount, order.total,
        has_items=bool(order.items),
    )
    if order.payment_status == PaymentStatus.PAID:
        order.can_modify = False
        if order.payment_completed_time is None:
            order.payment_completed_time = now or utcnow()


def validate_tender(tender: Tender) -> list[FieldViolation]:
    violations = []
    for method, attribute in TENDER_INSTRUMENTS.items():
        amount = tender.for_instrument(method)
        if amount < 0:
            violations.append(
                FieldViolation(attribute, f"{method.value} amount cannot be negative")
            )
    if not violations and tender.amount <= 0:
        violations.append(FieldViolation("amount", "tender must include a positive amount"))
    return violations


def apply_tender(order: Order, tender: Tender, now: Optional[datetime] = None) -> PaymentOutcome:
    """
    Add a tender to the order's accumulators.

    Delivery and takeaway orders that become fully paid while still pending
    move straight into preparation; dine-in orders keep their status.

    Raises:
        TerminalStateError: If the order is completed or cancelled
        ValidationError: Bad amounts, no items, already paid, or the channel's
            contact fields are missing when payment would start preparation
    """
    if order.is_terminal:
        raise TerminalStateError(order.id, order.status.value)

    violations = validate_tender(tender)
    if violations:
        raise ValidationError.from_violations(violations)
    if not order.items:
        raise ValidationError.from_violations([FieldViolation("items", "cannot take payment on an order without items")])
    if order.payment_status == PaymentStatus.PAID:
        raise ValidationError.from_violations([FieldViolation("paymentStatus", f"order {order.id} is already paid")])

    now = now or utcnow()
    updated = order.copy()
    updated.cash_received += tender.cash
    updated.yape_amount += tender.yape
    updated.card_amount += tender.card
    reconcile(updated, now)

    fully_paid = updated.payment_status == PaymentStatus.PAID
    auto_advanced = False
    rules = channel_policy.rules_for(updated.channel)
    if fully_paid and rules.auto_advances_on_payment and updated.status == OrderStatus.PENDING:
        violations = channel_policy.validate(updated)
        if violations:
            raise ValidationError.from_violations(violations)
        updated = lifecycle.start_preparation(updated, now)
        auto_advanced = True

    change = change_for(updated)
    logger.debug(
        f"Tender {tender.amount} on {order.id}: {updated.payment_status.value} "
        f"via {updated.payment_method.value}, change {change}"
    )
    return PaymentOutcome(
        order=updated,
        change=change,
        fully_paid=fully_paid,
        auto_advanced=auto_advanced,
    )
