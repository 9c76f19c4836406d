"""
Order Store

The single server-owned source of truth for orders.

Concurrency model:
    - One asyncio.Lock per order id. Every mutation of an order runs inside
      that order's lock, so two tenders can never lose an increment. Orders
      with different ids never wait on each other.
    - Mutations copy the committed snapshot, change the copy, and swap it
      in. Readers always see a whole snapshot (items and total agree).
    - The commit re-checks the stored version; a mismatch is logged and
      rejected with ConcurrencyConflict instead of being merged.
    - Persistence and broadcast run after the lock is released. Repository
      writes are retried with exponential backoff; a write that still fails
      surfaces as PersistenceError but the in-memory commit stands, and the
      next retry of the same request id re-attempts the write.

Idempotency:
    Every mutation accepts an optional request_id. Results are remembered
    per (operation, order id, request id) in a bounded LRU, and a repeat
    returns the remembered result without applying anything again. Payment
    requests must carry one unless REQUIRE_PAYMENT_REQUEST_ID is off.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

import backoff

from order_engine.core.config import Settings, get_settings
from order_engine.core.exceptions import (
    ConcurrencyConflict,
    FieldViolation,
    NotFound,
    PersistenceError,
    RepositoryUnavailable,
    TerminalStateError,
    ValidationError,
)
from order_engine.services.auth.base import Identity
from order_engine.services.orders import channel_policy, lifecycle, payments
from order_engine.services.orders.codec import order_to_wire
from order_engine.services.orders.entities import (
    Channel,
    DailyStats,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Tender,
    compute_total,
    new_order_id,
    utcnow,
)
from order_engine.services.orders.field_map import ORDER_FIELD_MAP, wire_name
from order_engine.services.orders.payments import PaymentOutcome
from order_engine.services.persistence.base import BaseOrderRepository
from order_engine.services.realtime.broadcaster import BaseBroadcaster

logger = logging.getLogger(__name__)


# Contact and kitchen fields that update_details may change.
EDITABLE_DETAILS = frozenset({
    "customer_name",
    "customer_phone",
    "delivery_address",
    "table_number",
    "manager_name",
    "notes",
    "estimated_time",
})

_MISSING = object()


class OrderStore:
    """
    Args:
        repository: Write-through persistence
        broadcaster: Fan-out for committed changes (None disables broadcast)
        settings: Defaults to the process settings
        clock: Source of "now" (overridable in tests)
    """

    def __init__(
        self,
        repository: BaseOrderRepository,
        broadcaster: Optional[BaseBroadcaster] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.broadcaster = broadcaster
        self.settings = settings or get_settings()
        self.clock = clock

        self._orders: dict[str, Order] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._results: OrderedDict[tuple, Any] = OrderedDict()
        self._unsaved: set[str] = set()

        retry = backoff.on_exception(
            backoff.expo,
            RepositoryUnavailable,
            max_tries=self.settings.persistence_max_tries,
            max_value=self.settings.persistence_max_backoff_seconds,
            logger=logger,
        )
        self._save_with_retry = retry(self.repository.save)
        self._delete_with_retry = retry(self.repository.delete)
        self._list_active_with_retry = retry(self.repository.list_active)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found")
        return order

    def business_day(self, moment: datetime) -> date:
        offset = timezone(timedelta(hours=self.settings.utc_offset_hours))
        return moment.astimezone(offset).date()

    def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        channel: Optional[Channel] = None,
        day: Optional[date] = None,
        active_only: bool = False,
        delayed_only: bool = False,
    ) -> list[Order]:
        """Newest first. Works on a copy of the index, never blocks writers."""
        now = self.clock()
        orders = list(self._orders.values())
        if status is not None:
            orders = [o for o in orders if o.status == status]
        if channel is not None:
            orders = [o for o in orders if o.channel == channel]
        if day is not None:
            orders = [o for o in orders if self.business_day(o.timestamp) == day]
        if active_only:
            orders = [o for o in orders if not o.is_terminal]
        if delayed_only:
            orders = [
                o for o in orders
                if lifecycle.is_delayed(o, self.settings.order_delay_minutes, now)
            ]
        return sorted(orders, key=lambda o: (o.timestamp, o.id), reverse=True)

    def snapshot(self, limit: Optional[int] = None) -> list[dict]:
        """The get_orders payload: wire form of the most recent orders."""
        limit = limit or self.settings.snapshot_limit
        return [order_to_wire(order) for order in self.list_orders()[:limit]]

    def daily_stats(self, day: Optional[date] = None) -> DailyStats:
        """
        Sales summary for one business day (today by default).

        Sales and per-instrument amounts only count completed orders; the
        counters include every order placed that day.
        """
        day = day or self.business_day(self.clock())
        stats = DailyStats(day=day.isoformat())

        for order in self.list_orders(day=day):
            stats.total_orders += 1
            stats.orders_by_channel[order.channel.value] += 1
            stats.orders_by_status[order.status.value] += 1
            stats.orders_by_payment[order.payment_method.value] += 1

            if order.status != OrderStatus.COMPLETED:
                continue
            stats.total_sales += order.total
            if order.payment_method == PaymentMethod.CASH:
                stats.cash_amount += order.total
            elif order.payment_method == PaymentMethod.YAPE:
                stats.yape_amount += order.total
            elif order.payment_method == PaymentMethod.CARD:
                stats.card_amount += order.total
            elif order.payment_method == PaymentMethod.MIXED:
                stats.cash_amount += order.cash_received - payments.change_for(order)
                stats.yape_amount += order.yape_amount
                stats.card_amount += order.card_amount
        return stats

    def __len__(self) -> int:
        return len(self._orders)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_order(
        self,
        channel: Union[Channel, str],
        items: list[OrderItem],
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        delivery_address: Optional[str] = None,
        table_number: Optional[str] = None,
        notes: Optional[str] = None,
        estimated_time: Optional[int] = None,
        manager_name: Optional[str] = None,
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> Order:
        """
        Validate and store a new order, then announce it as order_created.

        Raises:
            ValidationError: Unknown channel, bad or missing items, or a
                required contact field left blank. No order is created.
        """
        key = self._key("create_order", "", request_id)
        cached = self._recall(key)
        if cached is not _MISSING:
            await self._flush_if_unsaved(cached.id)
            return cached

        try:
            channel = Channel(channel)
        except ValueError:
            raise ValidationError.from_violations(
                [FieldViolation("channel", f"unknown channel '{channel}'")]
            )

        order = Order(
            id=new_order_id(),
            channel=channel,
            items=list(items),
            customer_name=customer_name,
            customer_phone=customer_phone,
            delivery_address=delivery_address,
            table_number=table_number,
            notes=notes,
            estimated_time=estimated_time,
            manager_name=manager_name or (actor.name if actor else None),
            created_by=actor.user_id if actor else None,
            timestamp=self.clock(),
            version=1,
        )
        channel_policy.apply_defaults(order, self.settings.local_customer_placeholder)

        violations = (
            channel_policy.validate_has_items(order)
            + channel_policy.validate_items(order.items)
            + self._validate_estimated_time(order.estimated_time)
            + channel_policy.validate(order)
        )
        if violations:
            raise ValidationError.from_violations(violations)
        order.total = compute_total(order.items)
        payments.reconcile(order, order.timestamp)

        async with self._lock_for(order.id):
            cached = self._recall(key)
            if cached is not _MISSING:
                return cached
            self._orders[order.id] = order
            self._remember(key, order)

        logger.info(f"Order {order.id} created ({order.channel.value}, total {order.total})")
        await self._persist_then_announce(order, "order_created", order_to_wire(order))
        return order

    async def add_items(
        self,
        order_id: str,
        items: list[OrderItem],
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> Order:
        def change(current: Order, now: datetime):
            self._require_modifiable(current)
            violations = channel_policy.validate_items(items, start_index=len(current.items))
            if not items:
                violations.insert(0, FieldViolation("items", "no items to add"))
            if violations:
                raise ValidationError.from_violations(violations)
            updated = current.copy()
            updated.items.extend(items)
            updated.total = compute_total(updated.items)
            payments.reconcile(updated, now)
            return updated, updated

        return await self._mutate("add_items", order_id, request_id, change, actor)

    async def remove_item(
        self,
        order_id: str,
        item_id: str,
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> Order:
        """Empty orders are allowed; they just cannot advance or take payment."""
        def change(current: Order, now: datetime):
            self._require_modifiable(current)
            remaining = [item for item in current.items if item.id != item_id]
            if len(remaining) == len(current.items):
                raise NotFound(f"item {item_id} not found on order {order_id}")
            updated = current.copy()
            updated.items = [item for item in updated.items if item.id != item_id]
            updated.total = compute_total(updated.items)
            payments.reconcile(updated, now)
            return updated, updated

        return await self._mutate("remove_item", order_id, request_id, change, actor)

    async def update_details(
        self,
        order_id: str,
        changes: dict[str, Any],
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> Order:
        """
        Change contact/kitchen fields of an open order.

        Allowed after payment; only terminal orders are frozen. Required
        channel fields cannot be blanked.
        """
        unknown = sorted(set(changes) - EDITABLE_DETAILS)
        if unknown:
            raise ValidationError.from_violations(
                [FieldViolation(ORDER_FIELD_MAP.get(f, f), f"{ORDER_FIELD_MAP.get(f, f)} cannot be changed here")
                 for f in unknown]
            )

        def change(current: Order, now: datetime):
            updated = current.copy()
            for attribute, value in changes.items():
                setattr(updated, attribute, value)
            channel_policy.apply_defaults(updated, self.settings.local_customer_placeholder, previous=current)
            violations = self._validate_estimated_time(updated.estimated_time) + channel_policy.validate(updated)
            if violations:
                raise ValidationError.from_violations(violations)
            return updated, updated

        return await self._mutate("update_details", order_id, request_id, change, actor)

    async def apply_tender(
        self,
        order_id: str,
        tender: Tender,
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> PaymentOutcome:
        """
        Record money received. Tenders add up; they are never replaced.

        Raises:
            ValidationError: Missing request id (when required) or any
                payment rule from payments.apply_tender
        """
        if request_id is None and self.settings.require_payment_request_id:
            raise ValidationError.from_violations(
                [FieldViolation("requestId", "payment requests must carry a requestId")]
            )

        def change(current: Order, now: datetime):
            outcome = payments.apply_tender(current, tender, now)
            return outcome.order, outcome

        return await self._mutate("apply_tender", order_id, request_id, change, actor)

    async def change_status(
        self,
        order_id: str,
        status: Union[OrderStatus, str],
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> Order:
        def change(current: Order, now: datetime):
            updated = lifecycle.transition(current, status, now)
            return updated, updated

        return await self._mutate("change_status", order_id, request_id, change, actor)

    async def cancel_order(
        self,
        order_id: str,
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> Order:
        """Tenders and items stay on the cancelled order; refunds are handled elsewhere."""
        def change(current: Order, now: datetime):
            updated = lifecycle.cancel(current, now)
            return updated, updated

        return await self._mutate("cancel_order", order_id, request_id, change, actor)

    async def delete_order(
        self,
        order_id: str,
        actor: Optional[Identity] = None,
        request_id: Optional[str] = None,
    ) -> Order:
        """Remove an order outright (any status). Returns the removed snapshot."""
        key = self._key("delete_order", order_id, request_id)
        cached = self._recall(key)
        if cached is not _MISSING:
            return cached

        try:
            async with self._lock_for(order_id):
                cached = self._recall(key)
                if cached is not _MISSING:
                    return cached
                removed = self.get_order(order_id)
                del self._orders[order_id]
                self._unsaved.discard(order_id)
                self._remember(key, removed)
        finally:
            self._release_lock_if_gone(order_id)

        logger.info(f"Order {order_id} deleted by {actor.name if actor else 'system'}")
        try:
            await self._delete_with_retry(order_id)
        except RepositoryUnavailable as e:
            logger.error(f"Could not delete order {order_id} from repository: {e}")
            raise PersistenceError(f"order {order_id} was deleted but could not be saved; retry later")
        finally:
            await self._announce(
                "order_deleted",
                {
                    "orderId": order_id,
                    "deletedBy": actor.name if actor else None,
                    "timestamp": self.clock().isoformat(),
                },
            )
        return removed

    async def hydrate(self) -> int:
        """Load active orders from the repository; returns how many were added."""
        try:
            orders = await self._list_active_with_retry()
        except RepositoryUnavailable as e:
            raise PersistenceError(f"could not load active orders: {e}")

        added = 0
        for order in orders:
            if order.id not in self._orders:
                self._orders[order.id] = order
                added += 1
        logger.info(f"Hydrated {added} active orders from {self.repository.provider_name}")
        return added

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = self._locks[order_id] = asyncio.Lock()
        return lock

    def _release_lock_if_gone(self, order_id: str) -> None:
        # Callers still waiting on the old lock will find the order missing.
        if order_id not in self._orders:
            self._locks.pop(order_id, None)

    @staticmethod
    def _key(operation: str, order_id: str, request_id: Optional[str]) -> Optional[tuple]:
        if request_id is None:
            return None
        return (operation, order_id, request_id)

    def _recall(self, key: Optional[tuple]) -> Any:
        if key is None or key not in self._results:
            return _MISSING
        self._results.move_to_end(key)
        logger.info(f"Duplicate request {key[2]} for {key[0]} {key[1]}; returning previous result")
        return self._results[key]

    def _remember(self, key: Optional[tuple], result: Any) -> None:
        if key is None:
            return
        self._results[key] = result
        while len(self._results) > self.settings.idempotency_cache_size:
            self._results.popitem(last=False)

    @staticmethod
    def _require_modifiable(order: Order) -> None:
        if not order.can_modify:
            raise ValidationError.from_violations(
                [FieldViolation(wire_name("can_modify"), f"order {order.id} is paid and its items can no longer change")]
            )

    @staticmethod
    def _validate_estimated_time(value: Any) -> list[FieldViolation]:
        if value is None:
            return []
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return [FieldViolation(wire_name("estimated_time"), "estimatedTime must be a whole number of minutes")]
        return []

    def _commit(self, current: Order, updated: Order) -> Order:
        stored = self._orders.get(current.id)
        found = stored.version if stored is not None else -1
        if found != current.version:
            logger.error(
                f"Concurrency conflict on {current.id}: read v{current.version}, found v{found}"
            )
            raise ConcurrencyConflict(current.id, current.version, found)
        updated.version = current.version + 1
        self._orders[current.id] = updated
        return updated

    async def _mutate(
        self,
        operation: str,
        order_id: str,
        request_id: Optional[str],
        change: Callable[[Order, datetime], tuple[Order, Any]],
        actor: Optional[Identity],
    ) -> Any:
        key = self._key(operation, order_id, request_id)
        cached = self._recall(key)
        if cached is not _MISSING:
            await self._flush_if_unsaved(order_id)
            return cached

        try:
            async with self._lock_for(order_id):
                cached = self._recall(key)
                if cached is not _MISSING:
                    return cached
                current = self.get_order(order_id)
                if current.is_terminal:
                    raise TerminalStateError(current.id, current.status.value)
                updated, result = change(current, self.clock())
                self._commit(current, updated)
                self._remember(key, result)
        finally:
            self._release_lock_if_gone(order_id)

        if updated.status != current.status:
            event = "order_status_changed"
            payload = {
                "orderId": updated.id,
                "previousStatus": current.status.value,
                "newStatus": updated.status.value,
                "changedBy": actor.name if actor else None,
                "timestamp": self.clock().isoformat(),
                "order": order_to_wire(updated),
            }
            logger.info(f"Order {order_id}: {current.status.value} → {updated.status.value}")
        else:
            event = "order_updated"
            payload = order_to_wire(updated)
            logger.debug(f"Order {order_id} updated by {operation} (v{updated.version})")

        await self._persist_then_announce(updated, event, payload)
        return result

    async def _persist_then_announce(self, order: Order, event: str, payload: dict) -> None:
        try:
            await self._persist(order)
        finally:
            await self._announce(event, payload)

    async def _persist(self, order: Order) -> None:
        self._unsaved.add(order.id)
        try:
            await self._save_with_retry(order)
        except RepositoryUnavailable as e:
            logger.error(f"Giving up saving order {order.id} v{order.version}: {e}")
            raise PersistenceError(
                f"order {order.id} was updated but could not be saved; retry with the same requestId"
            )
        # A newer version may have been committed meanwhile; it is still unsaved.
        latest = self._orders.get(order.id)
        if latest is None or latest.version <= order.version:
            self._unsaved.discard(order.id)

    async def _flush_if_unsaved(self, order_id: str) -> None:
        if order_id in self._unsaved and order_id in self._orders:
            await self._persist(self._orders[order_id])

    async def _announce(self, event: str, payload: dict) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.publish(event, payload)
