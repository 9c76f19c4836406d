import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from order_engine.core.config import Settings
from order_engine.core.exceptions import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    PersistenceError,
    TerminalStateError,
    ValidationError,
)
from order_engine.services.orders.entities import (
    Channel,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Tender,
    compute_total,
)
from order_engine.services.orders.store import OrderStore
from order_engine.services.persistence import InMemoryOrderRepository
from order_engine.services.realtime.broadcaster import ALL_USERS

from .conftest import STAFF, FakeConnection, item


def cash(amount: str) -> Tender:
    return Tender(cash=Decimal(amount))


def yape(amount: str) -> Tender:
    return Tender(yape=Decimal(amount))


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def listener(broadcaster) -> FakeConnection:
    connection = FakeConnection()
    broadcaster.register("sess-listener", connection)
    broadcaster.join("sess-listener", ALL_USERS)
    return connection


async def local_order(store: OrderStore, price: str = "10.00", quantity: int = 2, **fields):
    return await store.create_order(
        Channel.LOCAL, [item(price=price, quantity=quantity)], actor=STAFF, **fields
    )


class TestCreateOrder:
    async def test_local_order(self, store):
        """Scenario A."""
        order = await local_order(store, table_number="4")

        assert order.total == Decimal("20.00")
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.payment_method == PaymentMethod.PENDING
        assert order.customer_name == "Mesa 4"
        assert order.manager_name == STAFF.name
        assert order.created_by == STAFF.user_id
        assert order.version == 1
        assert store.get_order(order.id) is order

    async def test_delivery_without_phone_is_rejected(self, store, repository):
        """Scenario C."""
        with pytest.raises(ValidationError) as e:
            await store.create_order("delivery", [item()], customer_name="Ana")

        assert "customerPhone" in [v.field for v in e.value.errors]
        assert len(store) == 0
        assert repository.save_calls == 0

    async def test_unknown_channel(self, store):
        with pytest.raises(ValidationError, match="unknown channel"):
            await store.create_order("drive-thru", [item()])

    async def test_needs_items(self, store):
        with pytest.raises(ValidationError, match="no items"):
            await store.create_order(Channel.LOCAL, [])

    async def test_bad_estimated_time(self, store):
        with pytest.raises(ValidationError, match="estimatedTime"):
            await local_order(store, estimated_time=-5)

    async def test_persisted_and_announced(self, store, repository, broadcaster, listener):
        order = await local_order(store)
        await broadcaster.drain()

        assert repository.stored_version(order.id) == 1
        [frame] = listener.events("order_created")
        assert frame["data"]["id"] == order.id
        assert frame["data"]["total"] == 20.0

    async def test_duplicate_request_creates_one_order(self, store):
        first = await local_order(store, request_id="create-1")
        second = await local_order(store, request_id="create-1")

        assert first is second
        assert len(store) == 1

    async def test_complimentary_order_is_paid_on_creation(self, store):
        order = await local_order(store, price="0.00", quantity=1, table_number="3")

        assert order.total == Decimal("0.00")
        assert order.payment_status == PaymentStatus.PAID
        assert order.can_modify is False
        assert order.status == OrderStatus.PENDING

        with pytest.raises(ValidationError, match="already paid"):
            await store.apply_tender(order.id, cash("5"), request_id="pay-1")
        with pytest.raises(ValidationError, match="can no longer change"):
            await store.add_items(order.id, [item()])


class TestItems:
    async def test_add_items_recomputes_total(self, store):
        order = await local_order(store)
        updated = await store.add_items(order.id, [item(name="Agua Mineral", price="3.00", category="bebidas")])

        assert updated.total == Decimal("23.00")
        assert updated.total == compute_total(updated.items)
        assert updated.version == 2

    async def test_add_items_reports_index_of_bad_item(self, store):
        order = await local_order(store)
        with pytest.raises(ValidationError) as e:
            await store.add_items(order.id, [item(quantity=0)])
        assert [v.field for v in e.value.errors] == ["items[1].quantity"]
        assert store.get_order(order.id).version == 1

    async def test_remove_item(self, store):
        order = await store.create_order(Channel.LOCAL, [item(), item(name="Huevo Frito", price="2.00")])
        updated = await store.remove_item(order.id, order.items[1].id)

        assert [i.name for i in updated.items] == ["Salchipapa Clásica"]
        assert updated.total == Decimal("10.00")

    async def test_remove_unknown_item(self, store):
        order = await local_order(store)
        with pytest.raises(NotFound):
            await store.remove_item(order.id, "item-missing")

    async def test_removing_item_can_complete_payment(self, store):
        order = await store.create_order(Channel.LOCAL, [item(), item(name="Huevo Frito", price="5.00")])
        await store.apply_tender(order.id, cash("12"), request_id="pay-1")
        updated = await store.remove_item(order.id, order.items[1].id)

        assert updated.payment_status == PaymentStatus.PAID
        assert updated.can_modify is False

    async def test_paid_order_items_are_frozen(self, store):
        order = await local_order(store)
        await store.apply_tender(order.id, cash("20"), request_id="pay-1")

        with pytest.raises(ValidationError) as e:
            await store.add_items(order.id, [item()])
        assert e.value.errors[0].field == "canModify"


class TestPayments:
    async def test_payment_needs_request_id(self, store):
        order = await local_order(store)
        with pytest.raises(ValidationError, match="requestId"):
            await store.apply_tender(order.id, cash("5"))

    async def test_request_id_optional_when_disabled(self, repository, broadcaster):
        store = OrderStore(repository, broadcaster, Settings(require_payment_request_id=False))
        order = await local_order(store)
        outcome = await store.apply_tender(order.id, cash("5"))
        assert outcome.order.cash_received == Decimal("5.00")

    async def test_partial_then_mixed(self, store):
        """Scenario E."""
        order = await local_order(store)
        first = await store.apply_tender(order.id, cash("6"), request_id="pay-1")
        second = await store.apply_tender(order.id, yape("14"), request_id="pay-2")

        assert first.order.payment_status == PaymentStatus.PARTIAL
        assert first.order.payment_method == PaymentMethod.CASH
        assert second.order.payment_status == PaymentStatus.PAID
        assert second.order.payment_method == PaymentMethod.MIXED

    async def test_delivery_payment_starts_preparation(self, store, broadcaster, listener):
        """Scenario D."""
        order = await store.create_order(
            Channel.DELIVERY, [item(quantity=2)], customer_name="Ana", customer_phone="987654321"
        )
        outcome = await store.apply_tender(order.id, yape("20"), STAFF, request_id="pay-1")
        await broadcaster.drain()

        assert outcome.auto_advanced
        assert outcome.order.status == OrderStatus.PREPARING
        assert outcome.order.prep_start_time is not None
        [frame] = listener.events("order_status_changed")
        assert frame["data"]["previousStatus"] == "pending"
        assert frame["data"]["newStatus"] == "preparing"
        assert frame["data"]["changedBy"] == STAFF.name

    async def test_concurrent_tenders_are_all_counted(self, store):
        order = await local_order(store, price="100.00", quantity=1)

        outcomes = await asyncio.gather(*[
            store.apply_tender(order.id, cash("5"), request_id=f"pay-{n}") for n in range(10)
        ])

        final = store.get_order(order.id)
        assert final.cash_received == Decimal("50.00")
        assert final.version == 11
        assert sorted(o.order.cash_received for o in outcomes) == [Decimal(5 * n) for n in range(1, 11)]

    async def test_retried_tender_is_applied_once(self, store, repository):
        order = await local_order(store)
        first = await store.apply_tender(order.id, cash("6"), request_id="pay-1")
        retry = await store.apply_tender(order.id, cash("6"), request_id="pay-1")

        assert retry is first
        assert store.get_order(order.id).cash_received == Decimal("6.00")
        assert store.get_order(order.id).version == 2

    async def test_concurrent_duplicates_are_applied_once(self, store):
        order = await local_order(store)
        await asyncio.gather(*[
            store.apply_tender(order.id, cash("6"), request_id="pay-1") for _ in range(5)
        ])
        assert store.get_order(order.id).cash_received == Decimal("6.00")

    async def test_oldest_request_ids_are_forgotten(self, repository, broadcaster):
        store = OrderStore(repository, broadcaster, Settings(idempotency_cache_size=1))
        order = await local_order(store, price="100.00", quantity=1)
        await store.apply_tender(order.id, cash("5"), request_id="pay-1")
        await store.apply_tender(order.id, cash("5"), request_id="pay-2")
        await store.apply_tender(order.id, cash("5"), request_id="pay-1")

        assert store.get_order(order.id).cash_received == Decimal("15.00")


class TestStatus:
    async def test_ready_to_preparing_is_rejected(self, store):
        """Scenario F."""
        order = await local_order(store)
        await store.change_status(order.id, "preparing")
        ready = await store.change_status(order.id, OrderStatus.READY)

        with pytest.raises(InvalidTransition):
            await store.change_status(order.id, OrderStatus.PREPARING)
        assert store.get_order(order.id) is ready

    async def test_terminal_orders_reject_everything(self, store):
        order = await local_order(store)
        await store.cancel_order(order.id)

        with pytest.raises(TerminalStateError):
            await store.apply_tender(order.id, cash("5"), request_id="pay-1")
        with pytest.raises(TerminalStateError):
            await store.add_items(order.id, [item()])
        with pytest.raises(TerminalStateError):
            await store.update_details(order.id, {"notes": "sin sal"})
        with pytest.raises(TerminalStateError):
            await store.change_status(order.id, "preparing")

    async def test_cancel_keeps_tenders(self, store):
        order = await local_order(store)
        await store.apply_tender(order.id, cash("6"), request_id="pay-1")
        cancelled = await store.cancel_order(order.id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cash_received == Decimal("6.00")
        assert cancelled.can_modify is False

    async def test_missing_order(self, store):
        with pytest.raises(NotFound):
            await store.change_status("order-missing", "preparing")


class TestUpdateDetails:
    async def test_changes_contact_fields_after_payment(self, store):
        order = await store.create_order(Channel.TAKEAWAY, [item()], customer_name="Luis")
        await store.apply_tender(order.id, cash("10"), request_id="pay-1")

        updated = await store.update_details(order.id, {"customer_phone": "912345678", "notes": "sin ají"})
        assert updated.customer_phone == "912345678"
        assert updated.notes == "sin ají"

    async def test_required_field_cannot_be_blanked(self, store):
        order = await store.create_order(Channel.TAKEAWAY, [item()], customer_name="Luis")
        with pytest.raises(ValidationError, match="customerName"):
            await store.update_details(order.id, {"customer_name": ""})
        assert store.get_order(order.id).customer_name == "Luis"

    async def test_derived_fields_are_not_editable(self, store):
        order = await local_order(store)
        with pytest.raises(ValidationError, match="total cannot be changed"):
            await store.update_details(order.id, {"total": Decimal("1.00")})

    async def test_default_name_follows_table_change(self, store):
        order = await local_order(store, table_number="3")
        assert order.customer_name == "Mesa 3"

        updated = await store.update_details(order.id, {"table_number": "5"})
        assert updated.customer_name == "Mesa 5"

    async def test_given_name_kept_on_table_change(self, store):
        order = await local_order(store, table_number="3", customer_name="Rosa")
        updated = await store.update_details(order.id, {"table_number": "5"})
        assert updated.customer_name == "Rosa"


class TestDelete:
    async def test_delete_removes_and_announces(self, store, repository, broadcaster, listener):
        order = await local_order(store)
        removed = await store.delete_order(order.id, STAFF)
        await broadcaster.drain()

        assert removed.id == order.id
        assert repository.stored_version(order.id) is None
        with pytest.raises(NotFound):
            store.get_order(order.id)
        [frame] = listener.events("order_deleted")
        assert frame["data"]["orderId"] == order.id
        assert frame["data"]["deletedBy"] == STAFF.name

    async def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            await store.delete_order("order-missing")
        assert "order-missing" not in store._locks

    async def test_delete_releases_order_lock(self, store):
        order = await local_order(store)
        await store.change_status(order.id, OrderStatus.PREPARING)
        assert order.id in store._locks

        await store.delete_order(order.id)
        assert order.id not in store._locks

    async def test_mutating_unknown_order_leaves_no_lock(self, store):
        with pytest.raises(NotFound):
            await store.cancel_order("order-missing")
        assert store._locks == {}


class TestPersistence:
    async def test_transient_failures_are_retried(self, store, repository):
        order = await local_order(store)
        repository.fail_next(2)
        await store.apply_tender(order.id, cash("6"), request_id="pay-1")
        assert repository.stored_version(order.id) == 2

    async def test_persistent_failure_keeps_commit_and_announces(self, store, repository, broadcaster, listener):
        order = await local_order(store)
        repository.fail_next(3)

        with pytest.raises(PersistenceError):
            await store.apply_tender(order.id, cash("6"), request_id="pay-1")
        await broadcaster.drain()

        assert store.get_order(order.id).cash_received == Decimal("6.00")
        assert repository.stored_version(order.id) == 1
        assert len(listener.events("order_updated")) == 1

        # Retrying with the same id saves without counting the tender twice.
        await store.apply_tender(order.id, cash("6"), request_id="pay-1")
        assert store.get_order(order.id).cash_received == Decimal("6.00")
        assert repository.stored_version(order.id) == 2

    async def test_stale_writes_do_not_regress(self, store, repository):
        order = await local_order(store)
        await store.apply_tender(order.id, cash("6"), request_id="pay-1")
        assert await repository.save(order) is False
        assert repository.stored_version(order.id) == 2

    async def test_commit_rejects_stale_snapshot(self, store):
        order = await local_order(store)
        await store.add_items(order.id, [item()])
        stale_copy = order.copy()
        with pytest.raises(ConcurrencyConflict):
            store._commit(order, stale_copy)

    async def test_hydrate_loads_active_orders(self, store, repository, settings):
        open_order = await local_order(store)
        done = await local_order(store)
        await store.cancel_order(done.id)

        restarted = OrderStore(repository, None, settings)
        assert await restarted.hydrate() == 1
        assert restarted.get_order(open_order.id).total == open_order.total

    async def test_hydrate_failure(self, settings):
        repository = InMemoryOrderRepository()
        repository.fail_next(3)
        with pytest.raises(PersistenceError):
            await OrderStore(repository, None, settings).hydrate()


class TestReads:
    async def test_snapshot_is_stable(self, store):
        await local_order(store)
        await local_order(store, price="4.00")
        assert store.snapshot() == store.snapshot()
        assert len(store.snapshot(limit=1)) == 1

    async def test_list_orders_newest_first(self, repository, settings):
        clock = Clock(datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc))
        store = OrderStore(repository, None, settings, clock=clock)
        older = await local_order(store)
        clock.now += timedelta(minutes=5)
        newer = await local_order(store)

        assert [o.id for o in store.list_orders()] == [newer.id, older.id]

    async def test_filters(self, repository, settings):
        clock = Clock(datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc))
        store = OrderStore(repository, None, settings, clock=clock)
        old = await local_order(store)
        clock.now += timedelta(minutes=45)
        fresh = await store.create_order(Channel.TAKEAWAY, [item()], customer_name="Rosa")
        cancelled = await local_order(store)
        await store.cancel_order(cancelled.id)

        assert [o.id for o in store.list_orders(channel=Channel.TAKEAWAY)] == [fresh.id]
        assert [o.id for o in store.list_orders(status=OrderStatus.CANCELLED)] == [cancelled.id]
        assert {o.id for o in store.list_orders(active_only=True)} == {old.id, fresh.id}
        assert [o.id for o in store.list_orders(delayed_only=True)] == [old.id]

    async def test_business_day_uses_restaurant_offset(self, store):
        # 02:00 UTC is still the previous evening at UTC-5.
        moment = datetime(2026, 3, 15, 2, 0, tzinfo=timezone.utc)
        assert store.business_day(moment) == date(2026, 3, 14)

    async def test_daily_stats(self, repository, settings):
        clock = Clock(datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc))
        store = OrderStore(repository, None, settings, clock=clock)

        async def completed(*tenders):
            order = await local_order(store)
            for n, tender in enumerate(tenders):
                await store.apply_tender(order.id, tender, request_id=f"{order.id}-{n}")
            for status in ("preparing", "ready", "completed"):
                await store.change_status(order.id, status)

        await completed(cash("25"))
        await completed(Tender(cash=Decimal("10"), yape=Decimal("15")))
        await local_order(store)

        stats = store.daily_stats()
        assert stats.day == "2026-03-14"
        assert stats.total_orders == 3
        assert stats.total_sales == Decimal("40.00")
        assert stats.cash_amount == Decimal("25.00")
        assert stats.yape_amount == Decimal("15.00")
        assert stats.orders_by_status["completed"] == 2
        assert stats.orders_by_status["pending"] == 1
        assert stats.orders_by_payment["mixed"] == 1
        assert stats.to_dict()["totalSales"] == 40.0
