"""
Order Services

    entities        Order, OrderItem, Tender and the status enums
    channel_policy  per-channel required fields and defaults
    payments        tender accumulation and payment-derived fields
    lifecycle       the status machine
    store           OrderStore, the per-order serialized source of truth

Usage:
    from order_engine.services.orders import get_order_store

    store = get_order_store()
    order = await store.create_order("local", items, table_number="4")
"""

import logging
from functools import lru_cache

from order_engine.core.config import get_settings
from order_engine.services.orders.entities import (
    Channel,
    DailyStats,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Tender,
)
from order_engine.services.orders.payments import PaymentOutcome
from order_engine.services.orders.store import OrderStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_order_store() -> OrderStore:
    """The process-wide store, wired to the configured repository and broadcaster."""
    from order_engine.services.persistence import get_order_repository
    from order_engine.services.realtime import get_broadcaster

    repository = get_order_repository()
    broadcaster = get_broadcaster()
    logger.info(
        f"Order Store: {repository.provider_name} repository, "
        f"{broadcaster.backend_name} broadcast"
    )
    return OrderStore(repository, broadcaster, get_settings())


def reset_order_store() -> None:
    get_order_store.cache_clear()
    logger.debug("Order store cache cleared")


__all__ = [
    "get_order_store",
    "reset_order_store",
    "OrderStore",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "PaymentOutcome",
    "Channel",
    "DailyStats",
    "Tender",
]
