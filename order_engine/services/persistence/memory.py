"""
In-Memory Order Repository

Keeps serialized order snapshots in a dict. Used in development mode
(ENV_MODE=development) and in tests, where it can also simulate an
unreachable storage engine:

    repository = InMemoryOrderRepository()
    repository.fail_next(2)   # next two calls raise RepositoryUnavailable

Orders are stored in their wire form, so a load always returns a fresh
object and never aliases the store's live snapshot.
"""

import asyncio
import logging
import random
from typing import Optional

from order_engine.core.exceptions import RepositoryUnavailable
from order_engine.services.orders.codec import order_from_wire, order_to_wire
from order_engine.services.orders.entities import Order
from order_engine.services.persistence.base import BaseOrderRepository

logger = logging.getLogger(__name__)


class InMemoryOrderRepository(BaseOrderRepository):
    """
    Dict-backed repository.

    Attributes:
        failure_rate: Probability that a call raises RepositoryUnavailable (0.0-1.0)
        latency: Simulated round-trip time in seconds
    """

    def __init__(self, failure_rate: float = 0.0, latency: float = 0.0):
        self.failure_rate = failure_rate
        self.latency = latency
        self._rows: dict[str, dict] = {}
        self._forced_failures = 0
        self.save_calls = 0

        logger.info(
            f"InMemoryOrderRepository initialized "
            f"(failure_rate={failure_rate:.0%}, latency={latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "memory"

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` calls raise RepositoryUnavailable."""
        self._forced_failures = count

    async def _roundtrip(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._forced_failures > 0:
            self._forced_failures -= 1
            raise RepositoryUnavailable("in-memory repository unavailable (forced)")
        if self.failure_rate and random.random() < self.failure_rate:
            raise RepositoryUnavailable("in-memory repository unavailable (simulated)")

    async def load(self, order_id: str) -> Optional[Order]:
        await self._roundtrip()
        row = self._rows.get(order_id)
        return order_from_wire(row) if row is not None else None

    async def save(self, order: Order) -> bool:
        self.save_calls += 1
        await self._roundtrip()
        existing = self._rows.get(order.id)
        if existing is not None and existing["version"] >= order.version:
            logger.debug(
                f"Skipping stale write for {order.id} "
                f"(stored v{existing['version']}, got v{order.version})"
            )
            return False
        self._rows[order.id] = order_to_wire(order)
        return True

    async def list_active(self) -> list[Order]:
        await self._roundtrip()
        orders = [order_from_wire(row) for row in self._rows.values()]
        active = [order for order in orders if not order.is_terminal]
        return sorted(active, key=lambda order: order.timestamp)

    async def delete(self, order_id: str) -> None:
        await self._roundtrip()
        self._rows.pop(order_id, None)

    async def health_check(self) -> bool:
        return True

    def stored_version(self, order_id: str) -> Optional[int]:
        row = self._rows.get(order_id)
        return row["version"] if row is not None else None
