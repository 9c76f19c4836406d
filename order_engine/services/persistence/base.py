"""
Order Repository Abstract Base Class

Defines the interface contract for order persistence. Both
InMemoryOrderRepository and SqlOrderRepository implement these methods so
the OrderStore never knows which storage engine is behind it.

The store treats its in-memory snapshots as authoritative and writes
through to the repository after each commit, outside the per-order lock.
Writes for the same order can therefore arrive out of order; every
implementation must ignore a save whose version is not newer than the one
already stored.

Transient failures are signalled with RepositoryUnavailable so the store
can retry them; anything else is a bug and propagates.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    # Runtime import would cycle: the order store imports this module.
    from order_engine.services.orders.entities import Order


class BaseOrderRepository(ABC):
    """
    Abstract base class for order repositories.

    Example:
        >>> repository = get_order_repository()  # InMemory or Sql
        >>> await repository.save(order)
        >>> restored = await repository.load(order.id)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short name of the storage engine (e.g. "memory", "postgresql")."""
        pass

    @abstractmethod
    async def load(self, order_id: str) -> Optional["Order"]:
        """
        Load one order by id.

        Returns:
            The stored order, or None if it does not exist

        Raises:
            RepositoryUnavailable: If the storage engine cannot be reached
        """
        pass

    @abstractmethod
    async def save(self, order: "Order") -> bool:
        """
        Insert or update an order snapshot.

        Returns:
            True if written, False if a newer (or equal) version was already stored

        Raises:
            RepositoryUnavailable: If the storage engine cannot be reached
        """
        pass

    @abstractmethod
    async def list_active(self) -> list["Order"]:
        """All orders that are not completed or cancelled, oldest first."""
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> None:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the storage engine is reachable."""
        pass

    async def close(self) -> None:
        """Release connections. Nothing to do by default."""
        return None
