"""
Menu Catalog Abstract Base Class

Supplies name/price/category lookups used when building order items from
a menu reference. The order core never checks that an item exists on the
menu; it only validates the shape of the item it is handed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class MenuItem:
    id: str
    name: str
    price: Decimal
    category: str
    available: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": float(self.price),
            "category": self.category,
            "available": self.available,
        }


class BaseMenuCatalog(ABC):

    @abstractmethod
    async def lookup(self, item_id: str) -> Optional[MenuItem]:
        pass

    @abstractmethod
    async def list_items(self, category: Optional[str] = None, available: Optional[bool] = None) -> list[MenuItem]:
        pass

    @abstractmethod
    async def set_availability(self, item_id: str, available: bool) -> Optional[MenuItem]:
        """Returns the updated item, or None if it does not exist."""
        pass

    @abstractmethod
    async def set_price(self, item_id: str, price: Decimal) -> Optional[MenuItem]:
        """Returns the repriced item, or None if it does not exist. Placed orders keep their prices."""
        pass
