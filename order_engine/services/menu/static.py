"""
Static Menu Catalog

The house menu held in memory. Availability can be toggled at runtime
(sold out for the night); prices and items only change with a deploy.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from order_engine.services.menu.base import BaseMenuCatalog, MenuItem

logger = logging.getLogger(__name__)


def _item(item_id: str, name: str, price: str, category: str) -> MenuItem:
    return MenuItem(id=item_id, name=name, price=Decimal(price), category=category)


HOUSE_MENU: tuple[MenuItem, ...] = (
    # Alitas
    _item("alitas_clasicas_6", "6 Alitas Clásicas", "22.00", "alitas"),
    _item("alitas_clasicas_8", "8 Alitas Clásicas", "26.00", "alitas"),
    _item("alitas_clasicas_10", "10 Alitas Clásicas", "30.00", "alitas"),
    _item("alitas_clasicas_20", "20 Alitas Clásicas", "54.00", "alitas"),
    _item("alitas_broaster_6", "6 Alitas Broaster", "24.00", "alitas"),
    _item("alitas_broaster_8", "8 Alitas Broaster", "28.00", "alitas"),
    _item("alitas_broaster_10", "10 Alitas Broaster", "32.00", "alitas"),
    _item("alitas_broaster_20", "20 Alitas Broaster", "58.00", "alitas"),
    # Salchipapas
    _item("salchi_clasica", "Salchipapa Clásica", "10.00", "salchipapas"),
    _item("choripapa", "Choripapa", "13.00", "salchipapas"),
    _item("salchi_dorada", "Salchipapa Dorada", "15.00", "salchipapas"),
    _item("pollo_broaster", "Pollo Broaster 1/8", "15.00", "salchipapas"),
    # Extras
    _item("papa", "Porción de Papa", "7.00", "extras"),
    _item("arroz", "Porción de Arroz", "4.00", "extras"),
    _item("chaufa", "Arroz Chaufa", "10.00", "extras"),
    _item("huevo", "Huevo Frito", "2.00", "extras"),
    _item("taper", "Tapers Descartable", "1.00", "extras"),
    # Bebidas
    _item("vaso_chicha", "Vaso de Chicha/Maracuyá", "6.00", "bebidas"),
    _item("jarra_chicha", "Jarra de Chicha 1L", "17.00", "bebidas"),
    _item("jarra_maracuya", "Jarra de Maracuyá 1L", "15.00", "bebidas"),
    _item("gaseosa_1l", "Inka Cola/Coca Cola 1L", "8.00", "bebidas"),
    _item("agua", "Agua Mineral", "3.00", "bebidas"),
    _item("pilsen", "Pilsen 305ml", "8.00", "bebidas"),
    _item("cusquena", "Cusqueña 330ml", "10.00", "bebidas"),
)


class StaticMenuCatalog(BaseMenuCatalog):
    """Dict-backed catalog; each instance gets its own copy of the items."""

    def __init__(self, items: Optional[Iterable[MenuItem]] = None):
        source = HOUSE_MENU if items is None else items
        self._items: dict[str, MenuItem] = {
            item.id: MenuItem(item.id, item.name, item.price, item.category, item.available)
            for item in source
        }
        logger.info(f"StaticMenuCatalog initialized with {len(self._items)} items")

    async def lookup(self, item_id: str) -> Optional[MenuItem]:
        return self._items.get(item_id)

    async def list_items(self, category: Optional[str] = None, available: Optional[bool] = None) -> list[MenuItem]:
        items = list(self._items.values())
        if category is not None:
            items = [item for item in items if item.category == category]
        if available is not None:
            items = [item for item in items if item.available == available]
        return items

    async def set_availability(self, item_id: str, available: bool) -> Optional[MenuItem]:
        item = self._items.get(item_id)
        if item is None:
            return None
        item.available = available
        logger.info(f"Menu item {item_id} is now {'available' if available else 'unavailable'}")
        return item

    async def set_price(self, item_id: str, price: Decimal) -> Optional[MenuItem]:
        item = self._items.get(item_id)
        if item is None:
            return None
        previous, item.price = item.price, price
        logger.info(f"Menu item {item_id} repriced {previous} → {price}")
        return item
