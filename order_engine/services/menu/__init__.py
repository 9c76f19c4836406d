"""
Menu Catalog Factory

The static house menu is used in every environment; menu CRUD lives in
another service.
"""

import logging
from functools import lru_cache

from order_engine.services.menu.base import BaseMenuCatalog, MenuItem
from order_engine.services.menu.static import HOUSE_MENU, StaticMenuCatalog

logger = logging.getLogger(__name__)


@lru_cache()
def get_menu_catalog() -> BaseMenuCatalog:
    logger.info("Menu Catalog: Using StaticMenuCatalog")
    return StaticMenuCatalog()


def reset_menu_catalog() -> None:
    get_menu_catalog.cache_clear()


__all__ = [
    "get_menu_catalog",
    "reset_menu_catalog",
    "BaseMenuCatalog",
    "MenuItem",
    "StaticMenuCatalog",
    "HOUSE_MENU",
]
