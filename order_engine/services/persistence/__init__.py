"""
Order Repository Factory

Usage:
    from order_engine.services.persistence import get_order_repository

    repository = get_order_repository()
    await repository.save(order)

Environment Switching:
    - ENV_MODE=development → InMemoryOrderRepository (no database needed)
    - ENV_MODE=staging|production → SqlOrderRepository (PostgreSQL)
"""

import logging
from functools import lru_cache

from order_engine.core.config import get_settings
from order_engine.services.persistence.base import BaseOrderRepository
from order_engine.services.persistence.memory import InMemoryOrderRepository

logger = logging.getLogger(__name__)


@lru_cache()
def get_order_repository() -> BaseOrderRepository:
    """
    Get the configured order repository (cached singleton).

    Returns:
        BaseOrderRepository: InMemory in development, SQL otherwise
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Order Repository: Using InMemoryOrderRepository (development mode)")
        return InMemoryOrderRepository()

    # Imported here so development never needs the database driver loaded
    from order_engine.services.persistence.sql import SqlOrderRepository

    logger.info(f"Order Repository: Using SqlOrderRepository ({settings.env_mode.value} mode)")
    return SqlOrderRepository()


def reset_order_repository() -> None:
    """Clear the cached repository; the next call builds a new one."""
    get_order_repository.cache_clear()
    logger.debug("Order repository cache cleared")


__all__ = [
    "get_order_repository",
    "reset_order_repository",
    "BaseOrderRepository",
    "InMemoryOrderRepository",
]
