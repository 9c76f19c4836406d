"""
Identity Provider Factory

Environment Switching:
    - ENV_MODE=development → MockIdentityProvider (DEV_TOKENS table)
    - ENV_MODE=staging|production → JwtIdentityProvider (JWT_SECRET)
"""

import logging
from functools import lru_cache

from order_engine.core.config import get_settings
from order_engine.services.auth.base import BaseIdentityProvider, Identity
from order_engine.services.auth.jwt_provider import JwtIdentityProvider
from order_engine.services.auth.mock import MockIdentityProvider

logger = logging.getLogger(__name__)


@lru_cache()
def get_identity_provider() -> BaseIdentityProvider:
    settings = get_settings()

    if settings.is_development:
        logger.info("Identity Provider: Using MockIdentityProvider (development mode)")
        return MockIdentityProvider(settings.dev_token_table)

    logger.info(f"Identity Provider: Using JwtIdentityProvider ({settings.env_mode.value} mode)")
    return JwtIdentityProvider()


def reset_identity_provider() -> None:
    get_identity_provider.cache_clear()
    logger.debug("Identity provider cache cleared")


__all__ = [
    "get_identity_provider",
    "reset_identity_provider",
    "BaseIdentityProvider",
    "Identity",
    "MockIdentityProvider",
    "JwtIdentityProvider",
]
