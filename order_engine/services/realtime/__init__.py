"""
Realtime Factory

Usage:
    from order_engine.services.realtime import get_broadcaster, get_session_tracker

Environment Switching:
    - ENV_MODE=development → LocalBroadcaster (single process)
    - ENV_MODE=staging|production → RedisBroadcaster (events mirrored on a Redis channel)
"""

import logging
from functools import lru_cache

from order_engine.core.config import get_settings
from order_engine.services.auth import get_identity_provider
from order_engine.services.realtime.broadcaster import (
    ALL_USERS,
    BaseBroadcaster,
    LocalBroadcaster,
    RedisBroadcaster,
    role_room,
)
from order_engine.services.realtime.sessions import Session, SessionTracker

logger = logging.getLogger(__name__)


@lru_cache()
def get_broadcaster() -> BaseBroadcaster:
    settings = get_settings()

    if settings.is_development:
        logger.info("Broadcaster: Using LocalBroadcaster (development mode)")
        return LocalBroadcaster(settings.broadcast_send_timeout_seconds)

    logger.info(f"Broadcaster: Using RedisBroadcaster ({settings.env_mode.value} mode)")
    return RedisBroadcaster(
        settings.redis_url,
        settings.broadcast_channel,
        send_timeout_seconds=settings.broadcast_send_timeout_seconds,
    )


@lru_cache()
def get_session_tracker() -> SessionTracker:
    settings = get_settings()
    return SessionTracker(
        broadcaster=get_broadcaster(),
        identity_provider=get_identity_provider(),
        timeout_seconds=settings.session_timeout_seconds,
        sweep_interval_seconds=settings.session_sweep_interval_seconds,
    )


def reset_realtime() -> None:
    """Clear the cached broadcaster and tracker (tests, config changes)."""
    get_session_tracker.cache_clear()
    get_broadcaster.cache_clear()
    logger.debug("Realtime caches cleared")


__all__ = [
    "get_broadcaster",
    "get_session_tracker",
    "reset_realtime",
    "ALL_USERS",
    "role_room",
    "BaseBroadcaster",
    "LocalBroadcaster",
    "RedisBroadcaster",
    "Session",
    "SessionTracker",
]
