"""
Core module initialization.
Exports configuration, logging and permission utilities.
"""

from order_engine.core.config import get_settings, Settings, EnvironmentMode, setup_logging
from order_engine.core.permissions import Role, Resource, Action

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "setup_logging",
    "Role",
    "Resource",
    "Action",
]
