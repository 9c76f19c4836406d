"""
Mock Identity Provider

Resolves static development tokens (DEV_TOKENS) to identities, so terminals
can connect locally without a token issuer:

    ws://localhost:8001/ws?token=dev-admin
"""

import logging
from typing import Optional

from order_engine.core.exceptions import PermissionDenied
from order_engine.core.permissions import parse_role
from order_engine.services.auth.base import BaseIdentityProvider, Identity

logger = logging.getLogger(__name__)


class MockIdentityProvider(BaseIdentityProvider):
    """
    Token table lookup.

    Args:
        tokens: {token: (user_id, role, name)}
    """

    def __init__(self, tokens: Optional[dict[str, tuple[str, str, str]]] = None):
        self._identities = {
            token: Identity(user_id=user_id, role=parse_role(role), name=name)
            for token, (user_id, role, name) in (tokens or {}).items()
        }
        logger.info(f"MockIdentityProvider initialized with {len(self._identities)} dev tokens")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def verify(self, credential: str) -> Identity:
        if not credential:
            raise PermissionDenied("authentication token required")
        identity = self._identities.get(credential)
        if identity is None:
            logger.warning("Mock: rejected unknown dev token")
            raise PermissionDenied("invalid token")
        return identity
