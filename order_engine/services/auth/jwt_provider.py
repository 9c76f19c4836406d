"""
JWT Identity Provider

Verifies HS256 access tokens issued by the auth service. The claims the
core relies on are `userId`, `role` and `name`; signature and expiry are
always checked.
"""

import logging

import jwt

from order_engine.core.config import get_settings
from order_engine.core.exceptions import PermissionDenied
from order_engine.core.permissions import parse_role
from order_engine.services.auth.base import BaseIdentityProvider, Identity

logger = logging.getLogger(__name__)


class JwtIdentityProvider(BaseIdentityProvider):
    """
    Args:
        secret: Signing secret; defaults to JWT_SECRET
        algorithm: Signing algorithm; defaults to JWT_ALGORITHM
    """

    def __init__(self, secret: str = None, algorithm: str = None):
        settings = get_settings()
        self._secret = secret or settings.jwt_secret
        self._algorithm = algorithm or settings.jwt_algorithm

        if not self._secret:
            raise ValueError("JWT_SECRET is required for JwtIdentityProvider")

        logger.info(f"JwtIdentityProvider initialized ({self._algorithm})")

    @property
    def provider_name(self) -> str:
        return "jwt"

    async def verify(self, credential: str) -> Identity:
        if not credential:
            raise PermissionDenied("authentication token required")

        try:
            payload = jwt.decode(
                credential,
                self._secret,
                algorithms=[self._algorithm],
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                },
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Expired JWT token")
            raise PermissionDenied("token expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid JWT token: {e}")
            raise PermissionDenied("invalid token")

        user_id = payload.get("userId")
        role = payload.get("role")
        if not user_id or not role:
            logger.warning("JWT payload missing userId or role")
            raise PermissionDenied("invalid token")

        return Identity(
            user_id=str(user_id),
            role=parse_role(role),
            name=payload.get("name") or str(user_id),
        )
