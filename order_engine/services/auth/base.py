"""
Identity Provider Abstract Base Class

The core only ever sees a verified Identity; raw credentials stop here.
Token issuance is somebody else's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from order_engine.core.permissions import Role


@dataclass(frozen=True)
class Identity:
    """
    A verified user.

    Attributes:
        user_id: Stable user identifier
        role: Role used for permission checks and room membership
        name: Display name shown to other terminals
    """
    user_id: str
    role: Role
    name: str

    def to_dict(self) -> dict:
        return {"id": self.user_id, "role": self.role.value, "name": self.name}


class BaseIdentityProvider(ABC):
    """Verifies a credential and returns who is behind it."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def verify(self, credential: str) -> Identity:
        """
        Verify a credential.

        Raises:
            PermissionDenied: If the credential is missing, invalid or expired
        """
        pass
