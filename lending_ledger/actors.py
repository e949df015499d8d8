"""
Actor identities consumed by the ledger

Authentication and user management live outside the ledger; callers hand in
an already authenticated Actor and the ledger only asks whether it is
privileged.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import PermissionDeniedError


class ActorRole(Enum):
    """Roles known to the ledger"""
    ADMIN = "admin"          # Transactions approved immediately, may correct and decide
    COLLECTOR = "collector"  # Transactions wait for approval


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a ledger operation"""
    id: str
    role: ActorRole = ActorRole.COLLECTOR
    name: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role == ActorRole.ADMIN

    def require_privileged(self, action: str) -> None:
        if not self.is_privileged:
            raise PermissionDeniedError(f"Only admins can {action}")

    @classmethod
    def admin(cls, actor_id: str, name: Optional[str] = None) -> 'Actor':
        return cls(id=actor_id, role=ActorRole.ADMIN, name=name)

    @classmethod
    def collector(cls, actor_id: str, name: Optional[str] = None) -> 'Actor':
        return cls(id=actor_id, role=ActorRole.COLLECTOR, name=name)
