"""
Caller identity, passed explicitly into every core entry point.

The core never looks credentials up on its own; whoever authenticated the
request builds a SessionContext and hands it in.
"""

from dataclasses import dataclass
from typing import Optional

ADMIN_ROLES = frozenset({"admin", "spso"})


@dataclass(frozen=True)
class SessionContext:
    user_id: str
    role: str = "student"
    token: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role.lower() in ADMIN_ROLES
