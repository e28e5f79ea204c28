from __future__ import annotations

from dataclasses import dataclass

from taskhub.domain.users.db_models import UserRole


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as asserted by the session provider."""

    user_id: str
    role: UserRole

    def has_role(self, *roles: UserRole) -> bool:
        return self.role in roles
